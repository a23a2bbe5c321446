"""Unit-of-work helper around the shared SQLAlchemy session."""
from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError

from .errors import ConflictError
from .extensions import db

_DEPTH_KEY = "clinic_atomic_depth"

# Driver messages / SQLSTATEs for lock timeouts, deadlocks and serialization
# failures: a concurrent transaction won the race for the same rows.
_LOCK_CONFLICT_CODES = {"40001", "40P01", "55P03"}
_LOCK_CONFLICT_MARKERS = (
    "database is locked",
    "deadlock",
    "lock wait timeout",
    "could not obtain lock",
    "could not serialize",
    "lock not available",
)


def is_lock_conflict(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _LOCK_CONFLICT_CODES:
        return True
    args = getattr(orig, "args", ())
    if args and args[0] in (1205, 1213):  # MySQL lock wait timeout / deadlock
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_CONFLICT_MARKERS)


@contextmanager
def atomic():
    """Commit on success, roll back on any error.

    Nested blocks join the outermost transaction; only the outermost block
    commits or rolls back.
    """
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except OperationalError as exc:
        if depth == 0:
            session.rollback()
        if is_lock_conflict(exc):
            current_app.logger.warning("Transaction lost a lock race: %s", exc)
            raise ConflictError(
                "The resource is busy with another booking; please retry with a fresh slot.",
                reason="lock_conflict",
            ) from exc
        raise
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info[_DEPTH_KEY] = depth
