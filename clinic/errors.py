"""Structured errors raised by the scheduling and package ledger code.

Every error carries a machine readable ``kind``, a human readable message and
optional context fields. The HTTP layer renders them as
``{"error": kind, "message": message, **context}``.
"""
from __future__ import annotations


class ClinicError(Exception):
    kind = "clinic_error"
    status_code = 400

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.kind, "message": self.message}
        payload.update(self.context)
        return payload


class ValidationError(ClinicError):
    """Malformed or out-of-range input."""

    kind = "invalid_payload"
    status_code = 400


class NotFoundError(ClinicError):
    kind = "not_found"
    status_code = 404


class ConflictError(ClinicError):
    """A scheduling conflict, or a lost race for a contended row."""

    kind = "conflict"
    status_code = 409


class InvalidTransitionError(ClinicError):
    kind = "invalid_transition"
    status_code = 422

    def __init__(self, from_status: str, to_status: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Invalid status transition: {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
        )


class InsufficientBalanceError(ClinicError):
    kind = "insufficient_balance"
    status_code = 422


class InvariantViolationError(ClinicError):
    """Stored data breaks an invariant; points at a bug upstream."""

    kind = "invariant_violation"
    status_code = 500
