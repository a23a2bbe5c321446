"""Booking reference codes."""
from __future__ import annotations

import random
import string

from .extensions import db
from .models import Appointment

CODE_LENGTH = 10


def new_reference_code() -> str:
    """Return a 10 character uppercase code not used by any appointment.

    Soft-deleted appointments keep their codes, so codes are never reused.
    """
    while True:
        code = "".join(random.choices(string.ascii_uppercase + string.digits, k=CODE_LENGTH))
        taken = db.session.query(Appointment.appointment_id).filter_by(reference_code=code).first()
        if not taken:
            return code
