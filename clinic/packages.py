"""Package ledger: prepaid sessions/minutes, deductions, rollbacks and payments.

Every balance change takes a row lock on the package and writes a
``PackageLog`` entry in the same transaction. Payments are append-only
rows; the paid and outstanding amounts are always derived from them.
"""
from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import or_

from .errors import InsufficientBalanceError, InvariantViolationError, NotFoundError, ValidationError
from .extensions import db
from .models import (PACKAGE_STATUSES, PAYMENT_METHODS, Appointment, Minutes, PackageLog, PackagePayment,
                     Service, ServicePackage, Sessions, User, utc_now)
from .timeutils import parse_date
from .transactions import atomic

PACKAGE_KINDS = ("sessions", "minutes")


def get_package(package_id: int) -> ServicePackage:
    package = db.session.get(ServicePackage, package_id)
    if package is None:
        raise NotFoundError("Package not found", package_id=package_id)
    return package


def lock_package(package_id: int) -> ServicePackage:
    """Load the package under a row lock, refreshing any stale state."""
    package = (
        db.session.query(ServicePackage)
        .filter_by(package_id=package_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if package is None:
        raise NotFoundError("Package not found", package_id=package_id)
    return package


def create_package(
    user_id: int,
    service: Service,
    *,
    price_total_cents: int | None = None,
    currency: str = "EUR",
    starts_on=None,
    expires_on=None,
    notes: str | None = None,
) -> ServicePackage:
    """Create a package from a package service template.

    The template must define exactly one of ``total_sessions`` or
    ``total_minutes``; the package tracks the matching balance and starts
    with the full amount.
    """
    if service is None or not service.is_package:
        raise ValidationError("Service is not a package service")

    sessions, minutes = service.total_sessions, service.total_minutes
    if (sessions is None) == (minutes is None):
        raise ValidationError(
            "Package service must define exactly one of total_sessions or total_minutes",
            service_id=service.service_id,
        )
    balance = Sessions(int(sessions)) if sessions is not None else Minutes(int(minutes))
    if balance.count <= 0:
        raise ValidationError("Package total must be positive", service_id=service.service_id)

    price = service.price_cents if price_total_cents is None else int(price_total_cents)
    if price < 0:
        raise ValidationError("price_total must not be negative", field="price_total_cents")

    starts_on = parse_date(starts_on, field="starts_on") if starts_on else None
    expires_on = parse_date(expires_on, field="expires_on") if expires_on else None
    if starts_on and expires_on and expires_on < starts_on:
        raise ValidationError("expires_on must not be before starts_on", field="expires_on")

    with atomic():
        if db.session.get(User, user_id) is None:
            raise NotFoundError("Customer not found", user_id=user_id)

        package = ServicePackage(
            user_id=user_id,
            service_id=service.service_id,
            service_name=service.name,
            snapshot_total_sessions=balance.count if isinstance(balance, Sessions) else None,
            snapshot_total_minutes=balance.count if isinstance(balance, Minutes) else None,
            price_total_cents=price,
            currency=(currency or "EUR").upper(),
            status="active",
            starts_on=starts_on,
            expires_on=expires_on,
            notes=notes,
        )
        package.balance = balance
        db.session.add(package)
        db.session.flush()

    current_app.logger.info(
        "Created package %s for user %s (%s %s)",
        package.package_id, user_id, balance.count, type(balance).__name__.lower(),
    )
    return package


def _require_positive(amount, field: str) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a positive integer", field=field) from exc
    if value <= 0:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return value


def deduct_sessions(
    package_id: int,
    count: int = 1,
    *,
    staff_id: int | None = None,
    note: str | None = None,
    appointment_id: int | None = None,
    appointment_ref: str | None = None,
) -> ServicePackage:
    count = _require_positive(count, "count")

    with atomic():
        package = lock_package(package_id)
        balance = package.balance
        if not isinstance(balance, Sessions):
            raise ValidationError("Package is not a sessions package", package_id=package_id)
        if balance.count < count:
            raise InsufficientBalanceError(
                "Not enough sessions remaining",
                package_id=package_id,
                remaining_sessions=balance.count,
                requested=count,
            )
        if package.status != "active":
            raise ValidationError("Package is not active", package_id=package_id, status=package.status)

        remaining = balance.count - count
        package.balance = Sessions(remaining)
        if remaining == 0:
            package.status = "exhausted"

        db.session.add(
            PackageLog(
                service_package_id=package_id,
                staff_id=staff_id,
                appointment_id=appointment_id,
                appointment_ref=appointment_ref,
                used_sessions=count,
                note=note,
            )
        )

    current_app.logger.info("Deducted %s session(s) from package %s, %s left", count, package_id, remaining)
    return package


def deduct_minutes(
    package_id: int,
    minutes: int,
    *,
    staff_id: int | None = None,
    note: str | None = None,
    appointment_id: int | None = None,
    appointment_ref: str | None = None,
) -> ServicePackage:
    """Deduct minutes; the balance may go negative and never blocks usage."""
    minutes = _require_positive(minutes, "minutes")

    with atomic():
        package = lock_package(package_id)
        balance = package.balance
        if not isinstance(balance, Minutes):
            raise ValidationError("Package is not a minutes package", package_id=package_id)

        remaining = balance.count - minutes
        package.balance = Minutes(remaining)

        db.session.add(
            PackageLog(
                service_package_id=package_id,
                staff_id=staff_id,
                appointment_id=appointment_id,
                appointment_ref=appointment_ref,
                used_minutes=minutes,
                note=note,
            )
        )

    if remaining < 0:
        current_app.logger.warning("Package %s minutes balance is negative: %s", package_id, remaining)
    else:
        current_app.logger.info("Deducted %s minute(s) from package %s, %s left", minutes, package_id, remaining)
    return package


def restore_deduction(
    package_id: int,
    *,
    appointment_id: int | None = None,
    appointment_ref: str | None = None,
    note: str | None = None,
) -> ServicePackage:
    """Give back the latest deduction made for an appointment.

    A deduction is reversed at most once: the rollback entry points at it
    through ``reverses_log_id``, so repeated calls are no-ops.
    """
    if appointment_id is None and not appointment_ref:
        raise ValidationError("appointment_id or appointment_ref is required")

    matches = []
    if appointment_id is not None:
        matches.append(PackageLog.appointment_id == appointment_id)
    if appointment_ref:
        matches.append(PackageLog.appointment_ref == appointment_ref)

    with atomic():
        package = lock_package(package_id)
        deduction = (
            PackageLog.query.filter(
                PackageLog.service_package_id == package_id,
                PackageLog.reverses_log_id.is_(None),
                or_(*matches),
                or_(PackageLog.used_sessions > 0, PackageLog.used_minutes > 0),
            )
            .order_by(PackageLog.log_id.desc())
            .first()
        )
        if deduction is None:
            return package

        reversed_already = PackageLog.query.filter_by(reverses_log_id=deduction.log_id).first()
        if reversed_already is not None:
            return package

        balance = package.balance
        if deduction.used_sessions and isinstance(balance, Sessions):
            package.balance = Sessions(balance.count + deduction.used_sessions)
            rollback = {"used_sessions": 0}
        elif deduction.used_minutes and isinstance(balance, Minutes):
            package.balance = Minutes(balance.count + deduction.used_minutes)
            rollback = {"used_minutes": 0}
        else:
            raise InvariantViolationError(
                "Package log does not match the package balance type",
                package_id=package_id,
                log_id=deduction.log_id,
            )
        package.status = "active"

        db.session.add(
            PackageLog(
                service_package_id=package_id,
                staff_id=deduction.staff_id,
                appointment_id=deduction.appointment_id,
                appointment_ref=deduction.appointment_ref,
                reverses_log_id=deduction.log_id,
                note=note or f"Rollback of deduction #{deduction.log_id}",
                **rollback,
            )
        )

    current_app.logger.info("Restored deduction %s on package %s", deduction.log_id, package_id)
    return package


def _check_payment_input(amount_cents, method: str) -> int:
    amount = _require_positive(amount_cents, "amount_cents")
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            f"method must be one of: {', '.join(PAYMENT_METHODS)}", field="method"
        )
    return amount


def _check_ceiling(amount: int, price_cents: int, paid_cents: int, tolerance_cents: int, **context) -> None:
    """Refuse a payment that would push the paid total past the price plus tolerance."""
    if paid_cents + amount > price_cents + tolerance_cents:
        remaining = max(price_cents - paid_cents, 0)
        raise InsufficientBalanceError(
            "Payment exceeds the remaining balance",
            remaining_before_cents=remaining,
            remaining_before=remaining / 100.0,
            amount_cents=amount,
            **context,
        )


def record_payment(
    package_id: int,
    amount_cents: int,
    method: str,
    *,
    tolerance_cents: int = 1,
    staff_id: int | None = None,
    recorded_by: int | None = None,
    notes: str | None = None,
    currency: str | None = None,
) -> PackagePayment:
    """Append a payment to a package, refusing anything beyond what is owed."""
    amount = _check_payment_input(amount_cents, method)

    with atomic():
        package = lock_package(package_id)
        if (package.price_total_cents or 0) <= 0:
            raise ValidationError("Package has no price to pay", package_id=package_id)
        _check_ceiling(
            amount, package.price_total_cents, package.amount_paid_cents, tolerance_cents, package_id=package_id
        )

        payment = PackagePayment(
            package=package,
            user_id=package.user_id,
            staff_id=staff_id,
            recorded_by=recorded_by,
            method=method,
            amount_cents=amount,
            currency=(currency or package.currency).upper(),
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()

    current_app.logger.info("Recorded payment %s of %s cents on package %s", payment.payment_id, amount, package_id)
    return payment


def record_appointment_payment(
    appointment_id: int,
    amount_cents: int,
    method: str,
    *,
    tolerance_cents: int = 1,
    staff_id: int | None = None,
    recorded_by: int | None = None,
    notes: str | None = None,
    currency: str = "EUR",
) -> PackagePayment:
    """Payment for a one-time service; package appointments are paid on the package."""
    amount = _check_payment_input(amount_cents, method)

    with atomic():
        appointment = (
            db.session.query(Appointment)
            .filter(Appointment.appointment_id == appointment_id, Appointment.deleted_at.is_(None))
            .with_for_update()
            .one_or_none()
        )
        if appointment is None:
            raise NotFoundError("Appointment not found", appointment_id=appointment_id)
        if appointment.service_package_id:
            raise ValidationError(
                "Appointment is covered by a package; record the payment on the package",
                package_id=appointment.service_package_id,
            )
        if (appointment.price_cents or 0) <= 0:
            raise ValidationError("Appointment has no price to pay", appointment_id=appointment_id)
        _check_ceiling(
            amount,
            appointment.price_cents,
            appointment.amount_paid_cents,
            tolerance_cents,
            appointment_id=appointment_id,
        )

        payment = PackagePayment(
            appointment=appointment,
            user_id=appointment.user_id,
            staff_id=staff_id,
            recorded_by=recorded_by,
            method=method,
            amount_cents=amount,
            currency=(currency or "EUR").upper(),
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()

    current_app.logger.info(
        "Recorded payment %s of %s cents on appointment %s", payment.payment_id, amount, appointment_id
    )
    return payment


def void_payment(payment_id: int) -> PackagePayment:
    """Soft-void a payment. Voiding twice keeps the first timestamp."""
    with atomic():
        payment = db.session.get(PackagePayment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        if payment.voided_at is None:
            payment.voided_at = utc_now()
            current_app.logger.info("Voided payment %s", payment_id)
    return payment


def check_validity(package: ServicePackage, on_date: date) -> None:
    if package.starts_on and on_date < package.starts_on:
        raise ValidationError("Package is not valid yet", package_id=package.package_id)
    if package.expires_on and on_date > package.expires_on:
        raise ValidationError("Package has expired", package_id=package.package_id)


def use_package(
    package_id: int,
    kind: str,
    amount: int,
    *,
    today: date,
    staff_id: int | None = None,
    appointment_id: int | None = None,
    note: str | None = None,
) -> ServicePackage:
    """Manual usage, e.g. for a walk-in not booked through the calendar."""
    if kind not in PACKAGE_KINDS:
        raise ValidationError("kind must be sessions or minutes", field="kind")

    with atomic():
        package = lock_package(package_id)
        if package.status != "active":
            raise ValidationError("Package is not active", package_id=package_id, status=package.status)
        check_validity(package, today)

        appointment_ref = None
        if appointment_id is not None:
            appointment = Appointment.query.filter(
                Appointment.appointment_id == appointment_id,
                Appointment.deleted_at.is_(None),
            ).first()
            if appointment is None:
                raise NotFoundError("Appointment not found", appointment_id=appointment_id)
            appointment_ref = appointment.reference_code

        deduct = deduct_sessions if kind == "sessions" else deduct_minutes
        package = deduct(
            package_id,
            amount,
            staff_id=staff_id,
            note=note,
            appointment_id=appointment_id,
            appointment_ref=appointment_ref,
        )
    return package


def set_package_status(package_id: int, status: str) -> ServicePackage:
    if status not in PACKAGE_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(PACKAGE_STATUSES)}", field="status")

    with atomic():
        package = lock_package(package_id)
        previous = package.status
        package.status = status

    current_app.logger.info("Package %s status %s -> %s", package_id, previous, status)
    return package


def find_reusable_package(user_id: int, service_id: int, today: date) -> ServicePackage | None:
    """Oldest active sessions package of the customer for this service that
    still has sessions left and is valid today."""
    candidates = ServicePackage.query.filter(
        ServicePackage.user_id == user_id,
        ServicePackage.service_id == service_id,
        ServicePackage.status == "active",
        ServicePackage.remaining_sessions > 0,
        or_(ServicePackage.starts_on.is_(None), ServicePackage.starts_on <= today),
        or_(ServicePackage.expires_on.is_(None), ServicePackage.expires_on >= today),
    ).all()
    if not candidates:
        return None
    # Package ids grow with creation order.
    return min(candidates, key=lambda p: (p.starts_on or date.min, p.package_id))


def package_warnings(package: ServicePackage, today: date) -> list[str]:
    warnings = []
    if package.remaining_minutes is not None and package.remaining_minutes < 0:
        warnings.append("negative_minutes_balance")
    if package.expires_on and package.expires_on < today:
        warnings.append("expired_validity")
    if package.status != "active":
        warnings.append("not_active")
    return warnings
