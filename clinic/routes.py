"""HTTP routes for the clinic booking backend."""
from __future__ import annotations

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import appointments as appointment_ops
from . import packages as package_ops
from .config import get_clock, get_settings
from .errors import NotFoundError, ValidationError
from .extensions import db
from .models import AppointmentLog, Service
from .scheduling import generate_slots, staff_for_service

bp = Blueprint("api", __name__)


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _actor_id() -> int | None:
    """Acting user for audit logs, passed in by the gateway."""
    raw = request.headers.get("X-Actor-Id")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError("X-Actor-Id must be an integer", field="X-Actor-Id") from exc


def _int_field(payload: dict, name: str, *, required: bool = False) -> int | None:
    value = payload.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required", field=name)
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", field=name)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", field=name) from exc


def _required(payload: dict, *names: str) -> None:
    missing = [name for name in names if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required", fields=missing)


def _package_payload(package) -> dict[str, object]:
    data = package.to_dict()
    data["warnings"] = package_ops.package_warnings(package, get_clock().today())
    return data


def _get_service(service_id: int) -> Service:
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFoundError("Service not found", service_id=service_id)
    return service


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# ---------------------------------------------------------------------------
# Availability and booking
# ---------------------------------------------------------------------------

@bp.get("/services/<int:service_id>/availability")
def get_service_availability(service_id: int) -> tuple[dict[str, object], int]:
    """List bookable start times for a service on one day.
    ---
    tags:
      - Availability
    parameters:
      - in: path
        name: service_id
        required: true
        schema:
          type: integer
      - in: query
        name: date
        required: true
        schema:
          type: string
          format: date
      - in: query
        name: staff_id
        schema:
          type: integer
      - in: query
        name: step
        description: Slot step in minutes (5, 10, 15, 20, 30 or 60).
        schema:
          type: integer
    responses:
      200:
        description: Ordered slot list (may be empty)
      400:
        description: Invalid date or step
      404:
        description: Service not available
      500:
        description: Database error
    """
    _required(request.args, "date")
    staff_id = _int_field(request.args, "staff_id")
    step = _int_field(request.args, "step")

    try:
        slots = generate_slots(
            db.session.get(Service, service_id),
            request.args["date"],
            settings=get_settings(),
            clock=get_clock(),
            staff_id=staff_id,
            step_minutes=step,
        )
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to compute availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({
        "service_id": service_id,
        "date": request.args["date"],
        "staff_id": staff_id,
        "slots": [slot.to_dict() for slot in slots],
    }), 200


@bp.get("/services/<int:service_id>/staff")
def get_service_staff(service_id: int) -> tuple[dict[str, object], int]:
    """List staff performing a service, with availability when a time is given.
    ---
    tags:
      - Availability
    parameters:
      - in: query
        name: date
        schema:
          type: string
          format: date
      - in: query
        name: starts_at
        schema:
          type: string
          example: "10:30"
    responses:
      200:
        description: Staff list
      404:
        description: Service not available
    """
    try:
        service = _get_service(service_id)
        entries = staff_for_service(
            service,
            request.args.get("date") or None,
            request.args.get("starts_at") or None,
            settings=get_settings(),
        )
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to list staff for service", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    staff = []
    for member, available in entries:
        data = member.to_dict()
        data["available"] = available
        staff.append(data)
    return jsonify({"service_id": service_id, "staff": staff}), 200


@bp.post("/services/<int:service_id>/book")
def book_service(service_id: int) -> tuple[dict[str, object], int]:
    """Book a service at a given date and start time.
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [date, starts_at]
          properties:
            date:
              type: string
              format: date
            starts_at:
              type: string
              example: "10:30"
            staff_id:
              type: integer
            user_id:
              type: integer
            customer_name:
              type: string
            customer_email:
              type: string
            customer_phone:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Appointment created as pending
      400:
        description: Invalid payload or time outside the bookable window
      404:
        description: Service, staff or customer not found
      409:
        description: Time slot no longer available
      500:
        description: Database error
    """
    payload = _payload()
    _required(payload, "date", "starts_at")

    try:
        appointment = appointment_ops.book_appointment(
            service_id,
            payload["date"],
            payload["starts_at"],
            settings=get_settings(),
            clock=get_clock(),
            user_id=_int_field(payload, "user_id"),
            staff_id=_int_field(payload, "staff_id"),
            customer_name=(payload.get("customer_name") or "").strip() or None,
            customer_email=(payload.get("customer_email") or "").strip() or None,
            customer_phone=(payload.get("customer_phone") or "").strip() or None,
            notes=(payload.get("notes") or "").strip() or None,
            actor_id=_actor_id(),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to book appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 201


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@bp.post("/appointments")
def create_appointment() -> tuple[dict[str, object], int]:
    """Create an appointment from the back office.
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [service_id, date, starts_at]
          properties:
            service_id:
              type: integer
            staff_id:
              type: integer
            user_id:
              type: integer
            date:
              type: string
            starts_at:
              type: string
            duration_minutes:
              type: integer
            price_cents:
              type: integer
            status:
              type: string
              enum: [pending, confirmed]
            service_package_id:
              type: integer
    responses:
      201:
        description: Appointment created
      400:
        description: Invalid payload
      409:
        description: Time slot conflict
    """
    payload = _payload()
    _required(payload, "service_id", "date", "starts_at")

    try:
        appointment = appointment_ops.create_appointment(
            _int_field(payload, "service_id", required=True),
            payload["date"],
            payload["starts_at"],
            staff_id=_int_field(payload, "staff_id"),
            user_id=_int_field(payload, "user_id"),
            duration_minutes=_int_field(payload, "duration_minutes"),
            price_cents=_int_field(payload, "price_cents"),
            status=payload.get("status") or "pending",
            service_package_id=_int_field(payload, "service_package_id"),
            customer_name=payload.get("customer_name"),
            customer_email=payload.get("customer_email"),
            customer_phone=payload.get("customer_phone"),
            notes=payload.get("notes"),
            admin_notes=payload.get("admin_notes"),
            actor_id=_actor_id(),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 201


@bp.get("/appointments/<int:appointment_id>")
def get_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    try:
        appointment = appointment_ops.get_appointment(appointment_id)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/appointments/code/<string:code>")
def get_appointment_by_code(code: str) -> tuple[dict[str, object], int]:
    """Look up a booking by its reference code (case-insensitive)."""
    try:
        appointment = appointment_ops.find_by_reference(code)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch appointment by code", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/appointments/<int:appointment_id>/logs")
def get_appointment_logs(appointment_id: int) -> tuple[dict[str, object], int]:
    try:
        appointment = appointment_ops.get_appointment(appointment_id)
        logs = (
            AppointmentLog.query.filter_by(appointment_id=appointment.appointment_id)
            .order_by(AppointmentLog.log_id)
            .all()
        )
        return jsonify({"logs": [log.to_dict() for log in logs]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch appointment logs", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.put("/appointments/<int:appointment_id>")
def update_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    """Update appointment notes.
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        schema:
          properties:
            notes:
              type: string
              description: Omit to keep, null to clear.
            admin_notes:
              type: string
    responses:
      200:
        description: Appointment updated
      404:
        description: Appointment not found
    """
    payload = _payload()
    update = appointment_ops.AppointmentUpdate(
        **{field: payload[field] for field in appointment_ops.AppointmentUpdate._fields if field in payload}
    )

    try:
        appointment = appointment_ops.update_appointment(appointment_id, update, actor_id=_actor_id())
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.delete("/appointments/<int:appointment_id>")
def delete_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    try:
        appointment_ops.delete_appointment(appointment_id, actor_id=_actor_id())
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"deleted": True, "appointment_id": appointment_id}), 200


_TRANSITION_ROUTES = {
    "confirm": appointment_ops.confirm,
    "complete": appointment_ops.complete,
    "cancel": appointment_ops.cancel,
    "no-show": appointment_ops.mark_no_show,
    "revert-completion": appointment_ops.revert_completion,
}


@bp.post("/appointments/<int:appointment_id>/confirm", defaults={"action": "confirm"})
@bp.post("/appointments/<int:appointment_id>/complete", defaults={"action": "complete"})
@bp.post("/appointments/<int:appointment_id>/cancel", defaults={"action": "cancel"})
@bp.post("/appointments/<int:appointment_id>/no-show", defaults={"action": "no-show"})
@bp.post("/appointments/<int:appointment_id>/revert-completion", defaults={"action": "revert-completion"})
def change_appointment_status(appointment_id: int, action: str) -> tuple[dict[str, object], int]:
    """Move an appointment to another status.
    ---
    tags:
      - Appointments
    parameters:
      - in: path
        name: action
        required: true
        schema:
          type: string
          enum: [confirm, complete, cancel, no-show, revert-completion]
      - in: body
        name: body
        schema:
          properties:
            note:
              type: string
    responses:
      200:
        description: Status changed; events lists the side effects that ran
      404:
        description: Appointment not found
      409:
        description: Confirming would double-book
      422:
        description: Transition not allowed or package balance insufficient
    """
    payload = _payload()
    operation = _TRANSITION_ROUTES[action]

    try:
        result = operation(appointment_id, actor_id=_actor_id(), note=payload.get("note"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to change appointment status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": result.appointment.to_dict(), "events": result.events}), 200


@bp.post("/appointments/<int:appointment_id>/customer-cancel")
def customer_cancel_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    """Cancel a booking on behalf of its owner, respecting the cancellation notice."""
    payload = _payload()
    user_id = _int_field(payload, "user_id", required=True)

    try:
        result = appointment_ops.cancel_by_customer(
            appointment_id,
            user_id,
            settings=get_settings(),
            clock=get_clock(),
            note=payload.get("note"),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to cancel appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": result.appointment.to_dict(), "events": result.events}), 200


@bp.put("/appointments/<int:appointment_id>/reschedule")
def reschedule_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    """Reschedule an appointment to a new date/time with conflict checking.
    ---
    tags:
      - Appointments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [date, starts_at]
          properties:
            date:
              type: string
              format: date
            starts_at:
              type: string
            staff_id:
              type: integer
    responses:
      200:
        description: Appointment rescheduled successfully
      400:
        description: Invalid input or cannot reschedule
      404:
        description: Appointment not found
      409:
        description: Time slot conflict
      500:
        description: Database error
    """
    payload = _payload()
    _required(payload, "date", "starts_at")

    try:
        appointment = appointment_ops.reschedule(
            appointment_id,
            payload["date"],
            payload["starts_at"],
            staff_id=_int_field(payload, "staff_id"),
            actor_id=_actor_id(),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to reschedule appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.put("/appointments/<int:appointment_id>/assign")
def assign_appointment_staff(appointment_id: int) -> tuple[dict[str, object], int]:
    payload = _payload()
    staff_id = _int_field(payload, "staff_id", required=True)

    try:
        appointment = appointment_ops.reassign_staff(appointment_id, staff_id, actor_id=_actor_id())
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to assign staff", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.put("/appointments/<int:appointment_id>/package")
def attach_appointment_package(appointment_id: int) -> tuple[dict[str, object], int]:
    payload = _payload()
    package_id = _int_field(payload, "package_id", required=True)

    try:
        appointment = appointment_ops.attach_package(appointment_id, package_id, actor_id=_actor_id())
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to attach package", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.delete("/appointments/<int:appointment_id>/package")
def detach_appointment_package(appointment_id: int) -> tuple[dict[str, object], int]:
    try:
        appointment = appointment_ops.detach_package(appointment_id, actor_id=_actor_id())
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to detach package", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.post("/appointments/<int:appointment_id>/payments")
def create_appointment_payment(appointment_id: int) -> tuple[dict[str, object], int]:
    """Record a payment for a one-time (non-package) appointment.
    ---
    tags:
      - Payments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [amount_cents, method]
          properties:
            amount_cents:
              type: integer
            method:
              type: string
              enum: [cash, card, bank, other]
            currency:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Payment recorded
      400:
        description: Invalid payload or appointment billed through a package
      422:
        description: Amount exceeds what is still owed
    """
    payload = _payload()
    settings = get_settings()

    try:
        payment = package_ops.record_appointment_payment(
            appointment_id,
            _int_field(payload, "amount_cents", required=True),
            payload.get("method") or "",
            tolerance_cents=settings.payment_tolerance_cents,
            staff_id=_int_field(payload, "staff_id"),
            recorded_by=_actor_id(),
            notes=payload.get("notes"),
            currency=payload.get("currency") or settings.default_currency,
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record appointment payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    appointment = appointment_ops.get_appointment(appointment_id)
    return jsonify({
        "payment": payment.to_dict(),
        "amount_paid_cents": appointment.amount_paid_cents,
        "remaining_to_pay_cents": appointment.remaining_to_pay_cents,
    }), 201


# ---------------------------------------------------------------------------
# Packages and payments
# ---------------------------------------------------------------------------

@bp.post("/packages")
def create_package() -> tuple[dict[str, object], int]:
    """Assign a package service to a customer.
    ---
    tags:
      - Packages
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [user_id, service_id]
          properties:
            user_id:
              type: integer
            service_id:
              type: integer
            price_total_cents:
              type: integer
            currency:
              type: string
            starts_on:
              type: string
              format: date
            expires_on:
              type: string
              format: date
            notes:
              type: string
    responses:
      201:
        description: Package created with full balance
      400:
        description: Service is not a valid package template
      404:
        description: Customer or service not found
    """
    payload = _payload()
    user_id = _int_field(payload, "user_id", required=True)
    service_id = _int_field(payload, "service_id", required=True)

    try:
        package = package_ops.create_package(
            user_id,
            _get_service(service_id),
            price_total_cents=_int_field(payload, "price_total_cents"),
            currency=payload.get("currency") or get_settings().default_currency,
            starts_on=payload.get("starts_on"),
            expires_on=payload.get("expires_on"),
            notes=payload.get("notes"),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create package", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"package": _package_payload(package)}), 201


@bp.get("/packages/<int:package_id>")
def get_package(package_id: int) -> tuple[dict[str, object], int]:
    try:
        package = package_ops.get_package(package_id)
        data = _package_payload(package)
        data["customer"] = package.owner.to_dict_basic() if package.owner else None
        data["logs"] = [log.to_dict() for log in package.logs]
        data["payments"] = [payment.to_dict() for payment in package.payments]
        return jsonify({"package": data}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch package", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/packages/<int:package_id>/use")
def use_package(package_id: int) -> tuple[dict[str, object], int]:
    """Log manual package usage (sessions or minutes).
    ---
    tags:
      - Packages
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [kind, amount]
          properties:
            kind:
              type: string
              enum: [sessions, minutes]
            amount:
              type: integer
            staff_id:
              type: integer
            appointment_id:
              type: integer
            note:
              type: string
    responses:
      200:
        description: Balance updated
      400:
        description: Wrong package type, inactive or outside validity
      422:
        description: Not enough sessions left
    """
    payload = _payload()

    try:
        package = package_ops.use_package(
            package_id,
            payload.get("kind") or "",
            _int_field(payload, "amount", required=True),
            today=get_clock().today(),
            staff_id=_int_field(payload, "staff_id"),
            appointment_id=_int_field(payload, "appointment_id"),
            note=payload.get("note"),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to use package", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"package": _package_payload(package)}), 200


@bp.post("/packages/<int:package_id>/payments")
def create_package_payment(package_id: int) -> tuple[dict[str, object], int]:
    """Record a payment against a package.
    ---
    tags:
      - Payments
    parameters:
      - in: body
        name: body
        required: true
        schema:
          required: [amount_cents, method]
          properties:
            amount_cents:
              type: integer
            method:
              type: string
              enum: [cash, card, bank, other]
            notes:
              type: string
    responses:
      201:
        description: Payment recorded
      422:
        description: Amount exceeds the remaining balance (remaining_before_cents reported)
    """
    payload = _payload()

    try:
        payment = package_ops.record_payment(
            package_id,
            _int_field(payload, "amount_cents", required=True),
            payload.get("method") or "",
            tolerance_cents=get_settings().payment_tolerance_cents,
            staff_id=_int_field(payload, "staff_id"),
            recorded_by=_actor_id(),
            notes=payload.get("notes"),
            currency=payload.get("currency"),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record package payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"payment": payment.to_dict(), "package": _package_payload(payment.package)}), 201


@bp.post("/packages/<int:package_id>/restore")
def restore_package_deduction(package_id: int) -> tuple[dict[str, object], int]:
    """Give back the latest deduction made for an appointment (idempotent)."""
    payload = _payload()

    try:
        package = package_ops.restore_deduction(
            package_id,
            appointment_id=_int_field(payload, "appointment_id"),
            appointment_ref=(payload.get("appointment_ref") or "").strip().upper() or None,
            note=payload.get("note"),
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to restore package deduction", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"package": _package_payload(package)}), 200


@bp.put("/packages/<int:package_id>/status")
def update_package_status(package_id: int) -> tuple[dict[str, object], int]:
    payload = _payload()
    _required(payload, "status")

    try:
        package = package_ops.set_package_status(package_id, payload["status"])
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update package status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"package": _package_payload(package)}), 200


@bp.post("/payments/<int:payment_id>/void")
def void_payment(payment_id: int) -> tuple[dict[str, object], int]:
    try:
        payment = package_ops.void_payment(payment_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to void payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"payment": payment.to_dict()}), 200


def register_routes(app: Flask) -> None:
    app.register_blueprint(bp)
