"""Appointment status transitions and their side effects."""
from __future__ import annotations

from datetime import date, time

import pytest

from clinic import appointments
from clinic.errors import (ConflictError, InsufficientBalanceError, InvalidTransitionError, NotFoundError,
                           ValidationError)
from clinic.models import AppointmentLog, PackageLog
from clinic.packages import create_package

SUNDAY = date(2030, 1, 6)


def _actions(appointment):
    return [
        log.action
        for log in AppointmentLog.query.filter_by(appointment_id=appointment.appointment_id).order_by(AppointmentLog.log_id)
    ]


@pytest.mark.parametrize(
    "start, target",
    [
        ("pending", "confirmed"),
        ("pending", "cancelled"),
        ("pending", "no_show"),
        ("confirmed", "completed"),
        ("confirmed", "cancelled"),
        ("confirmed", "no_show"),
    ],
)
def test_allowed_transitions(laser, alice, make_appointment, start, target):
    appointment = make_appointment(laser, alice, status=start)

    result = appointments.transition(appointment.appointment_id, target, actor_id=7)

    assert result.appointment.status == target
    assert result.events[0] == "status_changed"
    log = AppointmentLog.query.filter_by(appointment_id=appointment.appointment_id).one()
    assert log.meta == {"from": start, "to": target}
    assert log.user_id == 7


@pytest.mark.parametrize(
    "start, target",
    [
        ("pending", "completed"),
        ("confirmed", "pending"),
        ("completed", "cancelled"),
        ("completed", "pending"),
        ("cancelled", "confirmed"),
        ("no_show", "confirmed"),
        ("cancelled", "pending"),
    ],
)
def test_forbidden_transitions(laser, alice, make_appointment, start, target):
    appointment = make_appointment(laser, alice, status=start)

    with pytest.raises(InvalidTransitionError) as excinfo:
        appointments.transition(appointment.appointment_id, target)

    assert start in excinfo.value.message and target in excinfo.value.message
    assert appointments.get_appointment(appointment.appointment_id).status == start
    assert _actions(appointment) == []


def test_unknown_status_is_rejected(laser, alice, make_appointment):
    appointment = make_appointment(laser, alice, status="pending")

    with pytest.raises(ValidationError):
        appointments.transition(appointment.appointment_id, "archived")


def test_missing_appointment(app):
    with pytest.raises(NotFoundError):
        appointments.confirm(9999)


def test_confirm_rechecks_for_overlap(laser, alice, make_appointment):
    make_appointment(laser, alice, starts_at=time(10, 0), status="pending")
    racer = make_appointment(laser, alice, starts_at=time(10, 30), status="pending")

    with pytest.raises(ConflictError):
        appointments.confirm(racer.appointment_id)

    assert appointments.get_appointment(racer.appointment_id).status == "pending"


def test_complete_without_package_has_no_side_effects(laser, alice, make_appointment):
    appointment = make_appointment(laser, alice, status="confirmed")

    result = appointments.complete(appointment.appointment_id)

    assert result.events == ["status_changed"]


def test_complete_deducts_one_session(customer, session_service, alice, make_appointment):
    package = create_package(customer.user_id, session_service)
    appointment = make_appointment(session_service, alice, user=customer, package=package)

    result = appointments.complete(appointment.appointment_id)

    assert result.events == ["status_changed", "package_deducted"]
    assert package.remaining_sessions == 5
    deduction = PackageLog.query.filter_by(service_package_id=package.package_id).one()
    assert deduction.used_sessions == 1
    assert deduction.appointment_ref == appointment.reference_code
    assert _actions(appointment) == ["status_changed", "package_deducted"]


def test_complete_deducts_duration_from_minutes_package(customer, minutes_service, alice, make_appointment):
    package = create_package(customer.user_id, minutes_service)
    appointment = make_appointment(minutes_service, alice, user=customer, package=package, duration_minutes=45)

    appointments.complete(appointment.appointment_id)

    assert package.remaining_minutes == 75


def test_deduction_runs_once_per_appointment(customer, session_service, alice, make_appointment):
    package = create_package(customer.user_id, session_service)
    appointment = make_appointment(session_service, alice, user=customer, package=package)
    appointments.complete(appointment.appointment_id)

    # The completed status is terminal, so a second completion cannot happen.
    with pytest.raises(InvalidTransitionError):
        appointments.complete(appointment.appointment_id)

    assert package.remaining_sessions == 5
    assert PackageLog.query.filter_by(service_package_id=package.package_id).count() == 1


def test_failed_deduction_rolls_back_completion(customer, session_service, alice, make_appointment):
    package = create_package(customer.user_id, session_service)
    package.remaining_sessions = 0
    package.status = "exhausted"
    appointment = make_appointment(session_service, alice, user=customer, package=package)

    with pytest.raises(InsufficientBalanceError):
        appointments.complete(appointment.appointment_id)

    assert appointments.get_appointment(appointment.appointment_id).status == "confirmed"
    assert _actions(appointment) == []


def test_revert_completion_restores_package(customer, session_service, alice, make_appointment):
    package = create_package(customer.user_id, session_service)
    appointment = make_appointment(session_service, alice, user=customer, package=package)
    appointments.complete(appointment.appointment_id)

    result = appointments.revert_completion(appointment.appointment_id, actor_id=3, note="Booked by mistake")

    assert result.appointment.status == "cancelled"
    assert result.events == ["package_restored", "status_changed"]
    assert package.remaining_sessions == 6
    assert package.status == "active"
    last = AppointmentLog.query.filter_by(appointment_id=appointment.appointment_id).order_by(
        AppointmentLog.log_id.desc()
    ).first()
    assert last.meta["administrative"] is True
    assert last.meta["from"] == "completed"


def test_revert_completion_only_from_completed(laser, alice, make_appointment):
    appointment = make_appointment(laser, alice, status="confirmed")

    with pytest.raises(InvalidTransitionError):
        appointments.revert_completion(appointment.appointment_id)


def test_customer_cancel(customer, laser, alice, make_appointment, settings, clock):
    appointment = make_appointment(laser, alice, user=customer, status="pending")

    result = appointments.cancel_by_customer(
        appointment.appointment_id, customer.user_id, settings=settings, clock=clock
    )

    assert result.appointment.status == "cancelled"
    assert AppointmentLog.query.filter_by(appointment_id=appointment.appointment_id).one().user_id == customer.user_id


def test_customer_cannot_cancel_someone_elses_booking(customer, laser, alice, make_appointment, settings, clock):
    appointment = make_appointment(laser, alice, user=customer)

    with pytest.raises(NotFoundError):
        appointments.cancel_by_customer(appointment.appointment_id, customer.user_id + 1, settings=settings, clock=clock)


def test_customer_cancel_respects_notice(customer, laser, alice, make_appointment, settings, clock):
    # Clock is Sunday 12:00; the notice window is two hours.
    appointment = make_appointment(laser, alice, user=customer, day=SUNDAY, starts_at=time(13, 30))

    with pytest.raises(ValidationError):
        appointments.cancel_by_customer(appointment.appointment_id, customer.user_id, settings=settings, clock=clock)

    assert appointments.get_appointment(appointment.appointment_id).status == "confirmed"


def test_customer_cancel_of_completed_booking(customer, laser, alice, make_appointment, settings, clock):
    appointment = make_appointment(laser, alice, user=customer, status="completed")

    with pytest.raises(InvalidTransitionError):
        appointments.cancel_by_customer(appointment.appointment_id, customer.user_id, settings=settings, clock=clock)
