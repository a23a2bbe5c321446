"""Package creation, deductions, rollbacks and payments."""
from __future__ import annotations

from datetime import date, time

import pytest
from sqlalchemy.exc import IntegrityError

from clinic import appointments
from clinic import packages as ledger
from clinic.errors import InsufficientBalanceError, NotFoundError, ValidationError
from clinic.extensions import db
from clinic.models import Minutes, PackageLog, PackagePayment, Sessions

TODAY = date(2030, 1, 6)


@pytest.fixture
def sessions_package(customer, session_service):
    return ledger.create_package(customer.user_id, session_service)


@pytest.fixture
def minutes_package(customer, minutes_service):
    return ledger.create_package(customer.user_id, minutes_service)


def _logs(package):
    return PackageLog.query.filter_by(service_package_id=package.package_id).order_by(PackageLog.log_id).all()


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def test_create_sessions_package_snapshots_template(sessions_package, session_service):
    assert sessions_package.balance == Sessions(6)
    assert sessions_package.snapshot_total_sessions == 6
    assert sessions_package.snapshot_total_minutes is None
    assert sessions_package.price_total_cents == 45000
    assert sessions_package.amount_paid_cents == 0
    assert sessions_package.status == "active"
    assert sessions_package.service_name == session_service.name


def test_create_minutes_package(minutes_package):
    assert minutes_package.balance == Minutes(120)
    assert minutes_package.to_dict()["type"] == "minutes"


def test_store_refuses_a_package_with_both_balances(sessions_package):
    sessions_package.remaining_minutes = 30

    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()

    assert ledger.get_package(sessions_package.package_id).balance == Sessions(6)


def test_create_package_with_price_and_validity(customer, session_service):
    package = ledger.create_package(
        customer.user_id,
        session_service,
        price_total_cents=40000,
        currency="usd",
        starts_on="2030-01-01",
        expires_on="2030-06-30",
    )

    assert package.price_total_cents == 40000
    assert package.currency == "USD"
    assert package.expires_on == date(2030, 6, 30)


def test_template_must_define_exactly_one_balance(customer, make_service):
    neither = make_service(name="Broken", is_package=True)
    both = make_service(name="Confused", is_package=True, total_sessions=3, total_minutes=90)

    with pytest.raises(ValidationError):
        ledger.create_package(customer.user_id, neither)
    with pytest.raises(ValidationError):
        ledger.create_package(customer.user_id, both)


def test_regular_service_is_not_a_package(customer, laser):
    with pytest.raises(ValidationError):
        ledger.create_package(customer.user_id, laser)


def test_unknown_customer(session_service):
    with pytest.raises(NotFoundError):
        ledger.create_package(999, session_service)


def test_validity_window_must_be_ordered(customer, session_service):
    with pytest.raises(ValidationError):
        ledger.create_package(customer.user_id, session_service, starts_on="2030-02-01", expires_on="2030-01-01")


# ---------------------------------------------------------------------------
# Deductions
# ---------------------------------------------------------------------------

def test_six_sessions_then_insufficient(sessions_package):
    for _ in range(6):
        ledger.deduct_sessions(sessions_package.package_id, 1, note="walk-in")

    assert sessions_package.remaining_sessions == 0
    assert sessions_package.status == "exhausted"

    with pytest.raises(InsufficientBalanceError) as excinfo:
        ledger.deduct_sessions(sessions_package.package_id, 1)

    assert excinfo.value.context["remaining_sessions"] == 0
    assert ledger.get_package(sessions_package.package_id).remaining_sessions == 0
    assert len(_logs(sessions_package)) == 6


def test_session_deduction_never_goes_below_zero(sessions_package):
    ledger.deduct_sessions(sessions_package.package_id, 4)

    with pytest.raises(InsufficientBalanceError):
        ledger.deduct_sessions(sessions_package.package_id, 3)

    assert ledger.get_package(sessions_package.package_id).remaining_sessions == 2


def test_sessions_deduction_requires_active_package(sessions_package):
    ledger.set_package_status(sessions_package.package_id, "cancelled")

    with pytest.raises(ValidationError):
        ledger.deduct_sessions(sessions_package.package_id, 1)


def test_deduction_type_must_match(sessions_package, minutes_package):
    with pytest.raises(ValidationError):
        ledger.deduct_minutes(sessions_package.package_id, 30)
    with pytest.raises(ValidationError):
        ledger.deduct_sessions(minutes_package.package_id, 1)


def test_minutes_may_go_negative(minutes_package):
    ledger.deduct_minutes(minutes_package.package_id, 100)
    ledger.deduct_minutes(minutes_package.package_id, 50, staff_id=None, note="overtime")

    package = ledger.get_package(minutes_package.package_id)
    assert package.remaining_minutes == -30
    assert package.status == "active"
    assert ledger.package_warnings(package, TODAY) == ["negative_minutes_balance"]


def test_minutes_to_exactly_zero_stays_active(minutes_package):
    ledger.deduct_minutes(minutes_package.package_id, 120)

    assert minutes_package.remaining_minutes == 0
    assert minutes_package.status == "active"


def test_deduction_amount_must_be_positive(sessions_package):
    with pytest.raises(ValidationError):
        ledger.deduct_sessions(sessions_package.package_id, 0)


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

def test_complete_then_revert_is_idempotent(customer, sessions_package, session_service, alice, make_appointment):
    appointment = make_appointment(session_service, alice, user=customer, package=sessions_package)
    appointments.complete(appointment.appointment_id)
    assert sessions_package.remaining_sessions == 5

    appointments.revert_completion(appointment.appointment_id)
    assert sessions_package.remaining_sessions == 6

    ledger.restore_deduction(sessions_package.package_id, appointment_ref=appointment.reference_code)
    assert sessions_package.remaining_sessions == 6

    logs = _logs(sessions_package)
    assert [log.used_sessions for log in logs] == [1, 0]
    assert logs[1].reverses_log_id == logs[0].log_id
    assert logs[1].is_rollback


def test_restore_twice_changes_balance_once(sessions_package):
    ledger.deduct_sessions(sessions_package.package_id, 1, appointment_ref="ABCDEFGHIJ")

    ledger.restore_deduction(sessions_package.package_id, appointment_ref="ABCDEFGHIJ")
    ledger.restore_deduction(sessions_package.package_id, appointment_ref="ABCDEFGHIJ")

    assert sessions_package.remaining_sessions == 6
    assert len(_logs(sessions_package)) == 2


def test_restore_reactivates_exhausted_package(sessions_package):
    ledger.deduct_sessions(sessions_package.package_id, 6, appointment_ref="REF0000001")
    assert sessions_package.status == "exhausted"

    ledger.restore_deduction(sessions_package.package_id, appointment_ref="REF0000001", note="refund")

    assert sessions_package.remaining_sessions == 6
    assert sessions_package.status == "active"
    assert _logs(sessions_package)[-1].note == "refund"


def test_restore_minutes(minutes_package):
    ledger.deduct_minutes(minutes_package.package_id, 45, appointment_ref="MINUTES001")

    ledger.restore_deduction(minutes_package.package_id, appointment_ref="MINUTES001")

    assert minutes_package.remaining_minutes == 120
    assert _logs(minutes_package)[-1].used_minutes == 0


def test_restore_without_deduction_is_a_no_op(sessions_package):
    ledger.restore_deduction(sessions_package.package_id, appointment_id=12345)

    assert sessions_package.remaining_sessions == 6
    assert _logs(sessions_package) == []


def test_restore_requires_a_reference(sessions_package):
    with pytest.raises(ValidationError):
        ledger.restore_deduction(sessions_package.package_id)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def test_payment_ceiling(sessions_package):
    ledger.record_payment(sessions_package.package_id, 20000, "cash")
    ledger.record_payment(sessions_package.package_id, 20000, "card")

    assert sessions_package.amount_paid_cents == 40000
    assert sessions_package.remaining_to_pay_cents == 5000

    with pytest.raises(InsufficientBalanceError) as excinfo:
        ledger.record_payment(sessions_package.package_id, 10000, "cash")

    assert excinfo.value.context["remaining_before_cents"] == 5000
    assert excinfo.value.context["remaining_before"] == 50.0
    assert PackagePayment.query.filter_by(service_package_id=sessions_package.package_id).count() == 2


def test_payment_tolerance_is_one_cent(sessions_package):
    ledger.record_payment(sessions_package.package_id, 45000, "bank")
    with pytest.raises(InsufficientBalanceError):
        ledger.record_payment(sessions_package.package_id, 2, "cash")

    ledger.record_payment(sessions_package.package_id, 1, "cash")
    assert sessions_package.remaining_to_pay_cents == 0


def test_fully_paid_package_refuses_further_cents(sessions_package):
    ledger.record_payment(sessions_package.package_id, 45000, "card")
    ledger.record_payment(sessions_package.package_id, 1, "cash")

    for _ in range(5):
        with pytest.raises(InsufficientBalanceError) as excinfo:
            ledger.record_payment(sessions_package.package_id, 1, "cash")
        assert excinfo.value.context["remaining_before_cents"] == 0

    assert sessions_package.amount_paid_cents == 45001


def test_fully_paid_appointment_refuses_further_cents(laser, alice, customer, make_appointment):
    appointment = make_appointment(laser, alice, user=customer)
    ledger.record_appointment_payment(appointment.appointment_id, 5000, "card")
    ledger.record_appointment_payment(appointment.appointment_id, 1, "cash")

    with pytest.raises(InsufficientBalanceError):
        ledger.record_appointment_payment(appointment.appointment_id, 1, "cash")

    assert appointment.amount_paid_cents == 5001


def test_payment_requires_a_price(customer, session_service):
    free = ledger.create_package(customer.user_id, session_service, price_total_cents=0)

    with pytest.raises(ValidationError):
        ledger.record_payment(free.package_id, 100, "cash")


@pytest.mark.parametrize("amount, method", [(0, "cash"), (-5, "cash"), (100, "bitcoin")])
def test_payment_input_is_validated(sessions_package, amount, method):
    with pytest.raises(ValidationError):
        ledger.record_payment(sessions_package.package_id, amount, method)


def test_voided_payment_frees_the_balance(sessions_package):
    payment = ledger.record_payment(sessions_package.package_id, 45000, "card")

    voided = ledger.void_payment(payment.payment_id)
    stamp = voided.voided_at
    assert ledger.void_payment(payment.payment_id).voided_at == stamp

    assert sessions_package.amount_paid_cents == 0
    ledger.record_payment(sessions_package.package_id, 45000, "cash")


def test_void_unknown_payment(app):
    with pytest.raises(NotFoundError):
        ledger.void_payment(404)


def test_appointment_payment(laser, alice, customer, make_appointment):
    appointment = make_appointment(laser, alice, user=customer)

    payment = ledger.record_appointment_payment(appointment.appointment_id, 3000, "card")

    assert payment.service_package_id is None
    assert appointment.amount_paid_cents == 3000
    assert appointment.remaining_to_pay_cents == 2000
    with pytest.raises(InsufficientBalanceError):
        ledger.record_appointment_payment(appointment.appointment_id, 2500, "cash")


def test_package_appointments_are_paid_on_the_package(customer, sessions_package, session_service, alice,
                                                       make_appointment):
    appointment = make_appointment(session_service, alice, user=customer, package=sessions_package)

    with pytest.raises(ValidationError):
        ledger.record_appointment_payment(appointment.appointment_id, 1000, "cash")
    assert appointment.remaining_to_pay_cents == 0


# ---------------------------------------------------------------------------
# Manual usage and administration
# ---------------------------------------------------------------------------

def test_use_package_for_walk_in(sessions_package, alice):
    package = ledger.use_package(
        sessions_package.package_id, "sessions", 2, today=TODAY, staff_id=alice.staff_id, note="walk-in"
    )

    assert package.remaining_sessions == 4
    log = _logs(package)[0]
    assert log.staff_id == alice.staff_id
    assert log.appointment_ref is None


def test_use_package_links_appointment_reference(customer, minutes_package, minutes_service, alice, make_appointment):
    appointment = make_appointment(minutes_service, alice, user=customer, starts_at=time(15, 0))

    ledger.use_package(
        minutes_package.package_id, "minutes", 30, today=TODAY, appointment_id=appointment.appointment_id
    )

    assert _logs(minutes_package)[0].appointment_ref == appointment.reference_code


def test_use_package_checks_validity(customer, session_service):
    package = ledger.create_package(
        customer.user_id, session_service, starts_on="2030-01-10", expires_on="2030-02-10"
    )

    with pytest.raises(ValidationError):
        ledger.use_package(package.package_id, "sessions", 1, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.use_package(package.package_id, "sessions", 1, today=date(2030, 3, 1))
    ledger.use_package(package.package_id, "sessions", 1, today=date(2030, 1, 10))


def test_use_package_rejects_unknown_kind(sessions_package):
    with pytest.raises(ValidationError):
        ledger.use_package(sessions_package.package_id, "hours", 1, today=TODAY)


def test_set_package_status(sessions_package):
    ledger.set_package_status(sessions_package.package_id, "expired")
    assert sessions_package.status == "expired"
    assert "not_active" in ledger.package_warnings(sessions_package, TODAY)

    with pytest.raises(ValidationError):
        ledger.set_package_status(sessions_package.package_id, "frozen")


def test_expired_validity_warning(customer, session_service):
    package = ledger.create_package(customer.user_id, session_service, expires_on="2030-01-01")

    assert ledger.package_warnings(package, TODAY) == ["expired_validity"]


def test_find_reusable_package_prefers_oldest(customer, session_service):
    newer = ledger.create_package(customer.user_id, session_service, starts_on="2030-01-05")
    older = ledger.create_package(customer.user_id, session_service, starts_on="2030-01-01")
    used_up = ledger.create_package(customer.user_id, session_service, starts_on="2029-12-01")
    ledger.deduct_sessions(used_up.package_id, 6)

    assert ledger.find_reusable_package(customer.user_id, session_service.service_id, TODAY) == older

    ledger.set_package_status(older.package_id, "cancelled")
    assert ledger.find_reusable_package(customer.user_id, session_service.service_id, TODAY) == newer

    db.session.delete(newer)
    db.session.commit()
    assert ledger.find_reusable_package(customer.user_id, session_service.service_id, TODAY) is None
