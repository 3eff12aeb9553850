from datetime import datetime, timedelta

import pytest
from booking_core.domain.errors import InvalidTransitionError, SlotUnavailableError, ValidationError
from booking_core.domain.services import (
    CapacitySnapshot,
    Contact,
    TtlBounds,
    audit_action_for,
    clamp_ttl,
    ensure_capacity,
    ensure_transition,
    is_terminal,
    reservation_expiry,
    validate_contact,
    validate_idempotency_key,
    validate_window,
    windows_overlap,
)
from booking_core.models import AppointmentStatus, AuditAction

T0 = datetime(2030, 1, 1, 10, 0)
BOUNDS = TtlBounds(default=15, minimum=1, maximum=60)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def test_overlapping_windows_intersect() -> None:
    assert windows_overlap(_at(0), _at(60), _at(30), _at(90))
    assert windows_overlap(_at(30), _at(90), _at(0), _at(60))
    assert windows_overlap(_at(0), _at(60), _at(15), _at(45))


def test_touching_windows_do_not_overlap() -> None:
    assert not windows_overlap(_at(0), _at(60), _at(60), _at(120))
    assert not windows_overlap(_at(60), _at(120), _at(0), _at(60))


def test_capacity_snapshot_never_goes_negative() -> None:
    assert CapacitySnapshot(capacity=2, reserved=3, booked=1).available == 0


def test_ensure_capacity_returns_remaining_after_one_more() -> None:
    assert ensure_capacity(CapacitySnapshot(capacity=3, reserved=1, booked=0)) == 1


def test_ensure_capacity_rejects_when_full() -> None:
    with pytest.raises(SlotUnavailableError):
        ensure_capacity(CapacitySnapshot(capacity=2, reserved=1, booked=1))


@pytest.mark.parametrize(
    ("requested", "expected"),
    [(None, 15), (float("nan"), 15), (0, 1), (-5, 1), (0.5, 1), (30, 30), (500, 60)],
)
def test_clamp_ttl(requested: float | None, expected: float) -> None:
    assert clamp_ttl(requested, BOUNDS) == expected


def test_reservation_expiry_adds_minutes() -> None:
    assert reservation_expiry(T0, 15) == _at(15)


def test_validate_window_rejects_empty_and_inverted() -> None:
    with pytest.raises(ValidationError):
        validate_window(_at(60), _at(60), now=T0)
    with pytest.raises(ValidationError):
        validate_window(_at(60), _at(30), now=T0)


def test_validate_window_rejects_past_start() -> None:
    with pytest.raises(ValidationError):
        validate_window(_at(-1), _at(30), now=T0)


def test_validate_window_accepts_start_equal_to_now() -> None:
    validate_window(T0, _at(30), now=T0)


def test_validate_idempotency_key_strips_and_bounds() -> None:
    assert validate_idempotency_key("  abc ") == "abc"
    with pytest.raises(ValidationError):
        validate_idempotency_key("   ")
    with pytest.raises(ValidationError):
        validate_idempotency_key("k" * 256)


def test_contact_requires_customer_or_full_guest_details() -> None:
    assert validate_contact(Contact(customer_id="cust-1")).customer_id == "cust-1"
    validate_contact(Contact(guest_email="a@example.com", guest_phone="+100"))
    with pytest.raises(ValidationError):
        validate_contact(Contact(guest_email="a@example.com"))
    with pytest.raises(ValidationError):
        validate_contact(Contact(guest_name="Ann", guest_phone="+100"))


@pytest.mark.parametrize(
    "target",
    [AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELED],
)
def test_confirmed_can_move_to_any_final_state(target: AppointmentStatus) -> None:
    ensure_transition(AppointmentStatus.CONFIRMED, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (AppointmentStatus.COMPLETED, AppointmentStatus.CONFIRMED),
        (AppointmentStatus.CANCELED, AppointmentStatus.CONFIRMED),
        (AppointmentStatus.NO_SHOW, AppointmentStatus.COMPLETED),
        (AppointmentStatus.CONFIRMED, AppointmentStatus.CONFIRMED),
    ],
)
def test_other_transitions_rejected(current: AppointmentStatus, target: AppointmentStatus) -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_transition(current, target)


def test_only_confirmed_is_not_terminal() -> None:
    assert not is_terminal(AppointmentStatus.CONFIRMED)
    assert all(
        is_terminal(s) for s in (AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELED)
    )


def test_audit_action_follows_status_change() -> None:
    assert audit_action_for(AppointmentStatus.CONFIRMED, AppointmentStatus.CONFIRMED) == AuditAction.UPDATED
    assert audit_action_for(AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW) == AuditAction.NO_SHOW
    assert audit_action_for(AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELED) == AuditAction.CANCELED
