import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..models import AppointmentStatus, AuditAction
from .errors import InvalidTransitionError, SlotUnavailableError, ValidationError

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.CANCELED: frozenset(),
}

_STATUS_ACTIONS = {
    AppointmentStatus.COMPLETED: AuditAction.COMPLETED,
    AppointmentStatus.NO_SHOW: AuditAction.NO_SHOW,
    AppointmentStatus.CANCELED: AuditAction.CANCELED,
}


def windows_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open [start, end) intersection. Touching windows do not overlap."""
    return start_a < end_b and start_b < end_a


@dataclass(frozen=True)
class CapacitySnapshot:
    capacity: int
    reserved: int
    booked: int

    @property
    def available(self) -> int:
        return max(self.capacity - self.reserved - self.booked, 0)


def ensure_capacity(snapshot: CapacitySnapshot) -> int:
    """
    Pure capacity decision for the check-and-write primitive.
    Returns remaining capacity after one more booking, raises SlotUnavailableError otherwise.
    """
    if snapshot.available < 1:
        raise SlotUnavailableError("the selected time slot is no longer available")
    return snapshot.available - 1


@dataclass(frozen=True)
class TtlBounds:
    default: float
    minimum: float
    maximum: float


def clamp_ttl(ttl_minutes: Optional[float], bounds: TtlBounds) -> float:
    """Missing TTL falls back to the default; anything out of range is clamped silently."""
    if ttl_minutes is None or math.isnan(ttl_minutes):
        return bounds.default
    return min(max(ttl_minutes, bounds.minimum), bounds.maximum)


def reservation_expiry(now: datetime, ttl_minutes: float) -> datetime:
    return now + timedelta(minutes=ttl_minutes)


def validate_window(slot_start: datetime, slot_end: datetime, *, now: datetime) -> None:
    if slot_start >= slot_end:
        raise ValidationError("slot_start must be earlier than slot_end")
    if slot_start < now:
        raise ValidationError("cannot book a slot in the past")


def validate_idempotency_key(key: str) -> str:
    key = (key or "").strip()
    if not key:
        raise ValidationError("idempotency_key is required")
    if len(key) > 255:
        raise ValidationError("idempotency_key must be at most 255 characters")
    return key


@dataclass(frozen=True)
class Contact:
    customer_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None


def validate_contact(contact: Contact) -> Contact:
    """Either an authenticated customer or a guest reachable by both email and phone."""
    if contact.customer_id:
        return contact
    if contact.guest_email and contact.guest_phone:
        return contact
    raise ValidationError("customer_id or both guest_email and guest_phone are required")


def ensure_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"cannot change status from {current.value} to {target.value}")


def is_terminal(status: AppointmentStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]


def audit_action_for(previous: AppointmentStatus, current: AppointmentStatus) -> AuditAction:
    if previous != current:
        return _STATUS_ACTIONS[current]
    return AuditAction.UPDATED
