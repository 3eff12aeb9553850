from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

from .models import Appointment, AppointmentStatus, AuditAction, AuditLogEntry, Reservation
from .usecases.cleanup import CleanupResult, HealthStatus, ReservationHealth
from .usecases.reservations import InvalidReason, ReservationValidation
from .utils.time import utc_naive_to_aware


def _iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """Stored datetimes are naive UTC; render them with an explicit offset."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = utc_naive_to_aware(dt)
    return dt.isoformat()


class ContactPayload(BaseModel):
    customer_id: Optional[str] = Field(default=None, max_length=36)
    guest_name: Optional[str] = Field(default=None, max_length=255)
    guest_email: Optional[str] = Field(default=None, max_length=255)
    guest_phone: Optional[str] = Field(default=None, max_length=50)


class ReservationCreate(BaseModel):
    business_id: str
    service_id: str
    slot_start: datetime
    slot_end: datetime
    idempotency_key: str = Field(min_length=1, max_length=255)
    ttl_minutes: Optional[float] = None


class ReservationRead(BaseModel):
    reservation_id: str
    business_id: str
    service_id: str
    slot_start: datetime
    slot_end: datetime
    expires_at: datetime

    @field_serializer("slot_start", "slot_end", "expires_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_db(cls, *, reservation: Reservation) -> "ReservationRead":
        return cls(
            reservation_id=reservation.id,
            business_id=reservation.business_id,
            service_id=reservation.service_id,
            slot_start=reservation.slot_start,
            slot_end=reservation.slot_end,
            expires_at=reservation.expires_at,
        )


class ReservationValidationRead(BaseModel):
    valid: bool
    reason: Optional[InvalidReason] = None
    expires_at: Optional[datetime] = None

    @field_serializer("expires_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_result(cls, result: ReservationValidation) -> "ReservationValidationRead":
        return cls(
            valid=result.valid,
            reason=result.reason,
            expires_at=result.reservation.expires_at if result.reservation is not None else None,
        )


class ReservationCommit(BaseModel):
    reservation_id: str
    contact: ContactPayload


class CapacityRead(BaseModel):
    business_id: str
    service_id: str
    available: int


class ManualAppointmentCreate(BaseModel):
    business_id: str
    service_id: str
    slot_start: datetime
    slot_end: datetime
    contact: ContactPayload
    idempotency_key: str = Field(min_length=1, max_length=255)


class AppointmentUpdate(BaseModel):
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    status: Optional[AppointmentStatus] = None
    customer_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    version: Optional[int] = Field(default=None, ge=1)


class AppointmentCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)
    # Required when the caller is not signed in.
    cancellation_token: Optional[str] = None


class GuestCancel(BaseModel):
    token: str = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=1000)


class GuestReschedule(BaseModel):
    token: str = Field(..., min_length=1)
    slot_start: datetime
    slot_end: datetime
    version: Optional[int] = Field(default=None, ge=1)


class AppointmentTransition(BaseModel):
    status: AppointmentStatus
    version: Optional[int] = Field(default=None, ge=1)


class AppointmentRead(BaseModel):
    appointment_id: str
    booking_reference: str
    business_id: str
    service_id: str
    customer_id: Optional[str]
    guest_name: Optional[str]
    guest_email: Optional[str]
    guest_phone: Optional[str]
    slot_start: datetime
    slot_end: datetime
    status: AppointmentStatus
    version: int
    origin_reservation_id: Optional[str]
    cancellation_reason: Optional[str]
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @field_serializer("slot_start", "slot_end", "deleted_at", "created_at", "updated_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_db(cls, *, appointment: Appointment) -> "AppointmentRead":
        return cls(
            appointment_id=appointment.id,
            booking_reference=appointment.booking_reference,
            business_id=appointment.business_id,
            service_id=appointment.service_id,
            customer_id=appointment.customer_id,
            guest_name=appointment.guest_name,
            guest_email=appointment.guest_email,
            guest_phone=appointment.guest_phone,
            slot_start=appointment.slot_start,
            slot_end=appointment.slot_end,
            status=appointment.status,
            version=appointment.version,
            origin_reservation_id=appointment.origin_reservation_id,
            cancellation_reason=appointment.cancellation_reason,
            deleted_at=appointment.deleted_at,
            created_at=appointment.created_at,
            updated_at=appointment.updated_at,
        )


class AppointmentCreated(AppointmentRead):
    # Only returned once, to whoever created the booking.
    cancellation_token: Optional[str] = None

    @classmethod
    def from_db(cls, *, appointment: Appointment) -> "AppointmentCreated":
        base = AppointmentRead.from_db(appointment=appointment)
        return cls(**dict(base), cancellation_token=appointment.cancellation_token)


class AuditLogRead(BaseModel):
    audit_log_id: str
    appointment_id: str
    actor_id: Optional[str]
    action: AuditAction
    before: Optional[dict[str, Any]]
    after: dict[str, Any]
    timestamp: datetime

    @field_serializer("timestamp")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_db(cls, *, entry: AuditLogEntry) -> "AuditLogRead":
        return cls(
            audit_log_id=entry.id,
            appointment_id=entry.appointment_id,
            actor_id=entry.actor_id,
            action=entry.action,
            before=entry.before_snapshot,
            after=entry.after_snapshot,
            timestamp=entry.timestamp,
        )


class CleanupRead(BaseModel):
    removed_count: int
    ran_at: datetime
    duration_ms: int

    @field_serializer("ran_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_result(cls, result: CleanupResult) -> "CleanupRead":
        return cls(removed_count=result.removed_count, ran_at=result.ran_at, duration_ms=result.duration_ms)


class ReservationHealthRead(BaseModel):
    status: HealthStatus
    healthy: bool
    active_count: int
    expired_count: int
    last_cleanup_at: Optional[datetime]
    last_cleanup_count: Optional[int]
    last_failure_at: Optional[datetime]
    issues: list[str]

    @field_serializer("last_cleanup_at", "last_failure_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return _iso_utc(dt)

    @classmethod
    def from_health(cls, health: ReservationHealth) -> "ReservationHealthRead":
        return cls(
            status=health.status,
            healthy=health.healthy,
            active_count=health.active_count,
            expired_count=health.expired_count,
            last_cleanup_at=health.last_cleanup_at,
            last_cleanup_count=health.last_cleanup_count,
            last_failure_at=health.last_failure_at,
            issues=health.issues,
        )
