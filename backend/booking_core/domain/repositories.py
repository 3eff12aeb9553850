from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from ..models import Appointment, AppointmentStatus, AuditAction, AuditLogEntry, Reservation, Service, SystemMetric


@dataclass(frozen=True)
class ReservationStats:
    active_count: int
    expired_count: int
    oldest_active_created_at: datetime | None


class ServiceRepository(Protocol):
    async def get(self, business_id: str, service_id: str) -> Service | None: ...

    async def get_for_update(self, business_id: str, service_id: str) -> Service | None: ...


class ReservationRepository(Protocol):
    async def get(self, reservation_id: str) -> Reservation | None: ...

    async def get_for_update(self, reservation_id: str) -> Reservation | None: ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> Reservation | None: ...

    async def count_active_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> int: ...

    async def create(
        self,
        *,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_key: str,
        expires_at: datetime,
    ) -> Reservation: ...

    async def delete(self, reservation: Reservation) -> None: ...

    async def delete_expired(self, now: datetime) -> int: ...

    async def stats(self, now: datetime) -> ReservationStats: ...


class AppointmentRepository(Protocol):
    async def get(self, appointment_id: str) -> Appointment | None: ...

    async def get_for_update(self, appointment_id: str) -> Appointment | None: ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> Appointment | None: ...

    async def get_by_booking_reference(self, booking_reference: str) -> Appointment | None: ...

    async def count_booked_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> int: ...

    async def create(self, appointment: Appointment) -> Appointment: ...

    async def save(self, appointment: Appointment) -> Appointment: ...

    async def list_for_business(
        self,
        business_id: str,
        *,
        service_id: str | None = None,
        status: AppointmentStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Appointment]: ...


class AuditLogRepository(Protocol):
    async def append(
        self,
        *,
        appointment_id: str,
        actor_id: str | None,
        action: AuditAction,
        before: dict[str, Any] | None,
        after: dict[str, Any],
    ) -> AuditLogEntry: ...

    async def list_for_appointment(self, appointment_id: str) -> list[AuditLogEntry]: ...


class MetricRepository(Protocol):
    async def record(self, name: str, value: int, recorded_at: datetime) -> SystemMetric: ...

    async def latest(self, name: str) -> SystemMetric | None: ...
