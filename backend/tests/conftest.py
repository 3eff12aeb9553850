"""
In-memory stand-ins for the SQLAlchemy repositories.

FakeSession mirrors the parts of AsyncSession the use cases rely on: a transaction opened
with `session.begin()` and a per-service lock taken by `get_for_update` that is only
released when that transaction ends. Count queries yield to the event loop so unlocked
interleavings would actually race.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional

import pytest
from booking_core.domain.repositories import ReservationStats
from booking_core.domain.services import windows_overlap
from booking_core.models import (
    Appointment,
    AppointmentStatus,
    AuditAction,
    AuditLogEntry,
    Reservation,
    Service,
    SystemMetric,
    new_id,
)
from booking_core.utils.time import utc_now


class FakeLedger:
    def __init__(self) -> None:
        self.services: dict[str, Service] = {}
        self.reservations: dict[str, Reservation] = {}
        self.appointments: dict[str, Appointment] = {}
        self.audit_logs: list[AuditLogEntry] = []
        self.metrics: list[SystemMetric] = []
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def add_service(self, *, business_id: str = "biz-1", service_id: str = "svc-1", capacity: int = 1) -> Service:
        service = Service(
            id=service_id,
            business_id=business_id,
            name="Haircut",
            duration_minutes=30,
            max_simultaneous_bookings=capacity,
            deleted_at=None,
        )
        self.services[service_id] = service
        return service

    def lock_for(self, business_id: str, service_id: str) -> asyncio.Lock:
        return self._locks.setdefault((business_id, service_id), asyncio.Lock())

    def session(self) -> "FakeSession":
        return FakeSession(self)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["FakeRepos"]:
        session = self.session()
        async with session.begin():
            yield FakeRepos.for_session(session)


class _FakeTransaction:
    def __init__(self, session: "FakeSession") -> None:
        self.session = session

    async def __aenter__(self) -> "_FakeTransaction":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.session.release_locks()
        return False


class FakeSession:
    def __init__(self, ledger: FakeLedger) -> None:
        self.ledger = ledger
        self._held: list[asyncio.Lock] = []

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        self.release_locks()
        return False

    def begin(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    async def lock_service(self, business_id: str, service_id: str) -> None:
        lock = self.ledger.lock_for(business_id, service_id)
        if lock in self._held:
            return
        await lock.acquire()
        self._held.append(lock)

    def release_locks(self) -> None:
        while self._held:
            self._held.pop().release()


class FakeServiceRepo:
    def __init__(self, session: FakeSession) -> None:
        self.session = session
        self.ledger = session.ledger

    async def get(self, business_id: str, service_id: str) -> Optional[Service]:
        service = self.ledger.services.get(service_id)
        if service is None or service.business_id != business_id or service.deleted_at is not None:
            return None
        return service

    async def get_for_update(self, business_id: str, service_id: str) -> Optional[Service]:
        await self.session.lock_service(business_id, service_id)
        return await self.get(business_id, service_id)


class FakeReservationRepo:
    def __init__(self, session: FakeSession) -> None:
        self.ledger = session.ledger

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        return self.ledger.reservations.get(reservation_id)

    async def get_for_update(self, reservation_id: str) -> Optional[Reservation]:
        return self.ledger.reservations.get(reservation_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Reservation]:
        for reservation in self.ledger.reservations.values():
            if reservation.idempotency_key == idempotency_key:
                return reservation
        return None

    async def count_active_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> int:
        await asyncio.sleep(0)
        return sum(
            1
            for r in self.ledger.reservations.values()
            if r.business_id == business_id
            and r.service_id == service_id
            and r.expires_at > now
            and windows_overlap(r.slot_start, r.slot_end, start, end)
        )

    async def create(
        self,
        *,
        business_id: str,
        service_id: str,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_key: str,
        expires_at: datetime,
    ) -> Reservation:
        await asyncio.sleep(0)
        existing = await self.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            return existing
        reservation = Reservation(
            id=new_id(),
            business_id=business_id,
            service_id=service_id,
            slot_start=slot_start,
            slot_end=slot_end,
            idempotency_key=idempotency_key,
            expires_at=expires_at,
            created_at=utc_now(),
        )
        self.ledger.reservations[reservation.id] = reservation
        return reservation

    async def delete(self, reservation: Reservation) -> None:
        self.ledger.reservations.pop(reservation.id, None)

    async def delete_expired(self, now: datetime) -> int:
        expired = [rid for rid, r in self.ledger.reservations.items() if r.expires_at <= now]
        for rid in expired:
            del self.ledger.reservations[rid]
        return len(expired)

    async def stats(self, now: datetime) -> ReservationStats:
        active = [r for r in self.ledger.reservations.values() if r.expires_at > now]
        return ReservationStats(
            active_count=len(active),
            expired_count=len(self.ledger.reservations) - len(active),
            oldest_active_created_at=min((r.created_at for r in active), default=None),
        )


class FakeAppointmentRepo:
    def __init__(self, session: FakeSession) -> None:
        self.ledger = session.ledger

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        return self.ledger.appointments.get(appointment_id)

    async def get_for_update(self, appointment_id: str) -> Optional[Appointment]:
        return self.ledger.appointments.get(appointment_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Appointment]:
        for appointment in self.ledger.appointments.values():
            if appointment.idempotency_key == idempotency_key:
                return appointment
        return None

    async def get_by_booking_reference(self, booking_reference: str) -> Optional[Appointment]:
        for appointment in self.ledger.appointments.values():
            if appointment.booking_reference == booking_reference:
                return appointment
        return None

    async def count_booked_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        await asyncio.sleep(0)
        return sum(
            1
            for a in self.ledger.appointments.values()
            if a.business_id == business_id
            and a.service_id == service_id
            and a.status != AppointmentStatus.CANCELED
            and a.deleted_at is None
            and a.id != exclude_id
            and windows_overlap(a.slot_start, a.slot_end, start, end)
        )

    async def create(self, appointment: Appointment) -> Appointment:
        existing = await self.get_by_idempotency_key(appointment.idempotency_key)
        if existing is not None:
            return existing
        self.ledger.appointments[appointment.id] = appointment
        return appointment

    async def save(self, appointment: Appointment) -> Appointment:
        self.ledger.appointments[appointment.id] = appointment
        return appointment

    async def list_for_business(
        self,
        business_id: str,
        *,
        service_id: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Appointment]:
        rows = [
            a
            for a in self.ledger.appointments.values()
            if a.business_id == business_id
            and (service_id is None or a.service_id == service_id)
            and (status is None or a.status == status)
            and (start is None or a.slot_start >= start)
            and (end is None or a.slot_end <= end)
        ]
        return sorted(rows, key=lambda a: a.slot_start)


class FakeAuditLogRepo:
    def __init__(self, session: FakeSession) -> None:
        self.ledger = session.ledger

    async def append(
        self,
        *,
        appointment_id: str,
        actor_id: Optional[str],
        action: AuditAction,
        before: Optional[dict[str, Any]],
        after: dict[str, Any],
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=new_id(),
            appointment_id=appointment_id,
            actor_id=actor_id,
            action=action,
            before_snapshot=before,
            after_snapshot=after,
            timestamp=utc_now(),
        )
        self.ledger.audit_logs.append(entry)
        return entry

    async def list_for_appointment(self, appointment_id: str) -> list[AuditLogEntry]:
        return [e for e in self.ledger.audit_logs if e.appointment_id == appointment_id]


class FakeMetricRepo:
    def __init__(self, session: FakeSession) -> None:
        self.ledger = session.ledger

    async def record(self, name: str, value: int, recorded_at: datetime) -> SystemMetric:
        metric = SystemMetric(
            id=len(self.ledger.metrics) + 1,
            metric_name=name,
            metric_value=value,
            recorded_at=recorded_at,
        )
        self.ledger.metrics.append(metric)
        return metric

    async def latest(self, name: str) -> Optional[SystemMetric]:
        rows = [m for m in self.ledger.metrics if m.metric_name == name]
        if not rows:
            return None
        return max(rows, key=lambda m: (m.recorded_at, m.id))


@dataclass
class FakeRepos:
    services: FakeServiceRepo
    reservations: FakeReservationRepo
    appointments: FakeAppointmentRepo
    audit_logs: FakeAuditLogRepo
    metrics: FakeMetricRepo

    @classmethod
    def for_session(cls, session: FakeSession) -> "FakeRepos":
        return cls(
            services=FakeServiceRepo(session),
            reservations=FakeReservationRepo(session),
            appointments=FakeAppointmentRepo(session),
            audit_logs=FakeAuditLogRepo(session),
            metrics=FakeMetricRepo(session),
        )


@pytest.fixture
def ledger() -> FakeLedger:
    ledger = FakeLedger()
    ledger.add_service()
    return ledger


@pytest.fixture
def future_window() -> Callable[..., tuple[datetime, datetime]]:
    """Naive-UTC [start, end) a day ahead, shifted by whole minutes."""
    base = utc_now().replace(second=0, microsecond=0) + timedelta(days=1)

    def _window(offset_minutes: int = 0, duration_minutes: int = 30) -> tuple[datetime, datetime]:
        start = base + timedelta(minutes=offset_minutes)
        return start, start + timedelta(minutes=duration_minutes)

    return _window
