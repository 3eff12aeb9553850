from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import ColumnElement, Select, and_, case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import (
    AppointmentRepository,
    AuditLogRepository,
    MetricRepository,
    ReservationRepository,
    ReservationStats,
    ServiceRepository,
)
from ..models import (
    Appointment,
    AppointmentStatus,
    AuditAction,
    AuditLogEntry,
    Reservation,
    Service,
    SystemMetric,
    new_id,
)
from ..utils.time import utc_now

logger = logging.getLogger(__name__)


def overlap_clause(
    model: type[Reservation] | type[Appointment],
    business_id: str,
    service_id: str,
    start: datetime,
    end: datetime,
) -> ColumnElement[bool]:
    """SQL form of the half-open overlap test, scoped to one business/service."""
    return and_(
        model.business_id == business_id,
        model.service_id == service_id,
        model.slot_start < end,
        model.slot_end > start,
    )


class SqlAlchemyServiceRepository(ServiceRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _select(self, business_id: str, service_id: str) -> Select[tuple[Service]]:
        return select(Service).where(
            Service.id == service_id,
            Service.business_id == business_id,
            Service.deleted_at.is_(None),
        )

    async def get(self, business_id: str, service_id: str) -> Service | None:
        return await self.session.scalar(self._select(business_id, service_id))

    async def get_for_update(self, business_id: str, service_id: str) -> Service | None:
        # Serializes every capacity check-and-write for this business/service until commit.
        return await self.session.scalar(self._select(business_id, service_id).with_for_update())


class SqlAlchemyReservationRepository(ReservationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, reservation_id: str) -> Reservation | None:
        return await self.session.get(Reservation, reservation_id)

    async def get_for_update(self, reservation_id: str) -> Reservation | None:
        stmt = select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        return await self.session.scalar(stmt)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Reservation | None:
        stmt = select(Reservation).where(Reservation.idempotency_key == idempotency_key)
        return await self.session.scalar(stmt)

    async def count_active_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> int:
        stmt = select(func.count(Reservation.id)).where(
            overlap_clause(Reservation, business_id, service_id, start, end),
            Reservation.expires_at > now,
        )
        return int(await self.session.scalar(stmt) or 0)

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
        """
        Insert a reservation inside a savepoint. If another transaction committed the same
        idempotency key first, the winner's row is returned instead.
        """
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
        try:
            async with self.session.begin_nested():
                self.session.add(reservation)
        except IntegrityError:
            stmt = select(Reservation).where(Reservation.idempotency_key == idempotency_key).with_for_update()
            existing = await self.session.scalar(stmt)
            if existing is None:
                raise
            logger.info("idempotency key %s claimed concurrently, replaying reservation %s", idempotency_key, existing.id)
            return existing
        return reservation

    async def delete(self, reservation: Reservation) -> None:
        await self.session.delete(reservation)
        await self.session.flush()

    async def delete_expired(self, now: datetime) -> int:
        result = await self.session.execute(delete(Reservation).where(Reservation.expires_at <= now))
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def stats(self, now: datetime) -> ReservationStats:
        stmt = select(
            func.coalesce(func.sum(case((Reservation.expires_at > now, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Reservation.expires_at <= now, 1), else_=0)), 0),
            func.min(case((Reservation.expires_at > now, Reservation.created_at), else_=None)),
        )
        active, expired, oldest = (await self.session.execute(stmt)).one()
        return ReservationStats(
            active_count=int(active),
            expired_count=int(expired),
            oldest_active_created_at=oldest,
        )


class SqlAlchemyAppointmentRepository(AppointmentRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, appointment_id: str) -> Appointment | None:
        return await self.session.get(Appointment, appointment_id)

    async def get_for_update(self, appointment_id: str) -> Appointment | None:
        stmt = select(Appointment).where(Appointment.id == appointment_id).with_for_update()
        return await self.session.scalar(stmt)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Appointment | None:
        stmt = select(Appointment).where(Appointment.idempotency_key == idempotency_key)
        return await self.session.scalar(stmt)

    async def get_by_booking_reference(self, booking_reference: str) -> Appointment | None:
        stmt = select(Appointment).where(Appointment.booking_reference == booking_reference)
        return await self.session.scalar(stmt)

    async def count_booked_overlapping(
        self,
        business_id: str,
        service_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> int:
        stmt = select(func.count(Appointment.id)).where(
            overlap_clause(Appointment, business_id, service_id, start, end),
            Appointment.status != AppointmentStatus.CANCELED,
            Appointment.deleted_at.is_(None),
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        return int(await self.session.scalar(stmt) or 0)

    async def create(self, appointment: Appointment) -> Appointment:
        try:
            async with self.session.begin_nested():
                self.session.add(appointment)
        except IntegrityError:
            stmt = (
                select(Appointment)
                .where(Appointment.idempotency_key == appointment.idempotency_key)
                .with_for_update()
            )
            existing = await self.session.scalar(stmt)
            if existing is None:
                raise
            logger.info(
                "idempotency key %s claimed concurrently, replaying appointment %s",
                appointment.idempotency_key,
                existing.id,
            )
            return existing
        return appointment

    async def save(self, appointment: Appointment) -> Appointment:
        self.session.add(appointment)
        await self.session.flush()
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
        stmt = select(Appointment).where(Appointment.business_id == business_id)
        if service_id is not None:
            stmt = stmt.where(Appointment.service_id == service_id)
        if status is not None:
            stmt = stmt.where(Appointment.status == status)
        if start is not None:
            stmt = stmt.where(Appointment.slot_start >= start)
        if end is not None:
            stmt = stmt.where(Appointment.slot_end <= end)
        rows = await self.session.scalars(stmt.order_by(Appointment.slot_start))
        return list(rows.all())


class SqlAlchemyAuditLogRepository(AuditLogRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        *,
        appointment_id: str,
        actor_id: str | None,
        action: AuditAction,
        before: dict[str, Any] | None,
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
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_appointment(self, appointment_id: str) -> list[AuditLogEntry]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.appointment_id == appointment_id)
            .order_by(AuditLogEntry.timestamp, AuditLogEntry.id)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())


class SqlAlchemyMetricRepository(MetricRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, name: str, value: int, recorded_at: datetime) -> SystemMetric:
        metric = SystemMetric(metric_name=name, metric_value=value, recorded_at=recorded_at)
        self.session.add(metric)
        await self.session.flush()
        return metric

    async def latest(self, name: str) -> SystemMetric | None:
        stmt = (
            select(SystemMetric)
            .where(SystemMetric.metric_name == name)
            .order_by(SystemMetric.recorded_at.desc(), SystemMetric.id.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)
