"""
The single check-and-write primitive every capacity-consuming path goes through.

Callers must run these inside one transaction: `lock_service` takes a row lock on the
service that is held until commit, so the overlap count taken afterwards cannot be
invalidated by a concurrent writer for the same business/service before our insert lands.
"""

from datetime import datetime

from ..domain.errors import NotFoundError
from ..domain.repositories import AppointmentRepository, ReservationRepository, ServiceRepository
from ..domain.services import CapacitySnapshot, ensure_capacity
from ..models import Service


async def lock_service(service_repo: ServiceRepository, *, business_id: str, service_id: str) -> Service:
    service = await service_repo.get_for_update(business_id, service_id)
    if service is None:
        raise NotFoundError("service not found")
    return service


async def snapshot_capacity(
    service: Service,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    *,
    start: datetime,
    end: datetime,
    now: datetime,
    exclude_appointment_id: str | None = None,
) -> CapacitySnapshot:
    reserved = await res_repo.count_active_overlapping(service.business_id, service.id, start, end, now)
    booked = await appt_repo.count_booked_overlapping(
        service.business_id,
        service.id,
        start,
        end,
        exclude_id=exclude_appointment_id,
    )
    return CapacitySnapshot(capacity=service.max_simultaneous_bookings, reserved=reserved, booked=booked)


async def assert_capacity(
    service: Service,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    *,
    start: datetime,
    end: datetime,
    now: datetime,
    exclude_appointment_id: str | None = None,
) -> int:
    """Raise SlotUnavailableError unless one more booking fits; returns what remains after it."""
    snapshot = await snapshot_capacity(
        service,
        res_repo,
        appt_repo,
        start=start,
        end=end,
        now=now,
        exclude_appointment_id=exclude_appointment_id,
    )
    return ensure_capacity(snapshot)
