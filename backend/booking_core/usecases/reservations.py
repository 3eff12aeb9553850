import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Optional

from ..domain.errors import NotFoundError, ValidationError
from ..domain.repositories import AppointmentRepository, ReservationRepository, ServiceRepository
from ..domain.services import (
    TtlBounds,
    clamp_ttl,
    reservation_expiry,
    validate_idempotency_key,
    validate_window,
)
from ..models import Reservation
from ..utils.time import to_utc_naive, utc_now
from .capacity import assert_capacity, lock_service, snapshot_capacity

logger = logging.getLogger(__name__)

DEFAULT_TTL_BOUNDS = TtlBounds(default=15, minimum=0.05, maximum=60)


class InvalidReason(StrEnum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ReservationValidation:
    valid: bool
    reason: Optional[InvalidReason] = None
    reservation: Optional[Reservation] = None


async def create_reservation(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    *,
    business_id: str,
    service_id: str,
    slot_start: datetime,
    slot_end: datetime,
    idempotency_key: str,
    ttl_minutes: Optional[float] = None,
    ttl_bounds: TtlBounds = DEFAULT_TTL_BOUNDS,
) -> Reservation:
    """
    Place a short-lived hold on one unit of capacity.

    A known idempotency key returns the stored reservation as-is: no capacity is consumed
    and the new arguments are not validated, even if they describe a different window.
    Keys are global, not scoped per business.
    """
    key = validate_idempotency_key(idempotency_key)
    existing = await res_repo.get_by_idempotency_key(key)
    if existing is not None:
        return existing

    now = utc_now()
    start = to_utc_naive(slot_start)
    end = to_utc_naive(slot_end)
    validate_window(start, end, now=now)
    ttl = clamp_ttl(ttl_minutes, ttl_bounds)

    service = await lock_service(service_repo, business_id=business_id, service_id=service_id)
    # A retry may have committed while we waited for the lock.
    existing = await res_repo.get_by_idempotency_key(key)
    if existing is not None:
        return existing

    remaining = await assert_capacity(service, res_repo, appt_repo, start=start, end=end, now=now)
    reservation = await res_repo.create(
        business_id=business_id,
        service_id=service_id,
        slot_start=start,
        slot_end=end,
        idempotency_key=key,
        expires_at=reservation_expiry(now, ttl),
    )
    logger.info(
        "reservation %s held for service %s [%s, %s) until %s, %d left",
        reservation.id,
        service_id,
        start.isoformat(),
        end.isoformat(),
        reservation.expires_at.isoformat(),
        remaining,
    )
    return reservation


async def validate_reservation(res_repo: ReservationRepository, *, reservation_id: str) -> ReservationValidation:
    reservation = await res_repo.get(reservation_id)
    if reservation is None:
        return ReservationValidation(valid=False, reason=InvalidReason.NOT_FOUND)
    if reservation.expires_at <= utc_now():
        return ReservationValidation(valid=False, reason=InvalidReason.EXPIRED, reservation=reservation)
    return ReservationValidation(valid=True, reservation=reservation)


async def get_available_capacity(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    *,
    business_id: str,
    service_id: str,
    window_start: datetime,
    window_end: datetime,
) -> int:
    """Capacity left in the window. Expired reservations count for nothing, swept or not."""
    start = to_utc_naive(window_start)
    end = to_utc_naive(window_end)
    if start >= end:
        raise ValidationError("window start must be earlier than window end")
    service = await service_repo.get(business_id, service_id)
    if service is None:
        raise NotFoundError("service not found")
    snapshot = await snapshot_capacity(
        service,
        res_repo,
        appt_repo,
        start=start,
        end=end,
        now=utc_now(),
    )
    return snapshot.available


async def cleanup_expired_reservations(res_repo: ReservationRepository) -> int:
    # One conditional DELETE; overlapping sweeper runs simply find nothing left to remove.
    return await res_repo.delete_expired(utc_now())
