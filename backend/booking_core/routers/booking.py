from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_session, get_ttl_bounds
from ..domain.errors import DomainError
from ..domain.services import Contact, TtlBounds
from ..infrastructure.repositories import (
    SqlAlchemyAppointmentRepository,
    SqlAlchemyAuditLogRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemyServiceRepository,
)
from ..schemas import (
    AppointmentCreated,
    CapacityRead,
    ReservationCommit,
    ReservationCreate,
    ReservationRead,
    ReservationValidationRead,
)
from ..usecases import appointments as appointment_usecase
from ..usecases import reservations as reservation_usecase
from ..utils.audit_log import emit_audit_log
from .errors import to_http

router = APIRouter(prefix="/booking", tags=["booking"])


@router.post("/reserve", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def reserve(
    payload: ReservationCreate,
    session: AsyncSession = Depends(get_session),
    ttl_bounds: TtlBounds = Depends(get_ttl_bounds),
) -> ReservationRead:
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    async with session.begin():
        try:
            reservation = await reservation_usecase.create_reservation(
                service_repo,
                res_repo,
                appt_repo,
                business_id=payload.business_id,
                service_id=payload.service_id,
                slot_start=payload.slot_start,
                slot_end=payload.slot_end,
                idempotency_key=payload.idempotency_key,
                ttl_minutes=payload.ttl_minutes,
                ttl_bounds=ttl_bounds,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    return ReservationRead.from_db(reservation=reservation)


@router.get("/reservations/{reservation_id}", response_model=ReservationValidationRead)
async def get_reservation_status(
    reservation_id: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> ReservationValidationRead:
    res_repo = SqlAlchemyReservationRepository(session)
    result = await reservation_usecase.validate_reservation(res_repo, reservation_id=reservation_id)
    return ReservationValidationRead.from_result(result)


@router.post("/commit", response_model=AppointmentCreated, status_code=status.HTTP_201_CREATED)
async def commit(
    payload: ReservationCommit,
    session: AsyncSession = Depends(get_session),
) -> AppointmentCreated:
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, _ = await appointment_usecase.commit_reservation(
                service_repo,
                res_repo,
                appt_repo,
                audit_repo,
                reservation_id=payload.reservation_id,
                contact=Contact(**payload.contact.model_dump()),
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    try:
        emit_audit_log(
            action="appointment.created",
            actor_id=appointment.customer_id,
            appointment_id=appointment.id,
            business_id=appointment.business_id,
            service_id=appointment.service_id,
            status_from=None,
            status_to=appointment.status,
            version=appointment.version,
            extra={"reservation_id": payload.reservation_id},
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")
    return AppointmentCreated.from_db(appointment=appointment)


@router.get("/capacity", response_model=CapacityRead)
async def capacity(
    business_id: str = Query(..., min_length=1),
    service_id: str = Query(..., min_length=1),
    start: datetime = Query(..., description="window start (ISO 8601)"),
    end: datetime = Query(..., description="window end (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
) -> CapacityRead:
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    try:
        available = await reservation_usecase.get_available_capacity(
            service_repo,
            res_repo,
            appt_repo,
            business_id=business_id,
            service_id=service_id,
            window_start=start,
            window_end=end,
        )
    except DomainError as exc:
        raise to_http(exc) from exc
    return CapacityRead(business_id=business_id, service_id=service_id, available=available)
