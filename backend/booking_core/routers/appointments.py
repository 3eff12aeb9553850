import re
from datetime import datetime
from typing import Any, List, Optional, Protocol

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_actor_id, get_optional_actor_id, get_session
from ..domain.errors import DomainError
from ..domain.services import Contact
from ..infrastructure.repositories import (
    SqlAlchemyAppointmentRepository,
    SqlAlchemyAuditLogRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemyServiceRepository,
)
from ..models import Appointment, AppointmentStatus, AuditLogEntry
from ..schemas import (
    AppointmentCancel,
    AppointmentCreated,
    AppointmentRead,
    AppointmentTransition,
    AppointmentUpdate,
    AuditLogRead,
    GuestCancel,
    GuestReschedule,
    ManualAppointmentCreate,
)
from ..usecases import appointments as appointment_usecase
from ..utils.audit_log import audit_event, emit_audit_log
from .errors import to_http

router = APIRouter(prefix="/appointments", tags=["appointments"])

_IF_MATCH_PATTERN = re.compile(r'^(?:W/)?"?(\d+)"?$')


class _Versioned(Protocol):
    version: Optional[int]


def _extract_version(if_match: Optional[str], payload: Optional[_Versioned]) -> int:
    """If-Match wins over the body; either way the version must be a positive integer."""
    if if_match is not None:
        match = _IF_MATCH_PATTERN.match(if_match.strip())
        if match is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        version = int(match.group(1))
    elif payload is not None and payload.version is not None:
        version = payload.version
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version is required")
    if version < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
    return version


def _emit_change(appointment: Appointment, entry: Optional[AuditLogEntry], *, reason: Optional[str] = None) -> None:
    # No audit row means nothing changed, so there is nothing to log either.
    if entry is None:
        return
    before = entry.before_snapshot or {}
    extra: dict[str, Any] = {}
    if before.get("slot_start") is not None and before.get("slot_start") != entry.after_snapshot.get("slot_start"):
        extra["slot_start_from"] = before["slot_start"]
        extra["slot_start_to"] = entry.after_snapshot.get("slot_start")
    if reason is not None:
        extra["reason"] = reason
    try:
        emit_audit_log(
            action=audit_event(entry.action),
            actor_id=entry.actor_id,
            appointment_id=appointment.id,
            business_id=appointment.business_id,
            service_id=appointment.service_id,
            status_from=before.get("status"),
            status_to=appointment.status,
            version=appointment.version,
            extra=extra or None,
        )
    except RuntimeError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed")


@router.post("/manual", response_model=AppointmentCreated, status_code=status.HTTP_201_CREATED)
async def create_manual_appointment(
    payload: ManualAppointmentCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
) -> AppointmentCreated:
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.create_manual_appointment(
                service_repo,
                res_repo,
                appt_repo,
                audit_repo,
                business_id=payload.business_id,
                service_id=payload.service_id,
                slot_start=payload.slot_start,
                slot_end=payload.slot_end,
                contact=Contact(**payload.contact.model_dump()),
                idempotency_key=payload.idempotency_key,
                actor_id=actor_id,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry)
    return AppointmentCreated.from_db(appointment=appointment)


@router.get("/guest/{booking_reference}", response_model=AppointmentRead)
async def get_guest_appointment(
    booking_reference: str = Path(..., min_length=1),
    token: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> AppointmentRead:
    appt_repo = SqlAlchemyAppointmentRepository(session)
    try:
        appointment = await appointment_usecase.find_guest_appointment(
            appt_repo,
            booking_reference=booking_reference,
            cancellation_token=token,
        )
    except DomainError as exc:
        raise to_http(exc) from exc
    return AppointmentRead.from_db(appointment=appointment)


@router.post("/guest/{booking_reference}/cancel", response_model=AppointmentRead)
async def cancel_guest_appointment(
    payload: GuestCancel,
    booking_reference: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> AppointmentRead:
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.cancel_guest_appointment(
                appt_repo,
                audit_repo,
                booking_reference=booking_reference,
                cancellation_token=payload.token,
                reason=payload.reason,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry, reason=payload.reason)
    return AppointmentRead.from_db(appointment=appointment)


@router.post("/guest/{booking_reference}/reschedule", response_model=AppointmentRead)
async def reschedule_guest_appointment(
    payload: GuestReschedule,
    booking_reference: str = Path(..., min_length=1),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
) -> AppointmentRead:
    version = _extract_version(if_match, payload)
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.reschedule_guest_appointment(
                service_repo,
                res_repo,
                appt_repo,
                audit_repo,
                booking_reference=booking_reference,
                cancellation_token=payload.token,
                slot_start=payload.slot_start,
                slot_end=payload.slot_end,
                expected_version=version,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry)
    return AppointmentRead.from_db(appointment=appointment)


@router.get("", response_model=List[AppointmentRead])
async def list_appointments(
    business_id: str = Query(..., min_length=1),
    service_id: Optional[str] = Query(default=None),
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    start: Optional[datetime] = Query(default=None, description="earliest slot start (ISO 8601)"),
    end: Optional[datetime] = Query(default=None, description="latest slot end (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
) -> list[AppointmentRead]:
    appt_repo = SqlAlchemyAppointmentRepository(session)
    rows = await appointment_usecase.list_appointments(
        appt_repo,
        business_id=business_id,
        service_id=service_id,
        status=status_filter,
        start=start,
        end=end,
    )
    return [AppointmentRead.from_db(appointment=row) for row in rows]


@router.get("/{appointment_id}", response_model=AppointmentRead)
async def get_appointment(
    appointment_id: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> AppointmentRead:
    appt_repo = SqlAlchemyAppointmentRepository(session)
    try:
        appointment = await appointment_usecase.get_appointment(appt_repo, appointment_id=appointment_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    return AppointmentRead.from_db(appointment=appointment)


@router.patch("/{appointment_id}", response_model=AppointmentRead)
async def update_appointment(
    payload: AppointmentUpdate,
    appointment_id: str = Path(..., min_length=1),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
) -> AppointmentRead:
    version = _extract_version(if_match, payload)
    patch = appointment_usecase.AppointmentPatch(**payload.model_dump(exclude={"version"}))
    service_repo = SqlAlchemyServiceRepository(session)
    res_repo = SqlAlchemyReservationRepository(session)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.update_appointment(
                service_repo,
                res_repo,
                appt_repo,
                audit_repo,
                appointment_id=appointment_id,
                patch=patch,
                expected_version=version,
                actor_id=actor_id,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry)
    return AppointmentRead.from_db(appointment=appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentRead)
async def cancel_appointment(
    payload: Optional[AppointmentCancel] = None,
    appointment_id: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
    actor_id: Optional[str] = Depends(get_optional_actor_id),
) -> AppointmentRead:
    reason = payload.reason if payload is not None else None
    token = payload.cancellation_token if payload is not None else None
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.cancel_appointment(
                appt_repo,
                audit_repo,
                appointment_id=appointment_id,
                actor_id=actor_id,
                reason=reason,
                cancellation_token=token,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry, reason=reason)
    return AppointmentRead.from_db(appointment=appointment)


@router.post("/{appointment_id}/status", response_model=AppointmentRead)
async def transition_appointment(
    payload: AppointmentTransition,
    appointment_id: str = Path(..., min_length=1),
    if_match: Optional[str] = Header(default=None, alias="If-Match"),
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
) -> AppointmentRead:
    version = _extract_version(if_match, payload)
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    async with session.begin():
        try:
            appointment, entry = await appointment_usecase.transition_appointment(
                appt_repo,
                audit_repo,
                appointment_id=appointment_id,
                new_status=payload.status,
                expected_version=version,
                actor_id=actor_id,
            )
        except DomainError as exc:
            raise to_http(exc) from exc

    _emit_change(appointment, entry)
    return AppointmentRead.from_db(appointment=appointment)


@router.get("/{appointment_id}/audit-logs", response_model=List[AuditLogRead])
async def list_audit_logs(
    appointment_id: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
) -> list[AuditLogRead]:
    appt_repo = SqlAlchemyAppointmentRepository(session)
    audit_repo = SqlAlchemyAuditLogRepository(session)
    try:
        entries = await appointment_usecase.list_audit_log(appt_repo, audit_repo, appointment_id=appointment_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    return [AuditLogRead.from_db(entry=entry) for entry in entries]
