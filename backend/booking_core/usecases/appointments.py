import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ..domain.errors import (
    ConflictError,
    InvalidTokenError,
    InvalidTransitionError,
    NotFoundError,
    ReservationExpiredError,
    ValidationError,
)
from ..domain.repositories import (
    AppointmentRepository,
    AuditLogRepository,
    ReservationRepository,
    ServiceRepository,
)
from ..domain.services import (
    Contact,
    audit_action_for,
    ensure_transition,
    is_terminal,
    validate_contact,
    validate_idempotency_key,
    validate_window,
)
from ..models import Appointment, AppointmentStatus, AuditAction, AuditLogEntry, new_id
from ..utils.identifiers import generate_booking_reference, generate_cancellation_token
from ..utils.time import to_utc_naive, utc_now
from .capacity import assert_capacity, lock_service

logger = logging.getLogger(__name__)

# Mutations hand back the audit row they wrote; None means the call changed nothing.
AppointmentChange = tuple[Appointment, Optional[AuditLogEntry]]


@dataclass(frozen=True)
class AppointmentPatch:
    slot_start: Optional[datetime] = None
    slot_end: Optional[datetime] = None
    status: Optional[AppointmentStatus] = None
    customer_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def snapshot_appointment(appointment: Appointment) -> dict[str, Any]:
    """JSON-safe copy of an appointment for the audit trail. The cancellation token stays out."""
    return {
        "id": appointment.id,
        "booking_reference": appointment.booking_reference,
        "business_id": appointment.business_id,
        "service_id": appointment.service_id,
        "customer_id": appointment.customer_id,
        "guest_name": appointment.guest_name,
        "guest_email": appointment.guest_email,
        "guest_phone": appointment.guest_phone,
        "slot_start": _iso(appointment.slot_start),
        "slot_end": _iso(appointment.slot_end),
        "status": AppointmentStatus(appointment.status).value,
        "origin_reservation_id": appointment.origin_reservation_id,
        "cancellation_reason": appointment.cancellation_reason,
        "version": appointment.version,
        "deleted_at": _iso(appointment.deleted_at),
        "created_at": _iso(appointment.created_at),
        "updated_at": _iso(appointment.updated_at),
    }


def _new_appointment(
    *,
    business_id: str,
    service_id: str,
    slot_start: datetime,
    slot_end: datetime,
    contact: Contact,
    idempotency_key: str,
    origin_reservation_id: Optional[str],
    now: datetime,
) -> Appointment:
    return Appointment(
        id=new_id(),
        booking_reference=generate_booking_reference(),
        business_id=business_id,
        service_id=service_id,
        customer_id=contact.customer_id,
        guest_name=contact.guest_name,
        guest_email=contact.guest_email,
        guest_phone=contact.guest_phone,
        slot_start=slot_start,
        slot_end=slot_end,
        status=AppointmentStatus.CONFIRMED,
        idempotency_key=idempotency_key,
        origin_reservation_id=origin_reservation_id,
        cancellation_token=generate_cancellation_token(),
        version=1,
        created_at=now,
        updated_at=now,
    )


async def _load_for_update(appt_repo: AppointmentRepository, appointment_id: str) -> Appointment:
    appointment = await appt_repo.get_for_update(appointment_id)
    if appointment is None:
        raise NotFoundError("appointment not found")
    return appointment


def _check_version(appointment: Appointment, expected_version: int) -> None:
    if appointment.version != expected_version:
        raise ConflictError(
            "appointment has been modified by another request",
            current_version=appointment.version,
        )


def _check_guest_token(appointment: Appointment, token: Optional[str]) -> None:
    stored = appointment.cancellation_token
    if not token or stored is None or not secrets.compare_digest(stored, token):
        raise InvalidTokenError("invalid cancellation token")


async def commit_reservation(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    reservation_id: str,
    contact: Contact,
) -> AppointmentChange:
    """
    Turn a live reservation into a confirmed appointment.

    The service lock is taken before the expiry check, so a writer that counts the window
    after the hold lapses waits for this appointment to land. The reservation row stays locked until the caller's
    transaction ends, so a second commit of the same id finds it gone and fails like an
    expired one.
    """
    contact = validate_contact(contact)
    held = await res_repo.get(reservation_id)
    if held is None:
        raise ReservationExpiredError("reservation not found or expired")
    await lock_service(service_repo, business_id=held.business_id, service_id=held.service_id)
    reservation = await res_repo.get_for_update(reservation_id)
    now = utc_now()
    if reservation is None or reservation.expires_at <= now:
        raise ReservationExpiredError("reservation not found or expired")

    appointment = _new_appointment(
        business_id=reservation.business_id,
        service_id=reservation.service_id,
        slot_start=reservation.slot_start,
        slot_end=reservation.slot_end,
        contact=contact,
        idempotency_key=reservation.idempotency_key,
        origin_reservation_id=reservation.id,
        now=now,
    )
    stored = await appt_repo.create(appointment)
    if stored is not appointment:
        raise ValidationError("idempotency key already belongs to another appointment")
    await res_repo.delete(reservation)
    entry = await audit_repo.append(
        appointment_id=appointment.id,
        actor_id=contact.customer_id,
        action=AuditAction.CREATED,
        before=None,
        after=snapshot_appointment(appointment),
    )
    logger.info("reservation %s committed as appointment %s", reservation_id, appointment.id)
    return appointment, entry


async def create_manual_appointment(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    business_id: str,
    service_id: str,
    slot_start: datetime,
    slot_end: datetime,
    contact: Contact,
    idempotency_key: str,
    actor_id: str,
) -> AppointmentChange:
    """Staff booking without a hold. Same replay rule and capacity primitive as a reservation."""
    key = validate_idempotency_key(idempotency_key)
    existing = await appt_repo.get_by_idempotency_key(key)
    if existing is not None:
        return existing, None

    now = utc_now()
    start = to_utc_naive(slot_start)
    end = to_utc_naive(slot_end)
    validate_window(start, end, now=now)
    contact = validate_contact(contact)

    service = await lock_service(service_repo, business_id=business_id, service_id=service_id)
    existing = await appt_repo.get_by_idempotency_key(key)
    if existing is not None:
        return existing, None
    await assert_capacity(service, res_repo, appt_repo, start=start, end=end, now=now)

    appointment = _new_appointment(
        business_id=business_id,
        service_id=service_id,
        slot_start=start,
        slot_end=end,
        contact=contact,
        idempotency_key=key,
        origin_reservation_id=None,
        now=now,
    )
    stored = await appt_repo.create(appointment)
    if stored is not appointment:
        return stored, None
    entry = await audit_repo.append(
        appointment_id=appointment.id,
        actor_id=actor_id,
        action=AuditAction.CREATED,
        before=None,
        after=snapshot_appointment(appointment),
    )
    return appointment, entry


async def update_appointment(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    appointment_id: str,
    patch: AppointmentPatch,
    expected_version: int,
    actor_id: Optional[str],
) -> AppointmentChange:
    """
    Optimistically locked edit. A moved window is re-checked against capacity with this
    appointment's own slot left out of the count; any failure leaves the row untouched.
    """
    appointment = await _load_for_update(appt_repo, appointment_id)
    _check_version(appointment, expected_version)
    if is_terminal(appointment.status):
        raise InvalidTransitionError(f"appointment is {appointment.status.value} and can no longer be changed")

    now = utc_now()
    previous_status = appointment.status
    target_status = patch.status if patch.status is not None else previous_status
    if target_status != previous_status:
        ensure_transition(previous_status, target_status)

    new_start = to_utc_naive(patch.slot_start) if patch.slot_start is not None else appointment.slot_start
    new_end = to_utc_naive(patch.slot_end) if patch.slot_end is not None else appointment.slot_end
    moved = (new_start, new_end) != (appointment.slot_start, appointment.slot_end)
    if moved:
        validate_window(new_start, new_end, now=now)
        if target_status != AppointmentStatus.CANCELED:
            service = await lock_service(
                service_repo,
                business_id=appointment.business_id,
                service_id=appointment.service_id,
            )
            await assert_capacity(
                service,
                res_repo,
                appt_repo,
                start=new_start,
                end=new_end,
                now=now,
                exclude_appointment_id=appointment.id,
            )

    contact = validate_contact(
        Contact(
            customer_id=patch.customer_id if patch.customer_id is not None else appointment.customer_id,
            guest_name=patch.guest_name if patch.guest_name is not None else appointment.guest_name,
            guest_email=patch.guest_email if patch.guest_email is not None else appointment.guest_email,
            guest_phone=patch.guest_phone if patch.guest_phone is not None else appointment.guest_phone,
        )
    )

    before = snapshot_appointment(appointment)
    appointment.slot_start = new_start
    appointment.slot_end = new_end
    appointment.customer_id = contact.customer_id
    appointment.guest_name = contact.guest_name
    appointment.guest_email = contact.guest_email
    appointment.guest_phone = contact.guest_phone
    appointment.status = target_status
    if target_status == AppointmentStatus.CANCELED:
        appointment.deleted_at = now
    appointment.version += 1
    appointment.updated_at = now
    await appt_repo.save(appointment)

    entry = await audit_repo.append(
        appointment_id=appointment.id,
        actor_id=actor_id,
        action=audit_action_for(previous_status, target_status),
        before=before,
        after=snapshot_appointment(appointment),
    )
    return appointment, entry


async def cancel_appointment(
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    appointment_id: str,
    actor_id: Optional[str],
    reason: Optional[str] = None,
    cancellation_token: Optional[str] = None,
) -> AppointmentChange:
    """Anonymous callers must present the cancellation token issued with the booking."""
    appointment = await _load_for_update(appt_repo, appointment_id)
    if actor_id is None:
        _check_guest_token(appointment, cancellation_token)
    # Idempotent: already canceled returns as-is
    if appointment.status == AppointmentStatus.CANCELED:
        return appointment, None
    ensure_transition(appointment.status, AppointmentStatus.CANCELED)

    now = utc_now()
    before = snapshot_appointment(appointment)
    appointment.status = AppointmentStatus.CANCELED
    appointment.deleted_at = now
    appointment.cancellation_reason = reason
    appointment.version += 1
    appointment.updated_at = now
    await appt_repo.save(appointment)

    entry = await audit_repo.append(
        appointment_id=appointment.id,
        actor_id=actor_id,
        action=AuditAction.CANCELED,
        before=before,
        after=snapshot_appointment(appointment),
    )
    logger.info("appointment %s canceled by %s", appointment.id, actor_id or "guest")
    return appointment, entry


async def transition_appointment(
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    appointment_id: str,
    new_status: AppointmentStatus,
    expected_version: int,
    actor_id: Optional[str],
) -> AppointmentChange:
    """confirmed -> completed | no_show | canceled; every other move is rejected."""
    appointment = await _load_for_update(appt_repo, appointment_id)
    _check_version(appointment, expected_version)
    previous_status = appointment.status
    ensure_transition(previous_status, new_status)

    now = utc_now()
    before = snapshot_appointment(appointment)
    appointment.status = new_status
    if new_status == AppointmentStatus.CANCELED:
        appointment.deleted_at = now
    appointment.version += 1
    appointment.updated_at = now
    await appt_repo.save(appointment)

    entry = await audit_repo.append(
        appointment_id=appointment.id,
        actor_id=actor_id,
        action=audit_action_for(previous_status, new_status),
        before=before,
        after=snapshot_appointment(appointment),
    )
    return appointment, entry


async def find_guest_appointment(
    appt_repo: AppointmentRepository,
    *,
    booking_reference: str,
    cancellation_token: str,
) -> Appointment:
    """Guest access: the booking reference finds the row, the token proves ownership."""
    appointment = await appt_repo.get_by_booking_reference(booking_reference.strip().upper())
    if appointment is None:
        raise NotFoundError("appointment not found")
    _check_guest_token(appointment, cancellation_token)
    return appointment


async def cancel_guest_appointment(
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    booking_reference: str,
    cancellation_token: str,
    reason: Optional[str] = None,
) -> AppointmentChange:
    appointment = await find_guest_appointment(
        appt_repo,
        booking_reference=booking_reference,
        cancellation_token=cancellation_token,
    )
    return await cancel_appointment(
        appt_repo,
        audit_repo,
        appointment_id=appointment.id,
        actor_id=None,
        reason=reason,
        cancellation_token=cancellation_token,
    )


async def reschedule_guest_appointment(
    service_repo: ServiceRepository,
    res_repo: ReservationRepository,
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    booking_reference: str,
    cancellation_token: str,
    slot_start: datetime,
    slot_end: datetime,
    expected_version: int,
) -> AppointmentChange:
    """Guests may only move their own window; contact and status edits stay with staff."""
    appointment = await find_guest_appointment(
        appt_repo,
        booking_reference=booking_reference,
        cancellation_token=cancellation_token,
    )
    return await update_appointment(
        service_repo,
        res_repo,
        appt_repo,
        audit_repo,
        appointment_id=appointment.id,
        patch=AppointmentPatch(slot_start=slot_start, slot_end=slot_end),
        expected_version=expected_version,
        actor_id=None,
    )


async def get_appointment(appt_repo: AppointmentRepository, *, appointment_id: str) -> Appointment:
    appointment = await appt_repo.get(appointment_id)
    if appointment is None:
        raise NotFoundError("appointment not found")
    return appointment


async def list_appointments(
    appt_repo: AppointmentRepository,
    *,
    business_id: str,
    service_id: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[Appointment]:
    return await appt_repo.list_for_business(
        business_id,
        service_id=service_id,
        status=status,
        start=to_utc_naive(start) if start is not None else None,
        end=to_utc_naive(end) if end is not None else None,
    )


async def list_audit_log(
    appt_repo: AppointmentRepository,
    audit_repo: AuditLogRepository,
    *,
    appointment_id: str,
) -> list[AuditLogEntry]:
    await get_appointment(appt_repo, appointment_id=appointment_id)
    return await audit_repo.list_for_appointment(appointment_id)
