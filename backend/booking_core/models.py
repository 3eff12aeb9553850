from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, Enum, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql.sqltypes import BigInteger, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


class AppointmentStatus(StrEnum):
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELED = "canceled"


class AuditAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class Service(Base):
    """Bookable unit of a business. Read-only here; its row doubles as the capacity lock."""

    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("max_simultaneous_bookings >= 1", name="chk_services_capacity"),
        Index("idx_services_business", "business_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    max_simultaneous_bookings: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("slot_start < slot_end", name="chk_res_time"),
        UniqueConstraint("idempotency_key", name="uq_res_idempotency_key"),
        Index("idx_res_overlap", "business_id", "service_id", "slot_start", "slot_end"),
        Index("idx_res_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    service_id: Mapped[str] = mapped_column(String(36), nullable=False)
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("slot_start < slot_end", name="chk_appt_time"),
        CheckConstraint("version >= 1", name="chk_appt_version"),
        UniqueConstraint("idempotency_key", name="uq_appt_idempotency_key"),
        UniqueConstraint("booking_reference", name="uq_appt_booking_reference"),
        UniqueConstraint("cancellation_token", name="uq_appt_cancellation_token"),
        Index("idx_appt_overlap", "business_id", "service_id", "slot_start", "slot_end"),
        Index("idx_appt_customer", "customer_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    booking_reference: Mapped[str] = mapped_column(String(32), nullable=False)
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    service_id: Mapped[str] = mapped_column(String(36), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        _str_enum(AppointmentStatus),
        nullable=False,
        default=AppointmentStatus.CONFIRMED,
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    # The reservation row is deleted on commit, so this is a plain column, not a foreign key.
    origin_reservation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    cancellation_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class AuditLogEntry(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_appointment", "appointment_id", "timestamp"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    appointment_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    action: Mapped[AuditAction] = mapped_column(_str_enum(AuditAction), nullable=False)
    before_snapshot: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    after_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class SystemMetric(Base):
    __tablename__ = "system_metrics"
    __table_args__ = (Index("idx_metrics_name_time", "metric_name", "recorded_at"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    metric_name: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
