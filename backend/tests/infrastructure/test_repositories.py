from datetime import datetime
from typing import Any

import pytest
from booking_core.infrastructure.repositories import (
    SqlAlchemyAppointmentRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemyServiceRepository,
    overlap_clause,
)
from booking_core.models import Reservation
from sqlalchemy.dialects import mysql

START = datetime(2030, 1, 1, 10, 0)
END = datetime(2030, 1, 1, 11, 0)


class CapturingSession:
    """Records the statements a repository issues instead of running them."""

    def __init__(self, scalar_result: Any = None) -> None:
        self.statements: list[Any] = []
        self.scalar_result = scalar_result

    async def scalar(self, stmt: Any, *args: Any, **kwargs: Any) -> Any:
        self.statements.append(stmt)
        return self.scalar_result

    async def execute(self, stmt: Any, *args: Any, **kwargs: Any) -> Any:
        self.statements.append(stmt)

        class _Result:
            rowcount = 3

        return _Result()


def _sql(stmt: Any) -> str:
    return str(stmt.compile(dialect=mysql.dialect()))


def test_overlap_clause_is_half_open() -> None:
    sql = str(overlap_clause(Reservation, "biz-1", "svc-1", START, END).compile(dialect=mysql.dialect()))
    assert "reservations.slot_start < " in sql
    assert "reservations.slot_end > " in sql
    assert "<=" not in sql


@pytest.mark.asyncio
async def test_service_lock_uses_select_for_update() -> None:
    session = CapturingSession()
    repo = SqlAlchemyServiceRepository(session)  # type: ignore[arg-type]

    assert await repo.get_for_update("biz-1", "svc-1") is None

    sql = _sql(session.statements[0])
    assert sql.rstrip().endswith("FOR UPDATE")
    assert "services.deleted_at IS NULL" in sql


@pytest.mark.asyncio
async def test_active_reservation_count_filters_expired() -> None:
    session = CapturingSession(scalar_result=2)
    repo = SqlAlchemyReservationRepository(session)  # type: ignore[arg-type]

    assert await repo.count_active_overlapping("biz-1", "svc-1", START, END, START) == 2
    assert "reservations.expires_at > " in _sql(session.statements[0])


@pytest.mark.asyncio
async def test_booked_count_skips_canceled_and_self() -> None:
    session = CapturingSession(scalar_result=None)
    repo = SqlAlchemyAppointmentRepository(session)  # type: ignore[arg-type]

    assert await repo.count_booked_overlapping("biz-1", "svc-1", START, END, exclude_id="appt-1") == 0

    sql = _sql(session.statements[0])
    assert "appointments.status != " in sql
    assert "appointments.deleted_at IS NULL" in sql
    assert "appointments.id != " in sql


@pytest.mark.asyncio
async def test_delete_expired_is_one_conditional_delete() -> None:
    session = CapturingSession()
    repo = SqlAlchemyReservationRepository(session)  # type: ignore[arg-type]

    assert await repo.delete_expired(START) == 3
    assert len(session.statements) == 1
    sql = _sql(session.statements[0])
    assert sql.startswith("DELETE FROM reservations")
    assert "reservations.expires_at <= " in sql


@pytest.mark.asyncio
async def test_booking_reference_lookup_filters_on_reference() -> None:
    session = CapturingSession()
    repo = SqlAlchemyAppointmentRepository(session)  # type: ignore[arg-type]

    assert await repo.get_by_booking_reference("BK-ABC-DEF-GHJ") is None
    assert "appointments.booking_reference = " in _sql(session.statements[0])
