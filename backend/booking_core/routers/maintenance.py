from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import async_session
from ..deps import get_health_thresholds, get_session, verify_cron_secret
from ..infrastructure.cleanup_job import run_cleanup
from ..infrastructure.repositories import SqlAlchemyMetricRepository, SqlAlchemyReservationRepository
from ..schemas import CleanupRead, ReservationHealthRead
from ..usecases import cleanup as cleanup_usecase
from ..usecases.cleanup import HealthThresholds

router = APIRouter(tags=["maintenance"])


@router.post(
    "/cron/cleanup-reservations",
    response_model=CleanupRead,
    dependencies=[Depends(verify_cron_secret)],
)
async def cleanup_reservations() -> CleanupRead:
    result = await run_cleanup(async_session)
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "reservation cleanup failed", "error": result.error},
        )
    return CleanupRead.from_result(result)


@router.get("/health/reservations", response_model=ReservationHealthRead)
async def reservation_health(
    session: AsyncSession = Depends(get_session),
    thresholds: HealthThresholds = Depends(get_health_thresholds),
) -> ReservationHealthRead:
    health = await cleanup_usecase.check_reservation_health(
        SqlAlchemyReservationRepository(session),
        SqlAlchemyMetricRepository(session),
        thresholds=thresholds,
    )
    return ReservationHealthRead.from_health(health)
