import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..usecases import cleanup as cleanup_usecase
from ..usecases.cleanup import CleanupResult
from ..utils.time import utc_now
from .repositories import SqlAlchemyMetricRepository, SqlAlchemyReservationRepository

logger = logging.getLogger(__name__)


async def run_cleanup(session_factory: async_sessionmaker[AsyncSession]) -> CleanupResult:
    """
    One sweeper run in its own transaction. Store errors never propagate: they are logged,
    recorded as a failure metric when the store allows it, and surface through the health check.
    """
    started_at = utc_now()
    try:
        async with session_factory() as session:
            async with session.begin():
                return await cleanup_usecase.sweep_expired_reservations(
                    SqlAlchemyReservationRepository(session),
                    SqlAlchemyMetricRepository(session),
                )
    except SQLAlchemyError as exc:
        logger.exception("reservation cleanup failed")
        await _record_failure(session_factory)
        return CleanupResult(
            removed_count=0,
            ran_at=started_at,
            duration_ms=int((utc_now() - started_at).total_seconds() * 1000),
            ok=False,
            error=type(exc).__name__,
        )


async def _record_failure(session_factory: async_sessionmaker[AsyncSession]) -> None:
    try:
        async with session_factory() as session:
            async with session.begin():
                await cleanup_usecase.record_cleanup_failure(
                    SqlAlchemyMetricRepository(session),
                    failed_at=utc_now(),
                )
    except SQLAlchemyError:
        logger.exception("could not record reservation cleanup failure metric")


def main() -> None:
    """Entry point for cron: run one sweep and exit non-zero if it failed."""
    from ..database import async_session, engine

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    async def _run() -> CleanupResult:
        try:
            return await run_cleanup(async_session)
        finally:
            await engine.dispose()

    result = asyncio.run(_run())
    if not result.ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
