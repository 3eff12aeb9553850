import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from ..domain.repositories import MetricRepository, ReservationRepository
from ..utils.time import utc_now
from .reservations import cleanup_expired_reservations

logger = logging.getLogger(__name__)

CLEANUP_COUNT_METRIC = "reservation_cleanup_count"
CLEANUP_DURATION_METRIC = "reservation_cleanup_duration_ms"
CLEANUP_FAILURE_METRIC = "reservation_cleanup_failure"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class CleanupResult:
    removed_count: int
    ran_at: datetime
    duration_ms: int
    ok: bool = True
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthThresholds:
    stale_after_minutes: int = 15
    backlog_warning: int = 100
    backlog_critical: int = 500
    max_ttl_minutes: float = 60


@dataclass
class ReservationHealth:
    status: HealthStatus
    active_count: int
    expired_count: int
    last_cleanup_at: Optional[datetime]
    last_cleanup_count: Optional[int]
    last_failure_at: Optional[datetime]
    issues: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


async def sweep_expired_reservations(
    res_repo: ReservationRepository,
    metric_repo: MetricRepository,
) -> CleanupResult:
    """Delete expired holds and record the run in the same transaction."""
    started = time.monotonic()
    removed = await cleanup_expired_reservations(res_repo)
    duration_ms = int((time.monotonic() - started) * 1000)
    ran_at = utc_now()
    await metric_repo.record(CLEANUP_COUNT_METRIC, removed, ran_at)
    await metric_repo.record(CLEANUP_DURATION_METRIC, duration_ms, ran_at)
    if removed > 100:
        logger.warning("cleanup removed %d expired reservations; check the sweeper schedule", removed)
    else:
        logger.info("cleanup removed %d expired reservations in %dms", removed, duration_ms)
    return CleanupResult(removed_count=removed, ran_at=ran_at, duration_ms=duration_ms)


async def record_cleanup_failure(metric_repo: MetricRepository, *, failed_at: datetime) -> None:
    await metric_repo.record(CLEANUP_FAILURE_METRIC, 1, failed_at)


async def check_reservation_health(
    res_repo: ReservationRepository,
    metric_repo: MetricRepository,
    *,
    thresholds: HealthThresholds = HealthThresholds(),
) -> ReservationHealth:
    now = utc_now()
    stats = await res_repo.stats(now)
    last_run = await metric_repo.latest(CLEANUP_COUNT_METRIC)
    last_failure = await metric_repo.latest(CLEANUP_FAILURE_METRIC)

    status = HealthStatus.HEALTHY
    issues: list[str] = []

    def _warn(message: str) -> None:
        nonlocal status
        if status == HealthStatus.HEALTHY:
            status = HealthStatus.WARNING
        issues.append(message)

    if stats.expired_count > thresholds.backlog_critical:
        status = HealthStatus.CRITICAL
        issues.append(
            f"expired reservation backlog {stats.expired_count} exceeds {thresholds.backlog_critical}; "
            "cleanup may be failing"
        )
    elif stats.expired_count > thresholds.backlog_warning:
        _warn(f"high expired reservation count: {stats.expired_count}")

    if last_run is None:
        _warn("cleanup has never run")
    else:
        minutes_since = (now - last_run.recorded_at) / timedelta(minutes=1)
        if minutes_since > thresholds.stale_after_minutes:
            _warn(f"cleanup has not run for {int(minutes_since)} minutes")

    if last_failure is not None and (last_run is None or last_failure.recorded_at > last_run.recorded_at):
        _warn("last cleanup run failed")

    if stats.oldest_active_created_at is not None:
        age_minutes = (now - stats.oldest_active_created_at) / timedelta(minutes=1)
        if age_minutes > thresholds.max_ttl_minutes * 2:
            _warn(f"oldest active reservation is {int(age_minutes)} minutes old")

    return ReservationHealth(
        status=status,
        active_count=stats.active_count,
        expired_count=stats.expired_count,
        last_cleanup_at=last_run.recorded_at if last_run is not None else None,
        last_cleanup_count=last_run.metric_value if last_run is not None else None,
        last_failure_at=last_failure.recorded_at if last_failure is not None else None,
        issues=issues,
    )
