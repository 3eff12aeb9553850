import secrets
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import async_session
from .domain.services import TtlBounds
from .usecases.cleanup import HealthThresholds
from .utils.auth import bearer_token, decode_actor_id

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def get_optional_actor_id(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """Actor from a bearer token when one is sent; guests call without it."""
    if authorization is None:
        return None
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid authorization header",
            headers=_BEARER_CHALLENGE,
        )
    try:
        return decode_actor_id(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid token",
            headers=_BEARER_CHALLENGE,
        ) from exc


async def get_actor_id(actor_id: Optional[str] = Depends(get_optional_actor_id)) -> str:
    if actor_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="bearer token required",
            headers=_BEARER_CHALLENGE,
        )
    return actor_id


async def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.cron_secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="cron job not configured")
    token = bearer_token(authorization)
    if token is None or not secrets.compare_digest(token, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized", headers=_BEARER_CHALLENGE)


def get_ttl_bounds(settings: Settings = Depends(get_settings)) -> TtlBounds:
    return TtlBounds(
        default=settings.reservation_ttl_default_minutes,
        minimum=settings.reservation_ttl_min_minutes,
        maximum=settings.reservation_ttl_max_minutes,
    )


def get_health_thresholds(settings: Settings = Depends(get_settings)) -> HealthThresholds:
    return HealthThresholds(
        stale_after_minutes=settings.cleanup_stale_after_minutes,
        backlog_warning=settings.cleanup_backlog_warning,
        backlog_critical=settings.cleanup_backlog_critical,
        max_ttl_minutes=settings.reservation_ttl_max_minutes,
    )
