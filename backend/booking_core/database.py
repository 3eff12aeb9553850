from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    # Capacity counts run after the service row lock and must see rows committed by
    # earlier lock holders, which REPEATABLE READ snapshots would hide.
    return create_async_engine(
        settings.database_url,
        echo=settings.echo_sql,
        isolation_level=settings.isolation_level,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


engine = build_engine(get_settings())

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
