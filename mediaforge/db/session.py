from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mediaforge.config import get_settings


def create_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    options: Dict[str, Any] = {'echo': settings.database_echo}
    if url.startswith('sqlite'):
        # Concurrent reconcilers share one file; wait for the write lock instead of failing.
        options['connect_args'] = {'timeout': 30}
    else:
        options['pool_pre_ping'] = True
        options['pool_size'] = settings.database_pool_size
    return create_async_engine(url, **options)


def create_sessionmaker(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine or create_engine(), expire_on_commit=False)
