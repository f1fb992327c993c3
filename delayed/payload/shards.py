"""
Shard registry used by sharded payloads.
"""

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from delayed.db.connection import create_engine_for_url, create_session_factory

logger = logging.getLogger(__name__)


class ShardRegistry:
    """
    Maps shard ids to session factories.

    Instances are awaitable shard locators: ``await registry(shard_id)``
    returns the session factory or None when the shard is unknown.
    """

    def __init__(self) -> None:
        self._factories: dict[str, async_sessionmaker[AsyncSession]] = {}
        self._engines: list[AsyncEngine] = []

    @classmethod
    def from_urls(cls, urls: Mapping[str, str]) -> "ShardRegistry":
        """
        Build a registry with one engine per shard URL.

        Args:
            urls: Shard id to database URL.
        """
        registry = cls()
        for shard_id, url in urls.items():
            engine = create_engine_for_url(url)
            registry._engines.append(engine)
            registry.register(shard_id, create_session_factory(engine))
        return registry

    def register(
        self, shard_id: Any, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        self._factories[str(shard_id)] = session_factory
        logger.debug("Registered shard", extra={"shard_id": str(shard_id)})

    async def __call__(self, shard_id: Any) -> async_sessionmaker[AsyncSession] | None:
        return self._factories.get(str(shard_id))

    def __len__(self) -> int:
        return len(self._factories)

    async def dispose(self) -> None:
        """Dispose of engines created by from_urls()."""
        for engine in self._engines:
            await engine.dispose()
        self._engines.clear()
