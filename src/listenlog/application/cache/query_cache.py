"""Read-through cache for dashboard queries, with an explicit start/shutdown lifecycle."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from listenlog.application.cache.base_cache import InMemoryCache

logger = logging.getLogger(__name__)


def user_key(user_id: str, *parts: object) -> str:
    """Build a cache key scoped to one user ("user:<id>:<part>:<part>...")."""
    suffix = ":".join(str(p) for p in parts)
    return f"user:{user_id}:{suffix}"


class QueryCache:
    """TTL cache in front of expensive per-user queries.

    Hey future me - this is NOT a module-level singleton and it installs NO signal handlers.
    The app lifespan creates it, calls start() (which launches the expiry sweep task) and
    shutdown() on the way out. Tests can build one without start() and nothing runs in the
    background at all.
    """

    def __init__(
        self,
        cleanup_interval_seconds: int = 300,
        backend: InMemoryCache[str, Any] | None = None,
    ) -> None:
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._backend: InMemoryCache[str, Any] = backend or InMemoryCache()
        self._sweep_task: asyncio.Task[None] | None = None
        self._hits = 0
        self._misses = 0

    async def start(self) -> None:
        """Launch the periodic expiry sweep. Idempotent."""
        if self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Query cache started (sweep every %ds)", self.cleanup_interval_seconds
        )

    async def shutdown(self) -> None:
        """Cancel the sweep task and drop all entries. Idempotent."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self._backend.clear()
        logger.info("Query cache shut down")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            removed = await self._backend.cleanup_expired()
            if removed:
                logger.debug("Query cache sweep removed %d expired entries", removed)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: int,
    ) -> Any:
        """Return the cached value for key, calling loader() on a miss.

        None results are not cached (a None from the backend means "miss").
        """
        cached = await self._backend.get(key)
        if cached is not None:
            self._hits += 1
            return cached

        self._misses += 1
        value = await loader()
        if value is not None:
            await self._backend.set(key, value, ttl_seconds=ttl_seconds)
        return value

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every entry belonging to user_id. Returns the number removed."""
        prefix = user_key(user_id)
        removed = await self._backend.delete_where(lambda k: k.startswith(prefix))
        if removed:
            logger.debug("Invalidated %d cached queries for user %s", removed, user_id)
        return removed

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._backend.get_stats(),
            "hits": self._hits,
            "misses": self._misses,
            "running": self.is_running,
        }
