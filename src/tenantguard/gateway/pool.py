"""Process-wide asyncpg connection pool with an explicit lifecycle.

The pool is opened lazily on first acquire (or eagerly via :meth:`open`) and
closed with :meth:`close`. Opening is guarded by an asyncio lock so
concurrent first callers share one pool.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import asyncpg

from ..core.config import GuardConfig
from ..core.logging_config import mask_sensitive_values
from ..isolation.exceptions import GatewayError

logger = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]


class DatabasePool:
    """Lazily opened asyncpg pool.

    Args:
        config: Guard configuration (DSN, pool bounds, SSL).
        pool_factory: Coroutine function creating the pool; defaults to
            ``asyncpg.create_pool``.
    """

    def __init__(self, config: GuardConfig, pool_factory: Optional[PoolFactory] = None):
        self.config = config
        self._factory = pool_factory or asyncpg.create_pool
        self._pool: Optional[Any] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def _connect_kwargs(self) -> dict:
        kwargs = {
            "dsn": self.config.database_url,
            "min_size": self.config.min_pool_size,
            "max_size": self.config.max_pool_size,
        }
        if self.config.ssl:
            # Encrypted, without certificate verification
            kwargs["ssl"] = "require"
        return kwargs

    async def open(self) -> Any:
        """Open the pool if needed and return the underlying asyncpg pool.

        Raises:
            GatewayError: If no database URL is configured.
        """
        if self._pool is not None:
            return self._pool
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._pool is None:
                if not self.config.database_url and self._factory is asyncpg.create_pool:
                    raise GatewayError(
                        "No database URL configured (set TENANTGUARD_DATABASE_URL "
                        "or DATABASE_URL)"
                    )
                self._pool = await self._factory(**self._connect_kwargs())
                logger.info(
                    f"Opened connection pool ({self.config.min_pool_size}-"
                    f"{self.config.max_pool_size}) to "
                    f"{mask_sensitive_values(self.config.database_url or '')}"
                )
        return self._pool

    async def close(self) -> None:
        """Close the pool. Safe to call when it was never opened."""
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info("Closed connection pool")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        """Lease one connection; it is released on every exit path."""
        pool = await self.open()
        async with pool.acquire() as connection:
            yield connection

    async def __aenter__(self) -> "DatabasePool":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
