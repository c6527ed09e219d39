"""PostgreSQL connection settings, provisioning and the shared asyncpg pool."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

T = TypeVar("T")

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
# asyncpg's message when a server drops the connection during the STARTTLS probe.
_SSL_PROBE_LOST = "unexpected connection_lost() call"


def _ssl_mode(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    if not normalized:
        return None
    if normalized not in SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


@dataclass(frozen=True)
class ConnectionSettings:
    """Where the studio database lives and how to reach it."""

    host: str = "localhost"
    port: int = 5432
    user: str = "studiolink"
    password: str = "studiolink"
    ssl: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ConnectionSettings:
        """Parse a libpq-style ``postgres://`` URL; its database path is ignored."""
        parsed = urlparse(url)
        defaults = cls()
        return cls(
            host=parsed.hostname or defaults.host,
            port=parsed.port or defaults.port,
            user=parsed.username or defaults.user,
            password=parsed.password or defaults.password,
            ssl=_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls) -> ConnectionSettings:
        """``DATABASE_URL`` when set, otherwise the ``POSTGRES_*`` variables."""
        url = os.environ.get("DATABASE_URL")
        if url:
            return cls.from_url(url)
        defaults = cls()
        return cls(
            host=os.environ.get("POSTGRES_HOST", defaults.host),
            port=int(os.environ.get("POSTGRES_PORT", defaults.port)),
            user=os.environ.get("POSTGRES_USER", defaults.user),
            password=os.environ.get("POSTGRES_PASSWORD", defaults.password),
            ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when the server rejected the implicit SSL probe and no mode was configured."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_PROBE_LOST in str(exc)
    )


class Database:
    """Owns the asyncpg pool for one studio database.

    The application lifespan creates a single instance and passes its pool
    to the stores explicitly.
    """

    def __init__(
        self,
        db_name: str,
        settings: ConnectionSettings | None = None,
        *,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.settings = settings or ConnectionSettings()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        return cls(db_name, ConnectionSettings.from_env())

    async def _open(self, opener: Callable[..., Awaitable[T]], kwargs: dict[str, Any]) -> T:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.settings.ssl):
                raise
            logger.info(
                "PostgreSQL dropped the SSL probe; retrying %s with ssl=disable", self.db_name
            )
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the studio database through the ``postgres`` maintenance database."""
        conn = await self._open(asyncpg.connect, self.settings.connect_kwargs("postgres"))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE cannot take bind parameters.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = {
            **self.settings.connect_kwargs(self.db_name),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        self.pool = await self._open(asyncpg.create_pool, kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for: %s", self.db_name)


@asynccontextmanager
async def acquire_conn(pool: asyncpg.Pool) -> AsyncIterator[Any]:
    """Acquire a connection from *pool*, accepting awaitable mock pools too."""
    acquired = pool.acquire()
    if not hasattr(acquired, "__aenter__") and hasattr(acquired, "__await__"):
        acquired = await acquired
    async with acquired as conn:
        yield conn
