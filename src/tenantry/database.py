"""psqlpy connection pool wrapper used by the ``Postgres*`` directories."""

from __future__ import annotations

import inspect
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence

import msgspec
from msgspec import structs

from .exceptions import DirectoryError

try:  # pragma: no cover - the real driver is only needed against a live server
    from psqlpy import ConnectionPool
except ModuleNotFoundError:  # pragma: no cover - tests inject a fake pool
    ConnectionPool = None  # type: ignore[assignment,misc]


class DatabaseError(DirectoryError):
    """The driver returned something the directories cannot use."""


PoolFactory = Callable[[Mapping[str, Any]], Any]


class PoolConfig(msgspec.Struct, frozen=True):
    """Keyword arguments for ``psqlpy.ConnectionPool``; ``None`` values are not passed."""

    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    db_name: str | None = None
    username: str | None = None
    password: str | None = None
    application_name: str | None = "tenantry"
    max_db_pool_size: int = 10
    connect_timeout_sec: int | None = None

    def options(self) -> dict[str, Any]:
        return {key: value for key, value in structs.asdict(self).items() if value is not None}


class DatabaseConfig(msgspec.Struct, frozen=True):
    pool: PoolConfig = PoolConfig()
    schema: str = "public"
    search_path: tuple[str, ...] = ("public",)
    default_role: str | None = None

    def effective_search_path(self) -> tuple[str, ...]:
        """``schema`` first, followed by the remaining ``search_path`` entries."""

        return tuple(dict.fromkeys((self.schema, *self.search_path)))


@dataclass(slots=True)
class DatabaseResult:
    rows: list[dict[str, Any]]

    def first(self) -> dict[str, Any] | None:
        if not self.rows:
            return None
        return self.rows[0]

    def scalar(self) -> Any:
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()), None)


def _rows(raw: Any) -> list[dict[str, Any]]:
    data = raw.result() if hasattr(raw, "result") else raw
    if data is None:
        return []
    if isinstance(data, dict):
        return [dict(data)]
    if isinstance(data, list):
        return [dict(row) for row in data]
    raise DatabaseError(f"Unsupported result from driver: {type(data)!r}")


class DatabaseConnection:
    """A pooled psqlpy connection with row helpers and explicit transactions."""

    def __init__(self, raw_connection: Any) -> None:
        self._raw = raw_connection

    async def execute(self, query: str, parameters: Sequence[Any] | None = None) -> DatabaseResult:
        arguments = None if parameters is None else list(parameters)
        return DatabaseResult(_rows(await self._raw.execute(query, arguments, prepared=False)))

    async def fetch_all(self, query: str, parameters: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        result = await self.execute(query, parameters)
        return result.rows

    async def fetch_one(self, query: str, parameters: Sequence[Any] | None = None) -> dict[str, Any] | None:
        result = await self.execute(query, parameters)
        return result.first()

    async def fetch_value(self, query: str, parameters: Sequence[Any] | None = None) -> Any:
        result = await self.execute(query, parameters)
        return result.scalar()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DatabaseConnection]:
        await self.execute("BEGIN")
        try:
            yield self
        except BaseException:
            await self.execute("ROLLBACK")
            raise
        await self.execute("COMMIT")

    async def configure(self, search_path: Iterable[str], role: str | None) -> None:
        schemas = ", ".join(quote_identifier(schema) for schema in search_path)
        await self.execute(f"SET search_path TO {schemas}")
        if role is not None:
            await self.execute(f"SET ROLE {quote_identifier(role)}")


class Database:
    """Owns the connection pool and hands out configured connections.

    The pool is created lazily through ``pool_factory`` unless one is passed in.
    Every connection gets the configured ``search_path`` and, when set, a
    ``SET ROLE`` before it is yielded.
    """

    def __init__(
        self,
        config: DatabaseConfig,
        *,
        pool: Any | None = None,
        pool_factory: PoolFactory | None = None,
    ) -> None:
        self.config = config
        self._pool = pool
        self._pool_factory = pool_factory or _psqlpy_pool

    async def startup(self) -> None:
        self._get_pool()

    async def shutdown(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None or not hasattr(pool, "close"):
            return
        closing = pool.close()
        if inspect.isawaitable(closing):  # pragma: no cover - depends on the pool implementation
            await closing

    @asynccontextmanager
    async def connection(self, *, role: str | None = None) -> AsyncIterator[DatabaseConnection]:
        async with self._get_pool().acquire() as raw:
            connection = DatabaseConnection(raw)
            await connection.configure(self.config.effective_search_path(), role or self.config.default_role)
            yield connection

    def table(self, name: str) -> str:
        return f"{quote_identifier(self.config.schema)}.{quote_identifier(name)}"

    def _get_pool(self) -> Any:
        if self._pool is None:
            self._pool = self._pool_factory(self.config.pool.options())
        return self._pool


def _psqlpy_pool(options: Mapping[str, Any]) -> Any:  # pragma: no cover - needs a live server
    if ConnectionPool is None:
        raise DatabaseError("psqlpy is required for the default connection pool")
    return ConnectionPool(**options)


def quote_identifier(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


__all__ = [
    "Database",
    "DatabaseConfig",
    "DatabaseConnection",
    "DatabaseError",
    "DatabaseResult",
    "PoolConfig",
    "quote_identifier",
]
