"""Postgres connection negotiation, caching and self-healing."""
import asyncio
import logging
import ssl
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg

from queryrouter.errors import DatabaseConnectionError, error_message

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class DriverResult:
    """One result set as returned by the database."""

    command: Optional[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)


def command_tag(status_message: Optional[str]) -> Optional[str]:
    """Reduce a status message like "SELECT 3" to its command, "SELECT"."""
    if not status_message:
        return None
    return status_message.split()[0]


def permissive_ssl_context() -> ssl.SSLContext:
    """TLS without certificate verification, like libpq's sslmode=require."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def redact(dsn: str) -> str:
    """Host part of a connection string, safe to log."""
    return dsn.rsplit("@", 1)[-1]


class PgConnection:
    """A live asyncpg connection plus its lifecycle state.

    asyncpg rejects concurrent operations on one connection, so queries are
    serialized through a lock. The termination listener is the connection's
    error channel: it moves the state to FAILED and notifies the manager.
    """

    def __init__(
        self,
        raw: Any,
        dsn: str,
        cache_key: str,
        on_failure: Optional[Callable[["PgConnection"], None]] = None,
    ):
        self.raw = raw
        self.dsn = dsn
        self.cache_key = cache_key
        self.state = ConnectionState.CONNECTED
        self._on_failure = on_failure
        self._lock = asyncio.Lock()
        raw.add_termination_listener(self._handle_termination)

    @property
    def is_live(self) -> bool:
        return self.state is ConnectionState.CONNECTED and not self.raw.is_closed()

    async def query(self, text: str) -> DriverResult:
        async with self._lock:
            statement = await self.raw.prepare(text)
            records = await statement.fetch()
        return DriverResult(
            command=command_tag(statement.get_statusmsg()),
            rows=[dict(record) for record in records],
        )

    def _handle_termination(self, raw: Any) -> None:
        # asyncpg also fires the listener for closes we initiated
        if self.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            return

        logger.error("PostgreSQL connection to %s terminated", redact(self.cache_key))
        self.state = ConnectionState.FAILED
        if not raw.is_closed():
            raw.terminate()
        if self._on_failure is not None:
            self._on_failure(self)

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if not self.raw.is_closed():
            await self.raw.close()


class ConnectionCache:
    """Process-wide mapping of cache key to at most one live connection."""

    def __init__(self):
        self._entries: Dict[str, PgConnection] = {}

    def get(self, key: str) -> Optional[PgConnection]:
        connection = self._entries.get(key)
        if connection is None:
            return None
        if not connection.is_live:
            del self._entries[key]
            return None
        return connection

    def put(self, key: str, connection: PgConnection) -> None:
        self._entries[key] = connection

    def invalidate(self, key: str, connection: Optional[PgConnection] = None) -> bool:
        """Drop the entry for key; with connection given, only if it is that one."""
        current = self._entries.get(key)
        if current is None:
            return False
        if connection is not None and current is not connection:
            return False
        del self._entries[key]
        return True

    def holds(self, connection: PgConnection) -> bool:
        return self._entries.get(connection.cache_key) is connection

    def pop_all(self) -> List[PgConnection]:
        connections = list(self._entries.values())
        self._entries.clear()
        return connections

    def __len__(self) -> int:
        return len(self._entries)


class ConnectionManager:
    """Obtains usable connections, optionally caching one per key.

    In-flight queries always finish against the handle they were given.
    Replacements installed after a failure are only seen by retries and
    later acquisitions.
    """

    def __init__(
        self,
        cache: Optional[ConnectionCache] = None,
        connect: Callable[..., Awaitable[Any]] = asyncpg.connect,
    ):
        self.cache = cache
        self._connect = connect
        self._states: Dict[str, ConnectionState] = {}
        self._reconnects: Dict[str, "asyncio.Task[Optional[PgConnection]]"] = {}
        self._replace_lock = asyncio.Lock()

    def state(self, cache_key: str) -> Optional[ConnectionState]:
        return self._states.get(cache_key)

    async def acquire(
        self,
        connection_string: str,
        cache_key: Optional[str] = None,
        no_cache: bool = False,
    ) -> PgConnection:
        """Return a live connection, negotiating one if none is cached.

        Connections made with no_cache set are private to the caller and are
        never installed in the cache.
        """
        key = cache_key or connection_string

        if self.cache is not None and not no_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Reusing cached PostgreSQL connection to %s", redact(cached.cache_key))
                return cached

        self._states[key] = ConnectionState.CONNECTING
        try:
            connection = await self._negotiate(connection_string, key)
        except DatabaseConnectionError:
            self._states[key] = ConnectionState.FAILED
            raise

        self._states[key] = ConnectionState.CONNECTED
        if self.cache is not None and not no_cache:
            self.cache.put(key, connection)
        return connection

    async def replace(self, stale: PgConnection) -> PgConnection:
        """Invalidate a broken connection and hand back a working one."""
        key = stale.cache_key
        async with self._replace_lock:
            if self.cache is not None:
                self.cache.invalidate(key, stale)

                current = self.cache.get(key)
                if current is not None:
                    return current

                pending = self._reconnects.get(key)
                if pending is not None and not pending.done():
                    replacement = await pending
                    if replacement is not None:
                        return replacement

            logger.info("Replacing lost PostgreSQL connection to %s", redact(stale.cache_key))
            self._states[key] = ConnectionState.RECONNECTING
            try:
                fresh = await self._negotiate(stale.dsn, key)
            except DatabaseConnectionError:
                self._states[key] = ConnectionState.FAILED
                raise

            self._states[key] = ConnectionState.CONNECTED
            if self.cache is not None:
                self.cache.put(key, fresh)
            return fresh

    async def release(self, connection: PgConnection) -> None:
        """Give a connection back; only uncached connections get closed."""
        if self.cache is not None and self.cache.holds(connection):
            return
        await connection.close()

    async def wait_reconnected(self, cache_key: str) -> Optional[PgConnection]:
        """Wait for a background reconnect of cache_key, if one is running."""
        pending = self._reconnects.get(cache_key)
        if pending is not None and not pending.done():
            return await pending
        if self.cache is None:
            return None
        return self.cache.get(cache_key)

    async def close(self) -> None:
        for task in self._reconnects.values():
            task.cancel()
        self._reconnects.clear()
        if self.cache is not None:
            for connection in self.cache.pop_all():
                await connection.close()

    async def _negotiate(self, dsn: str, cache_key: str) -> PgConnection:
        logger.info("Establishing new PostgreSQL connection...")
        try:
            raw = await self._connect(dsn)
            logger.info("Connected to PostgreSQL database.")
        except Exception as e:
            logger.info("Default connection failed (%s), attempting connection with sslmode=require...", e)
            try:
                raw = await self._connect(dsn, ssl=permissive_ssl_context())
            except Exception as ssl_error:
                logger.error("SSL connection error: %s", ssl_error)
                raise DatabaseConnectionError(error_message(ssl_error)) from ssl_error
            logger.info("Connected to PostgreSQL database with SSL.")

        return PgConnection(raw, dsn=dsn, cache_key=cache_key, on_failure=self._connection_failed)

    def _connection_failed(self, connection: PgConnection) -> None:
        key = connection.cache_key
        if self.cache is None or not self.cache.invalidate(key, connection):
            return

        self._states[key] = ConnectionState.FAILED
        pending = self._reconnects.get(key)
        if pending is not None and not pending.done():
            return

        logger.warning("Cached connection to %s failed, reconnecting", redact(connection.cache_key))
        self._reconnects[key] = asyncio.get_running_loop().create_task(
            self._reconnect(connection.dsn, key)
        )

    async def _reconnect(self, dsn: str, cache_key: str) -> Optional[PgConnection]:
        self._states[cache_key] = ConnectionState.RECONNECTING
        try:
            connection = await self._negotiate(dsn, cache_key)
        except DatabaseConnectionError as e:
            logger.error("Reconnect to %s failed: %s", redact(cache_key), e)
            self._states[cache_key] = ConnectionState.FAILED
            return None

        self._states[cache_key] = ConnectionState.CONNECTED
        if self.cache is not None:
            self.cache.put(cache_key, connection)
        return connection
