import pytest
from unittest.mock import AsyncMock


class FakeStatement:
    def __init__(self, rows, status):
        self._rows = rows
        self._status = status

    async def fetch(self):
        return self._rows

    def get_statusmsg(self):
        return self._status


class FakeRawConnection:
    """Stands in for an asyncpg connection."""

    def __init__(self, rows=None, status="SELECT 1", error=None):
        self.rows = rows if rows is not None else [{"?column?": 1}]
        self.status = status
        self.error = error
        self.listeners = []
        self.closed = False
        self.prepared = []

    def add_termination_listener(self, callback):
        self.listeners.append(callback)

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True
        for callback in self.listeners:
            callback(self)

    def terminate(self):
        self.closed = True

    async def prepare(self, text):
        self.prepared.append(text)
        if self.error is not None:
            raise self.error
        return FakeStatement(self.rows, self.status)

    def drop(self):
        """Simulate the server going away."""
        self.closed = True
        for callback in self.listeners:
            callback(self)


@pytest.fixture
def raw_connection():
    return FakeRawConnection()


@pytest.fixture
def connect():
    """asyncpg.connect replacement producing a fresh fake per call."""
    created = []

    async def _connect(dsn, **kwargs):
        raw = FakeRawConnection()
        created.append(raw)
        return raw

    mock = AsyncMock(side_effect=_connect)
    mock.created = created
    return mock


@pytest.fixture
def make_raw():
    return FakeRawConnection
