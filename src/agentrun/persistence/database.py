"""
SQLite database shared by the run store and the event log.

One aiosqlite connection per process. Statements are serialized on the
connection's worker thread; multi-statement writes additionally hold
``Database.write()`` so they commit or roll back as a unit.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite
import orjson

from agentrun.logging import get_logger

logger = get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS agent_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        agent_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        input TEXT NOT NULL,
        output TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agent_runs_status ON agent_runs(status)",
    """
    CREATE TABLE IF NOT EXISTS agent_run_steps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER NOT NULL REFERENCES agent_runs(id),
        step_name TEXT NOT NULL,
        step_order INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        output TEXT,
        metadata TEXT,
        error TEXT,
        started_at TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, step_order)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agent_run_steps_run ON agent_run_steps(run_id)",
    """
    CREATE TABLE IF NOT EXISTS agent_run_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER NOT NULL REFERENCES agent_runs(id),
        sequence INTEGER NOT NULL,
        event_id TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, sequence)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agent_run_events_type ON agent_run_events(run_id, type)",
]


def dumps(value: Any) -> str | None:
    """Encode a JSON column value."""
    if value is None:
        return None
    return orjson.dumps(value).decode("utf-8")


def loads(value: str | bytes | None) -> Any:
    """Decode a JSON column value."""
    if value is None:
        return None
    return orjson.loads(value)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Owns the aiosqlite connection and the schema."""

    def __init__(self, path: str | Path) -> None:
        """Initialize the database.

        Args:
            path: SQLite file, or ":memory:".
        """
        self.path = path if path == ":memory:" else Path(path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the connection and create tables. Safe to call twice."""
        if self._conn is not None:
            return

        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(str(self.path))
        self._conn.row_factory = aiosqlite.Row

        if isinstance(self.path, Path):
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        for statement in SCHEMA:
            await self._conn.execute(statement)
        await self._conn.commit()

        logger.info("Database ready", path=str(self.path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @asynccontextmanager
    async def write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a group of write statements and commit them together."""
        async with self._write_lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def fetchone(
        self, query: str, params: Iterable[Any] = ()
    ) -> aiosqlite.Row | None:
        async with self.conn.execute(query, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def fetchall(
        self, query: str, params: Iterable[Any] = ()
    ) -> list[aiosqlite.Row]:
        async with self.conn.execute(query, tuple(params)) as cursor:
            return list(await cursor.fetchall())
