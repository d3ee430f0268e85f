"""SQLite-backed document store for print jobs and slicing stats.

Holds the two document families the worker writes:

- ``print_jobs``: one row per job record, addressed by its object id,
  with the ``slicing`` sub-document stored as JSON and the top-level
  ``gcode_file`` field.
- ``slicing_stats``: one row per time bucket (hourly keys plus the
  all-zero lifetime key) with additive counters.

All database methods are async (via ``aiosqlite``) so they never block
the worker's event loop while jobs are in flight.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from slicerd.backends.base import DocumentStore
from slicerd.core.constants import GCODE_WAITING_SENTINEL
from slicerd.core.logging import get_logger
from slicerd.daemon.exceptions import TransientError

_logger = get_logger("backends.documents")

STATS_COUNTERS = (
    "slicing_succeeded",
    "slicing_failed",
    "slicing_canceled",
    "slicing_seconds",
)


class SQLiteDocumentStore(DocumentStore):
    """Async SQLite document store.

    Usage::

        store = SQLiteDocumentStore(db_path)
        await store.open()   # creates tables, sets WAL mode
        ...
        await store.close()

    Or as an async context manager::

        async with SQLiteDocumentStore(db_path) as store:
            await store.register_job(...)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database connection and create tables."""
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("documents.opened", path=str(self._db_path))

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteDocumentStore not opened; call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS print_jobs (
                job_oid TEXT PRIMARY KEY,
                slicing TEXT,
                gcode_file TEXT NOT NULL DEFAULT 'waiting'
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS slicing_stats (
                key TEXT PRIMARY KEY,
                slicing_succeeded INTEGER NOT NULL DEFAULT 0,
                slicing_failed INTEGER NOT NULL DEFAULT 0,
                slicing_canceled INTEGER NOT NULL DEFAULT 0,
                slicing_seconds REAL NOT NULL DEFAULT 0
            )
        """)
        await conn.commit()

    async def update_job_status(
        self,
        job_record_id: str,
        slicing: dict[str, Any],
        gcode_file: str,
    ) -> int:
        try:
            cursor = await self._db.execute(
                "UPDATE print_jobs SET slicing = ?, gcode_file = ? WHERE job_oid = ?",
                (json.dumps(slicing), gcode_file, job_record_id),
            )
            await self._db.commit()
        except sqlite3.Error as exc:
            raise TransientError(f"job status update failed: {exc}") from exc
        return cursor.rowcount

    async def increment_stats(self, key: str, increments: dict[str, float]) -> None:
        unknown = set(increments) - set(STATS_COUNTERS)
        if unknown:
            raise ValueError(f"unknown stats counters: {sorted(unknown)}")
        if not increments:
            return
        columns = list(increments)
        values = [increments[c] for c in columns]
        assignments = ", ".join(f"{c} = {c} + excluded.{c}" for c in columns)
        try:
            await self._db.execute(
                f"INSERT INTO slicing_stats (key, {', '.join(columns)}) "
                f"VALUES (?, {', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(key) DO UPDATE SET {assignments}",
                (key, *values),
            )
            await self._db.commit()
        except sqlite3.Error as exc:
            raise TransientError(f"stats increment failed: {exc}") from exc

    async def register_job(self, job_record_id: str) -> None:
        """Create (or reset) a job record in the waiting state."""
        await self._db.execute(
            "INSERT OR REPLACE INTO print_jobs (job_oid, slicing, gcode_file) "
            "VALUES (?, NULL, ?)",
            (job_record_id, GCODE_WAITING_SENTINEL),
        )
        await self._db.commit()

    async def get_job(self, job_record_id: str) -> dict[str, Any] | None:
        """Return ``{"slicing": ..., "gcode_file": ...}`` or None if absent."""
        async with self._db.execute(
            "SELECT slicing, gcode_file FROM print_jobs WHERE job_oid = ?",
            (job_record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "slicing": json.loads(row["slicing"]) if row["slicing"] else None,
            "gcode_file": row["gcode_file"],
        }

    async def delete_job(self, job_record_id: str) -> bool:
        """Remove a job record. Returns True if a row was deleted."""
        cursor = await self._db.execute(
            "DELETE FROM print_jobs WHERE job_oid = ?", (job_record_id,),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def get_stats(self, key: str) -> dict[str, float] | None:
        async with self._db.execute(
            f"SELECT {', '.join(STATS_COUNTERS)} FROM slicing_stats WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {name: row[name] for name in STATS_COUNTERS}

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteDocumentStore:
        await self.open()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


__all__ = ["STATS_COUNTERS", "SQLiteDocumentStore"]
