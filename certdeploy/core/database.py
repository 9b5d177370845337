"""
SQLite database management for the audit event log.

Provides async database operations using aiosqlite.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from certdeploy.config import settings

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info',

    category TEXT NOT NULL,
    action TEXT NOT NULL,

    resource_type TEXT,
    resource_id TEXT,

    message TEXT NOT NULL,
    details_json TEXT,

    source TEXT DEFAULT 'certdeploy'
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_severity ON events(severity);
CREATE INDEX IF NOT EXISTS idx_events_category ON events(category);
CREATE INDEX IF NOT EXISTS idx_events_resource ON events(resource_type, resource_id);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.event_db_path
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize database and create tables if needed."""
        if self._initialized:
            return

        # Ensure parent directory exists
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        self._initialized = True
        logger.debug(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        """Get a database connection context manager."""
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute a query and fetch all results."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def insert(self, table: str, data: dict[str, Any]) -> str:
        """Insert a row and return the id."""
        columns = list(data.keys())
        placeholders = ", ".join(["?" for _ in columns])
        columns_str = ", ".join(columns)

        query = f"INSERT INTO {table} ({columns_str}) VALUES ({placeholders})"

        async with self.connection() as db:
            await db.execute(query, tuple(data.values()))
            await db.commit()

        return data.get("id", "")

    async def delete_older_than(self, table: str, timestamp_column: str, days: int) -> int:
        """Delete rows older than specified days. Returns count deleted."""
        # Timestamps are stored as UTC ISO strings, which sort chronologically
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        query = f"DELETE FROM {table} WHERE {timestamp_column} < ?"

        async with self.connection() as db:
            cursor = await db.execute(query, (cutoff,))
            await db.commit()
            return cursor.rowcount


def serialize_json(data: dict[str, Any] | None) -> str | None:
    """Serialize a dict to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data, default=str)


def deserialize_json(data: str | None) -> dict[str, Any] | None:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


# Singleton database instance
_db_instance: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance
