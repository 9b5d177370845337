"""
Event storage and retrieval for the audit log.

Lifecycle transitions, fallbacks and deployment outcomes are recorded here
in addition to the process log. Recording from orchestration code goes
through record_safely() so an unwritable database never aborts a renewal
or a deployment.
"""

import logging
from datetime import datetime
from typing import Any

import aiosqlite

from certdeploy.config import settings
from certdeploy.core.database import Database, deserialize_json, get_database, serialize_json
from certdeploy.models.event import Event, EventSeverity

logger = logging.getLogger(__name__)


class EventStore:
    """Persistent storage and retrieval of audit events."""

    def __init__(self, db: Database | None = None):
        self.db = db or get_database()

    async def record_event(
        self,
        category: str,
        action: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Event:
        """
        Record a new event to the database.

        Args:
            category: Event category (ssl, deployment, system)
            action: Specific action (transition, issued, rolled_back, etc.)
            message: Human-readable event description
            severity: Event severity level
            resource_type: Type of affected resource (certificate, service)
            resource_id: Domain or service name
            details: Additional structured event data

        Returns:
            The created Event object
        """
        event = Event(
            category=category,
            action=action,
            message=message,
            severity=severity,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        )

        data = {
            "id": event.id,
            "timestamp": event.timestamp.isoformat(),
            "severity": event.severity.value,
            "category": event.category,
            "action": event.action,
            "resource_type": event.resource_type,
            "resource_id": event.resource_id,
            "message": event.message,
            "details_json": serialize_json(event.details),
            "source": event.source,
        }

        await self.db.initialize()
        await self.db.insert("events", data)
        logger.debug(f"Recorded event: {event.id} [{event.severity.value}] {event.message}")

        return event

    async def record_safely(self, *args, **kwargs) -> Event | None:
        """Record an event, logging a warning instead of raising on failure."""
        try:
            return await self.record_event(*args, **kwargs)
        except (aiosqlite.Error, OSError) as e:
            logger.warning(f"Failed to record audit event: {e}")
            return None

    async def list_events(
        self,
        category: str | None = None,
        resource_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[Event]:
        """List events, newest first, with optional filtering."""
        where_clauses = []
        params: list[Any] = []

        if category:
            where_clauses.append("category = ?")
            params.append(category)

        if resource_id:
            where_clauses.append("resource_id = ?")
            params.append(resource_id)

        if since:
            where_clauses.append("timestamp >= ?")
            params.append(since.isoformat())

        where_sql = " AND ".join(where_clauses) if where_clauses else "1=1"
        query = f"""
            SELECT * FROM events
            WHERE {where_sql}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        await self.db.initialize()
        rows = await self.db.fetch_all(query, tuple(params))
        return [self._row_to_event(row) for row in rows]

    async def enforce_retention(self, retention_days: int | None = None) -> int:
        """
        Delete events older than retention period.

        Returns:
            Number of events deleted
        """
        days = retention_days or settings.event_retention_days

        await self.db.initialize()
        deleted = await self.db.delete_older_than("events", "timestamp", days)

        if deleted > 0:
            logger.info(f"Retention cleanup: deleted {deleted} events older than {days} days")

        return deleted

    def _row_to_event(self, row: dict[str, Any]) -> Event:
        """Convert a database row to an Event object."""
        return Event(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            severity=EventSeverity(row["severity"]),
            category=row["category"],
            action=row["action"],
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            message=row["message"],
            details=deserialize_json(row.get("details_json")),
            source=row.get("source") or "certdeploy",
        )


# Singleton instance
_event_store: EventStore | None = None


def get_event_store() -> EventStore:
    """Get the global event store instance."""
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store
