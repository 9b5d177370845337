"""
Event models for the audit log.

Events provide a durable trail of lifecycle transitions and deployment
outcomes for operators diagnosing certificate or rollout incidents.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventSeverity(str, Enum):
    """Event severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventCategory(str, Enum):
    """Event categories for filtering."""

    SSL = "ssl"
    DEPLOYMENT = "deployment"
    SYSTEM = "system"


class Event(BaseModel):
    """Represents one audit log entry."""

    id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}", description="Unique event identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="When the event occurred"
    )
    severity: EventSeverity = Field(default=EventSeverity.INFO, description="Event severity level")

    # Classification
    category: str = Field(..., description="Event category (ssl, deployment, system)")
    action: str = Field(..., description="Specific action (transition, issued, rolled_back, etc.)")

    # Context
    resource_type: str | None = Field(None, description="Type of affected resource")
    resource_id: str | None = Field(None, description="Domain or service name")

    # Details
    message: str = Field(..., description="Human-readable event description")
    details: dict[str, Any] | None = Field(None, description="Additional structured event data")

    source: str = Field(default="certdeploy", description="Component that generated the event")
