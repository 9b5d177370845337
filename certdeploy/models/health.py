"""
Health check models.

Shared by certificate validation and deployment verification.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthCheckPolicy(BaseModel):
    """How a freshly started service is probed for readiness."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(..., description="URL probed with HTTP GET")
    interval_seconds: float = Field(default=2.0, ge=0, description="Seconds between attempts")
    max_attempts: int = Field(default=30, ge=1, description="Attempts before giving up")

    @property
    def max_wait_seconds(self) -> float:
        """Upper bound on time spent sleeping between attempts."""
        return self.max_attempts * self.interval_seconds


class PollOutcome(str, Enum):
    """Result of a bounded polling loop."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class PollResult(BaseModel):
    """Outcome of HealthPoller.poll()."""

    outcome: PollOutcome
    attempts: int = Field(default=0, description="Number of times the check was invoked")
    elapsed_seconds: float = Field(default=0.0)
    last_error: str | None = Field(None, description="Last failure observed before giving up")

    @property
    def succeeded(self) -> bool:
        return self.outcome == PollOutcome.SUCCESS
