"""
Deployment models.

A DeploymentAttempt lives for the duration of one deploy invocation and
moves through an explicit state machine; the backup image reference is
carried on the attempt itself rather than implied by a tag name.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class DeploymentState(str, Enum):
    """States of one deployment attempt."""

    INITIATED = "initiated"
    BACKUP_TAKEN = "backup_taken"
    OLD_STOPPED = "old_stopped"
    NEW_STARTED = "new_started"
    HEALTH_CHECKING = "health_checking"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


DEPLOYMENT_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.INITIATED: {DeploymentState.BACKUP_TAKEN, DeploymentState.FAILED},
    DeploymentState.BACKUP_TAKEN: {DeploymentState.OLD_STOPPED, DeploymentState.FAILED},
    DeploymentState.OLD_STOPPED: {DeploymentState.NEW_STARTED, DeploymentState.FAILED},
    DeploymentState.NEW_STARTED: {DeploymentState.HEALTH_CHECKING},
    DeploymentState.HEALTH_CHECKING: {DeploymentState.HEALTHY, DeploymentState.FAILED},
    # FAILED is terminal unless a backup exists to roll back to
    DeploymentState.FAILED: {DeploymentState.ROLLED_BACK, DeploymentState.ROLLBACK_FAILED},
    DeploymentState.HEALTHY: set(),
    DeploymentState.ROLLED_BACK: set(),
    DeploymentState.ROLLBACK_FAILED: set(),
}

TERMINAL_DEPLOYMENT_STATES = {
    DeploymentState.HEALTHY,
    DeploymentState.FAILED,
    DeploymentState.ROLLED_BACK,
    DeploymentState.ROLLBACK_FAILED,
}


class InvalidTransitionError(Exception):
    """A state machine was asked to make a transition its table forbids."""

    def __init__(self, previous: Enum, new: Enum):
        self.previous = previous
        self.new = new
        super().__init__(f"Invalid transition {previous.value} -> {new.value}")


class DeploymentStep(BaseModel):
    """One recorded transition of a deployment attempt."""

    previous: DeploymentState
    new: DeploymentState
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeploymentAttempt(BaseModel):
    """A single replacement of a running service."""

    service_name: str = Field(..., description="Container name of the service")
    candidate_image_ref: str = Field(..., description="Image being deployed")
    backup_image_ref: str | None = Field(None, description="Image to roll back to, if any")
    container_id: str | None = Field(None, description="Container currently started by this attempt")
    state: DeploymentState = Field(default=DeploymentState.INITIATED)
    history: list[DeploymentStep] = Field(default_factory=list)

    def advance(self, new: DeploymentState, reason: str) -> DeploymentStep:
        """Move to a new state, enforcing the transition table."""
        if new not in DEPLOYMENT_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, new)
        step = DeploymentStep(previous=self.state, new=new, reason=reason)
        self.history.append(step)
        self.state = new
        return step

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_DEPLOYMENT_STATES


class DeploymentOutcome(str, Enum):
    """Final classification of a deployment, ordered by severity."""

    HEALTHY = "healthy"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    DeploymentOutcome.HEALTHY: 0,
    DeploymentOutcome.FAILED: 1,
    DeploymentOutcome.ROLLED_BACK: 2,
    DeploymentOutcome.ROLLBACK_FAILED: 3,
}


class DeploymentResult(BaseModel):
    """Outcome of DeploymentController.deploy()."""

    outcome: DeploymentOutcome
    attempt: DeploymentAttempt
    reason: str | None = Field(None, description="Reason tag for the final state")
    message: str = ""
    service_running: bool | None = Field(
        None, description="Whether a container for the service is left running"
    )

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code
