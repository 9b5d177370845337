"""
Service deployment with backup and rollback.

Replaces the running container of a service with a candidate image,
verifies it with the health poller, and restores the previous image when
the candidate does not become healthy.
"""

import logging
from collections.abc import Callable

from certdeploy.config import default_health_policy, settings
from certdeploy.core.cancellation import CancellationToken
from certdeploy.core.docker_service import DockerService, DockerServiceError, get_docker_service, image_repository
from certdeploy.core.event_store import EventStore, get_event_store
from certdeploy.core.health_poller import HealthCheck, HealthPoller, health_poller, http_check
from certdeploy.core.locking import OperationLock, get_operation_lock
from certdeploy.models.deployment import (
    DeploymentAttempt,
    DeploymentOutcome,
    DeploymentResult,
    DeploymentState,
)
from certdeploy.models.event import EventCategory, EventSeverity
from certdeploy.models.health import HealthCheckPolicy, PollOutcome

logger = logging.getLogger(__name__)

_STATE_SEVERITY = {
    DeploymentState.FAILED: EventSeverity.ERROR,
    DeploymentState.ROLLED_BACK: EventSeverity.WARNING,
    DeploymentState.ROLLBACK_FAILED: EventSeverity.CRITICAL,
}

_LOG_LEVEL = {
    DeploymentState.FAILED: logging.ERROR,
    DeploymentState.ROLLED_BACK: logging.WARNING,
    DeploymentState.ROLLBACK_FAILED: logging.CRITICAL,
}


def backup_ref_for(service_name: str) -> str:
    return f"{service_name}:backup"


def _failure_reason(attempt: DeploymentAttempt) -> str | None:
    """Reason of the step that entered FAILED, else of the last step."""
    for step in attempt.history:
        if step.new == DeploymentState.FAILED:
            return step.reason
    return attempt.history[-1].reason if attempt.history else None


class DeploymentController:
    """
    Drive one DeploymentAttempt through its state machine.

    The runtime is a DockerService or any object with the same async
    container/image methods. Health checks are built per policy by
    check_factory, which defaults to an HTTP probe of policy.endpoint.
    """

    def __init__(
        self,
        runtime: DockerService | None = None,
        poller: HealthPoller | None = None,
        lock: OperationLock | None = None,
        event_store: EventStore | None = None,
        check_factory: Callable[[HealthCheckPolicy], HealthCheck] | None = None,
        image_retention: int | None = None,
        remove_failed_candidate: bool | None = None,
    ):
        self.runtime = runtime or get_docker_service()
        self.poller = poller or health_poller
        self.lock = lock
        self.event_store = event_store
        self.check_factory = check_factory or (lambda policy: http_check(policy.endpoint))
        self.image_retention = image_retention if image_retention is not None else settings.image_retention
        self.remove_failed_candidate = (
            remove_failed_candidate if remove_failed_candidate is not None else settings.remove_failed_candidate
        )

    async def deploy(
        self,
        service_name: str,
        candidate_image_ref: str,
        policy: HealthCheckPolicy | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        """
        Replace a service's container with a candidate image.

        Args:
            service_name: Container name of the service
            candidate_image_ref: Image to deploy
            policy: Health check policy (defaults from settings)
            cancel_token: Optional operator abort signal

        Returns:
            DeploymentResult; HEALTHY, ROLLED_BACK, FAILED or ROLLBACK_FAILED

        Raises:
            LockTimeoutError if a renewal or another deployment holds the lock
        """
        policy = policy or default_health_policy()
        cancel_token = cancel_token or CancellationToken()
        attempt = DeploymentAttempt(service_name=service_name, candidate_image_ref=candidate_image_ref)

        if self.lock is None:
            return await self._deploy(attempt, policy, cancel_token)

        async with self.lock.hold(f"deploy:{service_name}"):
            return await self._deploy(attempt, policy, cancel_token)

    async def restart(
        self,
        service_name: str,
        policy: HealthCheckPolicy | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeploymentResult:
        """Redeploy the image the service is currently running."""
        existing = await self.runtime.find_container(service_name)
        if existing is None or not existing.get("image"):
            attempt = DeploymentAttempt(service_name=service_name, candidate_image_ref="")
            attempt.advance(DeploymentState.FAILED, "not_found")
            logger.error(f"{service_name}: no container to restart")
            return DeploymentResult(
                outcome=DeploymentOutcome.FAILED,
                attempt=attempt,
                reason="not_found",
                message=f"No container named {service_name}",
                service_running=False,
            )
        return await self.deploy(service_name, existing["image"], policy, cancel_token)

    async def status(self, service_name: str) -> dict | None:
        """Container status of a service, or None if it has no container."""
        if await self.runtime.find_container(service_name) is None:
            return None
        return await self.runtime.get_container_status(service_name)

    async def _deploy(
        self, attempt: DeploymentAttempt, policy: HealthCheckPolicy, cancel_token: CancellationToken
    ) -> DeploymentResult:
        name = attempt.service_name
        logger.info(f"{name}: deploying {attempt.candidate_image_ref}")

        # Initiated -> BackupTaken
        if cancel_token.cancelled:
            return await self._abort_untouched(attempt, service_running=None)

        try:
            existing = await self.runtime.find_container(name)
            if existing is not None:
                backup_ref = backup_ref_for(name)
                await self.runtime.tag_image(existing["image_id"], backup_ref)
                attempt.backup_image_ref = backup_ref
        except DockerServiceError as e:
            await self._advance(attempt, DeploymentState.FAILED, "backup_failed")
            return self._result(
                attempt,
                DeploymentOutcome.FAILED,
                f"Could not back up the running version: {e.message}; service untouched",
                service_running=None,
            )

        await self._advance(
            attempt,
            DeploymentState.BACKUP_TAKEN,
            f"backup {attempt.backup_image_ref}" if attempt.backup_image_ref else "no prior version",
        )

        # Last point at which an abort leaves the service untouched
        if cancel_token.cancelled:
            return await self._abort_untouched(attempt, service_running=bool(existing and existing.get("running")))

        # BackupTaken -> OldStopped
        try:
            await self.runtime.stop_container(name)
            await self.runtime.remove_container(name)
        except DockerServiceError as e:
            current = await self._find_quietly(name)
            if current is not None and current.get("running"):
                await self._advance(attempt, DeploymentState.FAILED, "stop_failed")
                return self._result(
                    attempt,
                    DeploymentOutcome.FAILED,
                    f"Could not stop the running version: {e.message}; it is still serving",
                    service_running=True,
                )
            await self._advance(attempt, DeploymentState.FAILED, "stop_failed")
            return await self._recover(attempt, policy, f"Could not replace the running version: {e.message}")

        await self._advance(attempt, DeploymentState.OLD_STOPPED, "old container stopped and removed")

        # OldStopped -> NewStarted; the candidate is always started once the old one is gone
        try:
            attempt.container_id = await self.runtime.start_container(attempt.candidate_image_ref, name)
        except DockerServiceError as e:
            await self._advance(attempt, DeploymentState.FAILED, "start_failed")
            return await self._recover(attempt, policy, f"Candidate failed to start: {e.message}")

        await self._advance(attempt, DeploymentState.NEW_STARTED, f"container {attempt.container_id[:12]}")
        await self._advance(attempt, DeploymentState.HEALTH_CHECKING, policy.endpoint)

        poll = await self.poller.poll(self.check_factory(policy), policy, cancel_token)

        if poll.succeeded:
            await self._advance(attempt, DeploymentState.HEALTHY, f"healthy after {poll.attempts} attempts")
            await self._prune_images(attempt)
            return self._result(
                attempt,
                DeploymentOutcome.HEALTHY,
                f"{name} is running {attempt.candidate_image_ref}",
                service_running=True,
            )

        if poll.outcome == PollOutcome.CANCELLED:
            await self._advance(attempt, DeploymentState.FAILED, "cancelled")
            return self._result(
                attempt,
                DeploymentOutcome.FAILED,
                f"Deployment cancelled during health checks; {attempt.candidate_image_ref} left running unverified",
                service_running=True,
            )

        await self._advance(attempt, DeploymentState.FAILED, "health_check_failed")
        return await self._recover(
            attempt,
            policy,
            f"Candidate unhealthy after {poll.attempts} attempts: {poll.last_error}",
        )

    async def _recover(self, attempt: DeploymentAttempt, policy: HealthCheckPolicy, message: str) -> DeploymentResult:
        """Handle a FAILED attempt: roll back if possible, else report what is left running."""
        name = attempt.service_name

        if attempt.backup_image_ref is None:
            return await self._fail_without_backup(attempt, message)

        logger.warning(f"{name}: {message}; rolling back to {attempt.backup_image_ref}")
        try:
            await self.runtime.stop_container(name)
            await self.runtime.remove_container(name)
            attempt.container_id = await self.runtime.start_container(attempt.backup_image_ref, name)
        except DockerServiceError as e:
            await self._advance(attempt, DeploymentState.ROLLBACK_FAILED, "backup_start_failed")
            return self._result(
                attempt,
                DeploymentOutcome.ROLLBACK_FAILED,
                f"{message}; rollback could not start {attempt.backup_image_ref}: {e.message}",
                service_running=False,
            )

        # Rollback is bounded by the policy and does not honor cancellation
        poll = await self.poller.poll(self.check_factory(policy), policy)
        if poll.succeeded:
            await self._advance(attempt, DeploymentState.ROLLED_BACK, "backup healthy")
            return self._result(
                attempt,
                DeploymentOutcome.ROLLED_BACK,
                f"{message}; service restored to previous version",
                service_running=True,
            )

        await self._advance(attempt, DeploymentState.ROLLBACK_FAILED, "backup_unhealthy")
        return self._result(
            attempt,
            DeploymentOutcome.ROLLBACK_FAILED,
            f"{message}; restored previous version is also unhealthy: {poll.last_error}",
            service_running=True,
        )

    async def _fail_without_backup(self, attempt: DeploymentAttempt, message: str) -> DeploymentResult:
        name = attempt.service_name
        running = attempt.container_id is not None

        if running and self.remove_failed_candidate:
            try:
                await self.runtime.stop_container(name)
                await self.runtime.remove_container(name)
                running = False
            except DockerServiceError as e:
                logger.error(f"{name}: could not remove failed candidate: {e.message}")

        if running:
            note = f"no previous version to roll back to; {attempt.candidate_image_ref} left running DEGRADED"
        else:
            note = f"no previous version to roll back to; NO container is running for {name}"
        logger.error(f"{name}: {message}; {note}")
        return self._result(attempt, DeploymentOutcome.FAILED, f"{message}; {note}", service_running=running)

    async def _abort_untouched(self, attempt: DeploymentAttempt, service_running: bool | None) -> DeploymentResult:
        await self._advance(attempt, DeploymentState.FAILED, "cancelled")
        return self._result(
            attempt,
            DeploymentOutcome.FAILED,
            "Deployment cancelled before the running version was stopped; service untouched",
            service_running=service_running,
        )

    async def _prune_images(self, attempt: DeploymentAttempt) -> None:
        """Remove images of the candidate repository beyond the retention count."""
        repository = image_repository(attempt.candidate_image_ref)
        protected_refs = {attempt.candidate_image_ref, attempt.backup_image_ref}
        try:
            images = await self.runtime.list_images(repository)
            in_use = await self.runtime.images_in_use()
            for image in images[self.image_retention :]:
                if image["id"] in in_use or protected_refs.intersection(image["tags"]):
                    continue
                for ref in image["tags"] or [image["id"]]:
                    await self.runtime.remove_image(ref)
        except DockerServiceError as e:
            logger.warning(f"{attempt.service_name}: image pruning failed: {e.message}")

    async def _find_quietly(self, name: str) -> dict | None:
        try:
            return await self.runtime.find_container(name)
        except DockerServiceError:
            return None

    async def _advance(self, attempt: DeploymentAttempt, new: DeploymentState, reason: str) -> None:
        previous = attempt.state
        attempt.advance(new, reason)
        message = f"{attempt.service_name}: {previous.value} -> {new.value} ({reason})"
        logger.log(_LOG_LEVEL.get(new, logging.INFO), message)

        if self.event_store is not None:
            await self.event_store.record_safely(
                category=EventCategory.DEPLOYMENT.value,
                action="transition",
                message=message,
                severity=_STATE_SEVERITY.get(new, EventSeverity.INFO),
                resource_type="service",
                resource_id=attempt.service_name,
                details={
                    "previous": previous.value,
                    "new": new.value,
                    "reason": reason,
                    "candidate": attempt.candidate_image_ref,
                    "backup": attempt.backup_image_ref,
                },
            )

    @staticmethod
    def _result(
        attempt: DeploymentAttempt, outcome: DeploymentOutcome, message: str, service_running: bool | None
    ) -> DeploymentResult:
        return DeploymentResult(
            outcome=outcome,
            attempt=attempt,
            reason=_failure_reason(attempt),
            message=message,
            service_running=service_running,
        )


# Singleton instance
_deploy_controller: DeploymentController | None = None


def get_deploy_controller() -> DeploymentController:
    """Get the global deployment controller wired to the shared lock and audit log."""
    global _deploy_controller
    if _deploy_controller is None:
        _deploy_controller = DeploymentController(lock=get_operation_lock(), event_store=get_event_store())
    return _deploy_controller
