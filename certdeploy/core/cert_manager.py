"""
Certificate lifecycle management.

Decides per run whether the stored certificate can be reused, must be
acquired from the CA, or must be replaced by a self-signed one, and walks
an explicit state machine so every decision is logged and audited.
"""

import logging

from certdeploy.config import is_loopback_domain, settings
from certdeploy.core.cert_acquirer import CertificateAcquirer
from certdeploy.core.cert_store import CertificateStore, StoreError, get_cert_store
from certdeploy.core.docker_service import get_docker_proxy
from certdeploy.core.event_store import EventStore, get_event_store
from certdeploy.core.locking import OperationLock, get_operation_lock
from certdeploy.models.certificate import (
    LIFECYCLE_TRANSITIONS,
    AcquisitionFailure,
    Certificate,
    CertificateStatus,
    LifecycleResult,
    LifecycleState,
    LifecycleTransition,
)
from certdeploy.models.deployment import InvalidTransitionError
from certdeploy.models.event import EventCategory, EventSeverity

logger = logging.getLogger(__name__)

_SEVERITY = {
    LifecycleState.FALLBACK_SELF_SIGNED: EventSeverity.WARNING,
    LifecycleState.FAILED: EventSeverity.ERROR,
}


class CertificateLifecycleManager:
    """
    Ensure a usable certificate exists for a domain.

    The optional proxy collaborator must provide an async ``reload()``; it
    is signalled while the operation lock is still held whenever a run
    wrote new material.
    """

    def __init__(
        self,
        store: CertificateStore | None = None,
        acquirer: CertificateAcquirer | None = None,
        lock: OperationLock | None = None,
        proxy=None,
        event_store: EventStore | None = None,
    ):
        self.store = store or get_cert_store()
        self.acquirer = acquirer or CertificateAcquirer(store=self.store, proxy=proxy)
        self.lock = lock
        self.proxy = proxy
        self.event_store = event_store

    async def run(
        self,
        domain: str,
        email: str | None = None,
        force_renewal: bool = False,
        use_staging: bool | None = None,
        fallback_self_signed: bool | None = None,
        acquire_lock: bool = True,
    ) -> LifecycleResult:
        """
        Run the lifecycle state machine once for a domain.

        Args:
            domain: Domain to ensure a certificate for
            email: ACME contact (defaults to settings)
            force_renewal: Acquire even if the current certificate is valid
            use_staging: Use the CA's staging directory
            fallback_self_signed: Self-sign when acquisition fails
            acquire_lock: False when the caller already holds the operation lock

        Returns:
            LifecycleResult with the terminal state and its reason

        Raises:
            StoreError if the certificate directory cannot be read or written
            LockTimeoutError if the operation lock stays busy
        """
        email = email or settings.email
        use_staging = settings.staging if use_staging is None else use_staging
        fallback = settings.fallback_self_signed if fallback_self_signed is None else fallback_self_signed

        if self.lock is None or not acquire_lock:
            return await self._run_and_reload(domain, email, force_renewal, use_staging, fallback)

        async with self.lock.hold(f"cert:{domain}"):
            return await self._run_and_reload(domain, email, force_renewal, use_staging, fallback)

    async def get_info(self, domain: str) -> Certificate | None:
        """Read the current certificate without changing anything."""
        return await self.store.get(domain)

    async def _run_and_reload(
        self, domain: str, email: str, force_renewal: bool, use_staging: bool, fallback: bool
    ) -> LifecycleResult:
        result = LifecycleResult(domain=domain, state=LifecycleState.INIT)
        try:
            await self._run(result, email, force_renewal, use_staging, fallback)
        except StoreError as e:
            logger.error(f"{domain}: certificate store error in state {result.state.value}: {e.message}")
            await self._record(
                result,
                action="store_error",
                message=f"Certificate store error for {domain} in state {result.state.value}: {e.message}",
                severity=EventSeverity.CRITICAL,
            )
            raise

        if result.changed:
            await self._reload_proxy(domain)
        return result

    async def _run(
        self, result: LifecycleResult, email: str, force_renewal: bool, use_staging: bool, fallback: bool
    ) -> None:
        domain = result.domain
        await self._advance(result, LifecycleState.INSPECTING, "run started")

        current = await self.store.get(domain)
        result.certificate = current
        reason = self._needs_acquisition_reason(domain, current, force_renewal)
        if reason is None:
            await self._advance(result, LifecycleState.REUSABLE, current.status.value)
            result.message = f"Certificate for {domain} valid until {current.not_after:%Y-%m-%d}"
            return

        await self._advance(result, LifecycleState.NEEDS_ACQUISITION, reason)

        # Challenge validation can never reach a loopback name
        if is_loopback_domain(domain):
            result.certificate = await self.acquirer.self_sign(domain)
            await self._advance(result, LifecycleState.FALLBACK_SELF_SIGNED, "loopback_domain")
            result.message = f"Self-signed certificate generated for loopback domain {domain}"
            return

        await self._advance(result, LifecycleState.ACQUIRING, "staging" if use_staging else "production")
        outcome = await self.acquirer.issue_or_renew(domain, email, use_staging)

        if isinstance(outcome, Certificate):
            result.certificate = outcome
            await self._advance(result, LifecycleState.ISSUED, outcome.issuer.value)
            result.message = f"Certificate for {domain} issued, valid until {outcome.not_after:%Y-%m-%d}"
            return

        await self._handle_failure(result, current, outcome, fallback)

    async def _handle_failure(
        self,
        result: LifecycleResult,
        current: Certificate | None,
        failure: AcquisitionFailure,
        fallback: bool,
    ) -> None:
        domain = result.domain
        reason = failure.reason.value

        if fallback:
            logger.warning(f"{domain}: acquisition failed ({reason}), falling back to self-signed certificate")
            result.certificate = await self.acquirer.self_sign(domain)
            await self._advance(result, LifecycleState.FALLBACK_SELF_SIGNED, reason)
            result.message = f"Serving self-signed certificate for {domain}: {failure.message}"
            return

        await self._advance(result, LifecycleState.FAILED, reason)
        if current is not None and current.is_usable:
            result.message = (
                f"Renewal for {domain} failed: {failure.message}; "
                f"keeping current certificate valid until {current.not_after:%Y-%m-%d}"
            )
        else:
            result.message = f"No usable certificate for {domain}: {failure.message}"
        if failure.suggestion:
            result.message += f" ({failure.suggestion})"

    @staticmethod
    def _needs_acquisition_reason(domain: str, current: Certificate | None, force_renewal: bool) -> str | None:
        """Return why a new certificate is needed, or None to reuse the current one."""
        if current is None:
            return CertificateStatus.ABSENT.value
        if force_renewal:
            return "force_renewal"
        if current.status == CertificateStatus.VALID:
            return None
        if (
            current.status == CertificateStatus.SELF_SIGNED
            and is_loopback_domain(domain)
            and not current.is_expiring_soon
        ):
            return None
        return current.status.value

    async def _advance(self, result: LifecycleResult, new: LifecycleState, reason: str) -> None:
        previous = result.state
        if new not in LIFECYCLE_TRANSITIONS[previous]:
            raise InvalidTransitionError(previous, new)

        result.transitions.append(LifecycleTransition(previous=previous, new=new, reason=reason))
        result.state = new
        result.reason = reason

        level = logging.ERROR if new == LifecycleState.FAILED else (
            logging.WARNING if new == LifecycleState.FALLBACK_SELF_SIGNED else logging.INFO
        )
        logger.log(level, f"{result.domain}: {previous.value} -> {new.value} ({reason})")

        await self._record(
            result,
            action="transition",
            message=f"{result.domain}: {previous.value} -> {new.value} ({reason})",
            severity=_SEVERITY.get(new, EventSeverity.INFO),
            details={"previous": previous.value, "new": new.value, "reason": reason},
        )

    async def _reload_proxy(self, domain: str) -> None:
        if self.proxy is None:
            return
        try:
            await self.proxy.reload()
            logger.info(f"Reverse proxy reloaded with new certificate for {domain}")
        except Exception as e:
            logger.warning(f"Reverse proxy reload after certificate change for {domain} failed: {e}")
            await self._record_system(
                "proxy_reload_failed", f"Proxy reload failed after certificate change for {domain}: {e}"
            )

    async def _record(
        self,
        result: LifecycleResult,
        action: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        details: dict | None = None,
    ) -> None:
        if self.event_store is None:
            return
        await self.event_store.record_safely(
            category=EventCategory.SSL.value,
            action=action,
            message=message,
            severity=severity,
            resource_type="certificate",
            resource_id=result.domain,
            details=details,
        )

    async def _record_system(self, action: str, message: str) -> None:
        if self.event_store is None:
            return
        await self.event_store.record_safely(
            category=EventCategory.SYSTEM.value,
            action=action,
            message=message,
            severity=EventSeverity.WARNING,
        )


# Singleton instance
_lifecycle_manager: CertificateLifecycleManager | None = None


def get_lifecycle_manager() -> CertificateLifecycleManager:
    """Get the global lifecycle manager wired to the shared lock, proxy and audit log."""
    global _lifecycle_manager
    if _lifecycle_manager is None:
        proxy = get_docker_proxy()
        _lifecycle_manager = CertificateLifecycleManager(
            lock=get_operation_lock(),
            proxy=proxy,
            event_store=get_event_store(),
        )
    return _lifecycle_manager
