"""
Certificate renewal scheduler.

Periodically runs the certificate lifecycle for the configured domain
and raises expiry warnings, using APScheduler.
"""

import logging

import aiosqlite
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from certdeploy.config import settings
from certdeploy.core.cert_manager import CertificateLifecycleManager, get_lifecycle_manager
from certdeploy.core.cert_store import StoreError
from certdeploy.core.event_store import EventStore, get_event_store
from certdeploy.core.locking import OperationLock, get_operation_lock
from certdeploy.models.certificate import LifecycleResult
from certdeploy.models.event import EventCategory, EventSeverity

logger = logging.getLogger(__name__)


class RenewalScheduler:
    """
    Background certificate renewal scheduler.

    Each tick takes the operation lock without waiting; when a deployment
    or another renewal holds it, the tick is skipped and the next one
    retries.
    """

    def __init__(
        self,
        domain: str | None = None,
        manager: CertificateLifecycleManager | None = None,
        lock: OperationLock | None = None,
        event_store: EventStore | None = None,
        interval_hours: float | None = None,
    ):
        self.domain = domain or settings.domain
        self.manager = manager or get_lifecycle_manager()
        self.lock = lock or get_operation_lock()
        self.event_store = event_store or get_event_store()
        self.interval_hours = interval_hours or settings.renewal_interval_hours
        self.scheduler = AsyncIOScheduler()
        self._started = False

    def start(self) -> None:
        """Start the renewal scheduler. Must be called with a running event loop."""
        if self._started:
            logger.warning("Renewal scheduler already started")
            return

        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(hours=self.interval_hours),
            id="cert_renewal",
            name="Certificate Renewal",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # Prune the audit log daily at 4 AM
        self.scheduler.add_job(
            self._enforce_retention,
            CronTrigger(hour=4, minute=0),
            id="event_retention",
            name="Audit Event Retention",
            replace_existing=True,
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Renewal scheduler started for {self.domain}, every {self.interval_hours}h")

    def stop(self) -> None:
        """Stop the renewal scheduler."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Renewal scheduler stopped")

    async def run_once(self, force_renewal: bool = False) -> LifecycleResult | None:
        """
        Run one renewal tick.

        Returns:
            The lifecycle result, or None if the tick was deferred or errored
        """
        async with self.lock.try_hold(f"renewal:{self.domain}") as held:
            if not held:
                await self.event_store.record_safely(
                    category=EventCategory.SSL.value,
                    action="renewal_deferred",
                    message=f"Renewal for {self.domain} deferred: operation lock busy",
                    resource_type="certificate",
                    resource_id=self.domain,
                )
                return None

            try:
                result = await self.manager.run(
                    self.domain, force_renewal=force_renewal, acquire_lock=False
                )
            except StoreError as e:
                logger.error(f"Renewal for {self.domain} aborted: {e.message}")
                return None
            except Exception as e:
                logger.exception(f"Unexpected error renewing {self.domain}: {e}")
                await self.event_store.record_safely(
                    category=EventCategory.SSL.value,
                    action="renewal_error",
                    message=f"Renewal for {self.domain} raised: {e}",
                    severity=EventSeverity.ERROR,
                    resource_type="certificate",
                    resource_id=self.domain,
                )
                return None

        logger.info(f"Renewal tick for {self.domain} finished in state {result.state.value}")
        await self.check_expiry()
        return result

    async def check_expiry(self) -> EventSeverity | None:
        """
        Record a warning event if the live certificate is near or past expiry.

        Returns:
            Severity of the event recorded, if any
        """
        try:
            cert = await self.manager.get_info(self.domain)
        except StoreError as e:
            logger.error(f"Expiry check for {self.domain} failed: {e.message}")
            return None

        if cert is None or cert.not_after is None:
            return None

        days_left = cert.days_until_expiry
        details = {"days_until_expiry": days_left, "expiry_date": cert.not_after.isoformat()}

        if cert.is_expired:
            severity, action = EventSeverity.CRITICAL, "certificate_expired"
            message = f"Certificate for {self.domain} has EXPIRED"
        elif days_left <= 7:
            severity, action = EventSeverity.CRITICAL, "expiry_critical"
            message = f"Certificate for {self.domain} expires in {days_left} days (CRITICAL)"
        elif days_left <= settings.cert_expiry_warning_days:
            severity, action = EventSeverity.WARNING, "expiry_warning"
            message = f"Certificate for {self.domain} expires in {days_left} days"
        else:
            return None

        logger.warning(message)
        await self.event_store.record_safely(
            category=EventCategory.SSL.value,
            action=action,
            message=message,
            severity=severity,
            resource_type="certificate",
            resource_id=self.domain,
            details=details,
        )
        return severity

    async def _enforce_retention(self) -> None:
        try:
            await self.event_store.enforce_retention()
        except (aiosqlite.Error, OSError) as e:
            logger.warning(f"Audit event retention failed: {e}")

    def get_next_run_time(self) -> str | None:
        """Get the next scheduled renewal time as ISO string."""
        job = self.scheduler.get_job("cert_renewal")
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()
