"""
Unit tests for the certificate lifecycle manager.
"""

from unittest.mock import AsyncMock

import pytest

from certdeploy.config import settings
from certdeploy.core.acme_service import ACMEError, ACMENetworkError
from certdeploy.core.cert_manager import CertificateLifecycleManager
from certdeploy.core.cert_store import StoreError
from certdeploy.core.locking import LockTimeoutError, OperationLock
from certdeploy.models.certificate import (
    CertificateIssuer,
    CertificateStatus,
    FailureReason,
    LifecycleState,
)
from certdeploy.models.event import EventSeverity


@pytest.fixture
def manager(cert_store, acquirer, operation_lock, mock_proxy, event_store):
    return CertificateLifecycleManager(
        store=cert_store,
        acquirer=acquirer,
        lock=operation_lock,
        proxy=mock_proxy,
        event_store=event_store,
    )


def states(result):
    return [t.new for t in result.transitions]


class TestIssuance:
    """Test runs that obtain a CA-signed certificate."""

    @pytest.mark.asyncio
    async def test_absent_certificate_is_issued(self, manager, fake_acme, mock_proxy):
        result = await manager.run("example.com", fallback_self_signed=False)

        assert result.state == LifecycleState.ISSUED
        assert result.succeeded
        assert result.certificate.status == CertificateStatus.VALID
        assert result.certificate.issuer == CertificateIssuer.LETSENCRYPT_PRODUCTION
        assert states(result) == [
            LifecycleState.INSPECTING,
            LifecycleState.NEEDS_ACQUISITION,
            LifecycleState.ACQUIRING,
            LifecycleState.ISSUED,
        ]
        assert result.transitions[1].reason == "absent"
        mock_proxy.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_run_reuses_certificate(self, manager, fake_acme, mock_proxy):
        await manager.run("example.com")
        mock_proxy.reload.reset_mock()

        result = await manager.run("example.com")

        assert result.state == LifecycleState.REUSABLE
        assert result.reason == "valid"
        assert len(fake_acme.calls) == 1
        mock_proxy.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiring_certificate_is_renewed(self, manager, cert_store, cert_factory, fake_acme):
        await cert_store.put(
            "example.com", *cert_factory.build("example.com", days=10), issuer=CertificateIssuer.LETSENCRYPT_PRODUCTION
        )

        result = await manager.run("example.com")

        assert result.state == LifecycleState.ISSUED
        assert result.transitions[1].reason == "expiring_soon"
        assert fake_acme.calls == [["example.com"]]

    @pytest.mark.asyncio
    async def test_force_renewal(self, manager, fake_acme):
        await manager.run("example.com")

        result = await manager.run("example.com", force_renewal=True)

        assert result.state == LifecycleState.ISSUED
        assert result.transitions[1].reason == "force_renewal"
        assert len(fake_acme.calls) == 2

    @pytest.mark.asyncio
    async def test_staging_flag(self, manager, directory_urls):
        result = await manager.run("example.com", use_staging=True)

        assert result.certificate.issuer == CertificateIssuer.LETSENCRYPT_STAGING
        assert directory_urls == [settings.acme_staging_url]
        assert result.transitions[2].reason == "staging"


class TestLoopback:
    """Test domains that can never pass an HTTP-01 challenge."""

    @pytest.mark.asyncio
    async def test_localhost_self_signed_without_network(self, manager, fake_acme, acquirer):
        result = await manager.run("localhost")

        assert result.state == LifecycleState.FALLBACK_SELF_SIGNED
        assert result.reason == "loopback_domain"
        assert result.succeeded
        assert result.certificate.status == CertificateStatus.SELF_SIGNED
        assert fake_acme.calls == []
        acquirer._resolves.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_localhost_second_run_is_reusable(self, manager, mock_proxy):
        await manager.run("localhost")
        mock_proxy.reload.reset_mock()

        result = await manager.run("localhost")

        assert result.state == LifecycleState.REUSABLE
        assert result.reason == "self_signed"
        mock_proxy.reload.assert_not_awaited()


class TestFailures:
    """Test acquisition failures with and without fallback."""

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, manager, fake_acme):
        fake_acme.error = ACMENetworkError("connection refused")

        result = await manager.run("example.com", fallback_self_signed=True)

        assert result.state == LifecycleState.FALLBACK_SELF_SIGNED
        assert result.reason == FailureReason.NETWORK_ERROR.value
        assert result.certificate.status == CertificateStatus.SELF_SIGNED

    @pytest.mark.asyncio
    async def test_network_error_without_fallback_fails(self, manager, fake_acme, cert_store, mock_proxy):
        fake_acme.error = ACMENetworkError("connection refused")

        result = await manager.run("example.com", fallback_self_signed=False)

        assert result.state == LifecycleState.FAILED
        assert not result.succeeded
        assert result.reason == "network_error"
        assert "connectivity" in result.message
        assert await cert_store.get("example.com") is None
        mock_proxy.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_reported(self, manager, fake_acme):
        fake_acme.error = ACMEError("too many certificates", code="rateLimited")

        result = await manager.run("example.com", fallback_self_signed=False)

        assert result.reason == "rate_limited"

    @pytest.mark.asyncio
    async def test_expiring_ca_certificate_falls_back(self, manager, cert_store, cert_factory, fake_acme, mock_proxy):
        await cert_store.put(
            "example.com", *cert_factory.build("example.com", days=20), issuer=CertificateIssuer.LETSENCRYPT_PRODUCTION
        )
        fake_acme.error = ACMENetworkError("connection refused")

        result = await manager.run("example.com", fallback_self_signed=True)

        assert result.state == LifecycleState.FALLBACK_SELF_SIGNED
        assert result.succeeded
        assert result.reason == "network_error"
        live = await cert_store.get("example.com")
        assert live.issuer == CertificateIssuer.SELF_SIGNED
        mock_proxy.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expiring_ca_certificate_kept_without_fallback(self, manager, cert_store, cert_factory, fake_acme):
        current = await cert_store.put(
            "example.com", *cert_factory.build("example.com", days=20), issuer=CertificateIssuer.LETSENCRYPT_PRODUCTION
        )
        fake_acme.error = ACMENetworkError("connection refused")

        result = await manager.run("example.com", fallback_self_signed=False)

        assert result.state == LifecycleState.FAILED
        assert "keeping current certificate" in result.message
        live = await cert_store.get("example.com")
        assert live.serial_number == current.serial_number

    @pytest.mark.asyncio
    async def test_expired_certificate_replaced_by_fallback(self, manager, cert_store, cert_factory, fake_acme):
        await cert_store.put(
            "example.com", *cert_factory.build("example.com", days=-1), issuer=CertificateIssuer.LETSENCRYPT_PRODUCTION
        )
        fake_acme.error = ACMENetworkError("connection refused")

        result = await manager.run("example.com", fallback_self_signed=True)

        assert result.transitions[1].reason == "expired"
        assert result.state == LifecycleState.FALLBACK_SELF_SIGNED

    @pytest.mark.asyncio
    async def test_store_error_propagates_and_is_audited(self, manager, cert_store, event_store, monkeypatch):
        monkeypatch.setattr(
            cert_store, "get", AsyncMock(side_effect=StoreError("Permission denied", domain="example.com"))
        )

        with pytest.raises(StoreError):
            await manager.run("example.com")

        events = await event_store.list_events(resource_id="example.com")
        store_errors = [e for e in events if e.action == "store_error"]
        assert len(store_errors) == 1
        assert store_errors[0].severity == EventSeverity.CRITICAL
        assert "inspecting" in store_errors[0].message

    @pytest.mark.asyncio
    async def test_proxy_reload_failure_does_not_fail_run(self, manager, mock_proxy, event_store):
        mock_proxy.reload.side_effect = RuntimeError("container not running")

        result = await manager.run("example.com")

        assert result.state == LifecycleState.ISSUED
        events = await event_store.list_events(category="system")
        assert [e.action for e in events] == ["proxy_reload_failed"]


class TestLockingAndAudit:
    """Test mutual exclusion and recorded transitions."""

    @pytest.mark.asyncio
    async def test_transitions_recorded(self, manager, event_store):
        await manager.run("example.com")

        events = await event_store.list_events(category="ssl", resource_id="example.com")

        assert len(events) == 4
        assert all(e.action == "transition" for e in events)
        assert {e.details["new"] for e in events} == {"inspecting", "needs_acquisition", "acquiring", "issued"}

    @pytest.mark.asyncio
    async def test_lock_held_during_run(self, manager, operation_lock, fake_acme):
        observed = []
        obtain = fake_acme.obtain_certificate

        async def observing(domains, email=None):
            observed.append(operation_lock.locked)
            return await obtain(domains, email)

        fake_acme.obtain_certificate = observing

        await manager.run("example.com")

        assert observed == [True]
        assert not operation_lock.locked

    @pytest.mark.asyncio
    async def test_busy_lock_raises(self, cert_store, acquirer, operation_lock, fake_acme):
        impatient = OperationLock(lock_file=str(operation_lock.lock_file), timeout=0.05, poll_interval=0.01)
        manager = CertificateLifecycleManager(store=cert_store, acquirer=acquirer, lock=impatient)

        async with operation_lock.hold("deploy:blog"):
            with pytest.raises(LockTimeoutError):
                await manager.run("example.com")

        assert fake_acme.calls == []

    @pytest.mark.asyncio
    async def test_caller_held_lock(self, manager, operation_lock):
        async with operation_lock.hold("renewal:example.com"):
            result = await manager.run("example.com", acquire_lock=False)

        assert result.state == LifecycleState.ISSUED
