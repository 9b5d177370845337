"""
Unit tests for certificate, lifecycle and deployment models.
"""

from datetime import datetime, timedelta, timezone

import pytest

from certdeploy.config import is_loopback_domain, parse_port_bindings, parse_volume_bindings
from certdeploy.models.certificate import (
    Certificate,
    CertificateIssuer,
    CertificateStatus,
    LifecycleResult,
    LifecycleState,
    compute_status,
)
from certdeploy.models.deployment import (
    DeploymentAttempt,
    DeploymentOutcome,
    DeploymentState,
    InvalidTransitionError,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestRenewalWindow:
    """Status is derived from notAfter relative to the renewal window."""

    def test_31_days_out_is_valid(self):
        status = compute_status(NOW + timedelta(days=31), CertificateIssuer.LETSENCRYPT_PRODUCTION, now=NOW)
        assert status == CertificateStatus.VALID

    def test_29_days_out_is_expiring_soon(self):
        status = compute_status(NOW + timedelta(days=29), CertificateIssuer.LETSENCRYPT_PRODUCTION, now=NOW)
        assert status == CertificateStatus.EXPIRING_SOON

    def test_exactly_at_window_boundary_is_expiring_soon(self):
        status = compute_status(NOW + timedelta(days=30), CertificateIssuer.LETSENCRYPT_PRODUCTION, now=NOW)
        assert status == CertificateStatus.EXPIRING_SOON

    def test_past_not_after_is_expired(self):
        status = compute_status(NOW - timedelta(seconds=1), CertificateIssuer.LETSENCRYPT_PRODUCTION, now=NOW)
        assert status == CertificateStatus.EXPIRED

    def test_self_signed_in_date(self):
        status = compute_status(NOW + timedelta(days=365), CertificateIssuer.SELF_SIGNED, now=NOW)
        assert status == CertificateStatus.SELF_SIGNED

    def test_expired_self_signed_is_expired(self):
        status = compute_status(NOW - timedelta(days=1), CertificateIssuer.SELF_SIGNED, now=NOW)
        assert status == CertificateStatus.EXPIRED

    def test_custom_window(self):
        status = compute_status(
            NOW + timedelta(days=10),
            CertificateIssuer.LETSENCRYPT_STAGING,
            now=NOW,
            renewal_window=timedelta(days=7),
        )
        assert status == CertificateStatus.VALID

    def test_naive_now_treated_as_utc(self):
        status = compute_status(NOW + timedelta(days=31), CertificateIssuer.LETSENCRYPT_PRODUCTION, now=NOW.replace(tzinfo=None))
        assert status == CertificateStatus.VALID


class TestCertificateModel:
    """Test Certificate properties."""

    def test_days_until_expiry(self):
        cert = Certificate(
            domain="example.com",
            status=CertificateStatus.VALID,
            not_after=datetime.now(timezone.utc) + timedelta(days=45, hours=1),
        )
        assert cert.days_until_expiry == 45
        assert not cert.is_expired
        assert not cert.is_expiring_soon
        assert cert.is_usable

    def test_expiring_soon_property(self):
        cert = Certificate(
            domain="example.com",
            status=CertificateStatus.EXPIRING_SOON,
            not_after=datetime.now(timezone.utc) + timedelta(days=5),
        )
        assert cert.is_expiring_soon

    def test_absent_is_not_usable(self):
        assert not Certificate(domain="example.com").is_usable


class TestLifecycleResult:
    """Test lifecycle result classification."""

    @pytest.mark.parametrize(
        "state,succeeded,changed",
        [
            (LifecycleState.REUSABLE, True, False),
            (LifecycleState.ISSUED, True, True),
            (LifecycleState.FALLBACK_SELF_SIGNED, True, True),
            (LifecycleState.FAILED, False, False),
        ],
    )
    def test_terminal_states(self, state, succeeded, changed):
        result = LifecycleResult(domain="example.com", state=state)
        assert result.succeeded is succeeded
        assert result.changed is changed


class TestDeploymentAttempt:
    """Test the deployment state machine."""

    def test_happy_path(self):
        attempt = DeploymentAttempt(service_name="blog", candidate_image_ref="img:v2")
        for state in (
            DeploymentState.BACKUP_TAKEN,
            DeploymentState.OLD_STOPPED,
            DeploymentState.NEW_STARTED,
            DeploymentState.HEALTH_CHECKING,
            DeploymentState.HEALTHY,
        ):
            attempt.advance(state, "step")

        assert attempt.state == DeploymentState.HEALTHY
        assert attempt.is_terminal
        assert len(attempt.history) == 5
        assert attempt.history[0].previous == DeploymentState.INITIATED

    def test_rejects_skipping_health_check(self):
        attempt = DeploymentAttempt(service_name="blog", candidate_image_ref="img:v2")
        attempt.advance(DeploymentState.BACKUP_TAKEN, "step")
        attempt.advance(DeploymentState.OLD_STOPPED, "step")
        attempt.advance(DeploymentState.NEW_STARTED, "step")

        with pytest.raises(InvalidTransitionError):
            attempt.advance(DeploymentState.HEALTHY, "skip")

    def test_terminal_state_has_no_exits(self):
        attempt = DeploymentAttempt(service_name="blog", candidate_image_ref="img:v2")
        attempt.advance(DeploymentState.FAILED, "cancelled")
        attempt.advance(DeploymentState.ROLLED_BACK, "backup healthy")

        with pytest.raises(InvalidTransitionError):
            attempt.advance(DeploymentState.HEALTHY, "again")

    @pytest.mark.parametrize(
        "outcome,code",
        [
            (DeploymentOutcome.HEALTHY, 0),
            (DeploymentOutcome.FAILED, 1),
            (DeploymentOutcome.ROLLED_BACK, 2),
            (DeploymentOutcome.ROLLBACK_FAILED, 3),
        ],
    )
    def test_exit_codes(self, outcome, code):
        assert outcome.exit_code == code


class TestConfigHelpers:
    """Test settings helper functions."""

    @pytest.mark.parametrize(
        "domain,expected",
        [
            ("localhost", True),
            ("LOCALHOST.", True),
            ("dev.localhost", True),
            ("127.0.0.1", True),
            ("::1", True),
            ("example.com", False),
            ("10.0.0.1", False),
        ],
    )
    def test_is_loopback_domain(self, domain, expected):
        assert is_loopback_domain(domain) is expected

    def test_parse_port_bindings(self):
        assert parse_port_bindings("80:80, 8443:443") == {"80/tcp": 80, "443/tcp": 8443}

    def test_parse_volume_bindings(self):
        volumes = parse_volume_bindings("/etc/letsencrypt:/etc/letsencrypt:ro,/data:/srv")
        assert volumes == {
            "/etc/letsencrypt": {"bind": "/etc/letsencrypt", "mode": "ro"},
            "/data": {"bind": "/srv", "mode": "rw"},
        }

    def test_parse_volume_bindings_rejects_bare_path(self):
        with pytest.raises(ValueError):
            parse_volume_bindings("/data")
