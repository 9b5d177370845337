"""
Certificate models for TLS certificate lifecycle management.

Provides Pydantic models for stored certificate material, acquisition
failures, and the lifecycle state machine with its transition table.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field

# Certificates expiring within this window are renewed
DEFAULT_RENEWAL_WINDOW = timedelta(days=30)


class CertificateStatus(str, Enum):
    """Certificate status as observed in the store."""

    ABSENT = "absent"  # No usable material
    VALID = "valid"  # Trusted and outside the renewal window
    EXPIRING_SOON = "expiring_soon"  # Within the renewal window
    EXPIRED = "expired"  # Past notAfter
    SELF_SIGNED = "self_signed"  # Usable but untrusted


class CertificateIssuer(str, Enum):
    """Who issued the certificate."""

    LETSENCRYPT_PRODUCTION = "letsencrypt_production"
    LETSENCRYPT_STAGING = "letsencrypt_staging"
    SELF_SIGNED = "self_signed"
    NONE = "none"


def _as_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Certificate(BaseModel):
    """
    Certificate material for one domain.

    Built by the CertificateStore when reading the live material; status is
    computed at read time from notAfter and the issuer.
    """

    domain: str = Field(..., description="Domain the certificate belongs to")
    status: CertificateStatus = Field(default=CertificateStatus.ABSENT)
    issuer: CertificateIssuer = Field(default=CertificateIssuer.NONE)
    issuer_name: str | None = Field(None, description="Issuer distinguished name")

    not_before: datetime | None = Field(None, description="Certificate valid from")
    not_after: datetime | None = Field(None, description="Certificate expiry date")
    serial_number: str | None = Field(None)
    fingerprint_sha256: str | None = Field(None)
    alt_names: list[str] = Field(default_factory=list)

    fullchain_path: str | None = Field(None, description="Path to fullchain.pem")
    privkey_path: str | None = Field(None, description="Path to privkey.pem")
    chain_path: str | None = Field(None, description="Path to chain.pem")
    version: str | None = Field(None, description="Archive version holding the material")

    renewal_window_days: int = Field(default=DEFAULT_RENEWAL_WINDOW.days)

    @property
    def days_until_expiry(self) -> int | None:
        """Calculate days until certificate expires."""
        if self.not_after:
            return (_as_aware(self.not_after) - datetime.now(timezone.utc)).days
        return None

    @property
    def is_expired(self) -> bool:
        """Check if certificate is expired."""
        if self.not_after:
            return datetime.now(timezone.utc) >= _as_aware(self.not_after)
        return False

    @property
    def is_expiring_soon(self) -> bool:
        """Check if certificate expires within the renewal window."""
        if not self.not_after:
            return False
        return expires_within(self.not_after, timedelta(days=self.renewal_window_days))

    @property
    def is_usable(self) -> bool:
        """Whether the material can be served over TLS."""
        return self.status in (
            CertificateStatus.VALID,
            CertificateStatus.EXPIRING_SOON,
            CertificateStatus.SELF_SIGNED,
        )


def expires_within(not_after: datetime, window: timedelta, now: datetime | None = None) -> bool:
    """Check whether notAfter falls inside a window starting now."""
    now = _as_aware(now) if now else datetime.now(timezone.utc)
    return _as_aware(not_after) <= now + window


def compute_status(
    not_after: datetime,
    issuer: CertificateIssuer,
    now: datetime | None = None,
    renewal_window: timedelta = DEFAULT_RENEWAL_WINDOW,
) -> CertificateStatus:
    """
    Derive a certificate's status from its expiry and issuer.

    Expired wins over everything; self-signed material is reported as such
    while it is still in date; trusted material inside the renewal window is
    EXPIRING_SOON.
    """
    now = _as_aware(now) if now else datetime.now(timezone.utc)
    if now >= _as_aware(not_after):
        return CertificateStatus.EXPIRED
    if issuer == CertificateIssuer.SELF_SIGNED:
        return CertificateStatus.SELF_SIGNED
    if expires_within(not_after, renewal_window, now):
        return CertificateStatus.EXPIRING_SOON
    return CertificateStatus.VALID


class FailureReason(str, Enum):
    """Why an ACME acquisition attempt failed."""

    DNS_UNRESOLVED = "dns_unresolved"
    CHALLENGE_FAILED = "challenge_failed"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"


class AcquisitionFailure(BaseModel):
    """Tagged failure returned by the CertificateAcquirer."""

    domain: str
    reason: FailureReason
    message: str
    suggestion: str | None = None


# Lifecycle state machine


class LifecycleState(str, Enum):
    """States of one certificate lifecycle run."""

    INIT = "init"
    INSPECTING = "inspecting"
    REUSABLE = "reusable"
    NEEDS_ACQUISITION = "needs_acquisition"
    ACQUIRING = "acquiring"
    ISSUED = "issued"
    FALLBACK_SELF_SIGNED = "fallback_self_signed"
    FAILED = "failed"


LIFECYCLE_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.INIT: {LifecycleState.INSPECTING},
    LifecycleState.INSPECTING: {
        LifecycleState.REUSABLE,
        LifecycleState.NEEDS_ACQUISITION,
        LifecycleState.FAILED,
    },
    LifecycleState.NEEDS_ACQUISITION: {
        LifecycleState.ACQUIRING,
        LifecycleState.FALLBACK_SELF_SIGNED,
        LifecycleState.FAILED,
    },
    LifecycleState.ACQUIRING: {
        LifecycleState.ISSUED,
        LifecycleState.FALLBACK_SELF_SIGNED,
        LifecycleState.FAILED,
    },
    LifecycleState.REUSABLE: set(),
    LifecycleState.ISSUED: set(),
    LifecycleState.FALLBACK_SELF_SIGNED: set(),
    LifecycleState.FAILED: set(),
}

LIFECYCLE_SUCCESS_STATES = {
    LifecycleState.REUSABLE,
    LifecycleState.ISSUED,
    LifecycleState.FALLBACK_SELF_SIGNED,
}


class LifecycleTransition(BaseModel):
    """One recorded state change."""

    previous: LifecycleState
    new: LifecycleState
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LifecycleResult(BaseModel):
    """Outcome of CertificateLifecycleManager.run()."""

    domain: str
    state: LifecycleState
    certificate: Certificate | None = None
    reason: str | None = Field(None, description="Reason tag for the final state")
    message: str = ""
    transitions: list[LifecycleTransition] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in LIFECYCLE_SUCCESS_STATES

    @property
    def changed(self) -> bool:
        """Whether new material was written to the store."""
        return self.state in (LifecycleState.ISSUED, LifecycleState.FALLBACK_SELF_SIGNED)
