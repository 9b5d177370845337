"""
Certificate acquisition.

Obtains CA-signed certificates over ACME HTTP-01 using a temporary
challenge listener, and generates self-signed certificates for loopback
domains or as a fallback when the CA cannot be used.
"""

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certdeploy.config import settings
from certdeploy.core.acme_service import ACMEError, ACMENetworkError, ACMEService
from certdeploy.core.cert_store import CertificateStore, get_cert_store
from certdeploy.core.challenge_server import ChallengeServer, is_port_free
from certdeploy.core.docker_service import DockerServiceError
from certdeploy.models.certificate import (
    AcquisitionFailure,
    Certificate,
    CertificateIssuer,
    FailureReason,
)

logger = logging.getLogger(__name__)

FAILURE_SUGGESTIONS = {
    FailureReason.DNS_UNRESOLVED: "Point the domain's A/AAAA record at this host",
    FailureReason.CHALLENGE_FAILED: "Ensure port 80 is reachable from the internet and not held by another process",
    FailureReason.RATE_LIMITED: "Wait for the Let's Encrypt rate limit to reset or use --staging",
    FailureReason.NETWORK_ERROR: "Check outbound connectivity to the ACME server",
}


class CertificateAcquirer:
    """
    Issue certificates from an ACME CA or self-sign them.

    The optional proxy collaborator is any object with async ``stop()``
    (returning True if it was running) and ``start()`` methods; it is
    stopped while the challenge listener needs its port.
    """

    def __init__(
        self,
        store: CertificateStore | None = None,
        proxy=None,
        acme_factory: Callable[[str], ACMEService] | None = None,
        webroot: str | None = None,
        challenge_host: str | None = None,
        challenge_port: int | None = None,
        stop_proxy_for_challenge: bool | None = None,
        self_signed_days: int | None = None,
    ):
        self.store = store or get_cert_store()
        self.proxy = proxy
        self.webroot = webroot or settings.acme_webroot
        self.acme_factory = acme_factory or (lambda url: ACMEService(directory_url=url, webroot=self.webroot))
        self.challenge_host = challenge_host or settings.acme_challenge_host
        self.challenge_port = challenge_port if challenge_port is not None else settings.acme_challenge_port
        self.stop_proxy_for_challenge = (
            stop_proxy_for_challenge
            if stop_proxy_for_challenge is not None
            else settings.acme_stop_proxy_for_challenge
        )
        self.self_signed_days = self_signed_days or settings.self_signed_validity_days

    async def issue_or_renew(
        self, domain: str, email: str | None, use_staging: bool = False
    ) -> Certificate | AcquisitionFailure:
        """
        Obtain a CA-signed certificate for a domain and store it.

        Args:
            domain: Publicly resolvable domain
            email: ACME account contact
            use_staging: Use the staging directory (untrusted, no rate limits)

        Returns:
            The stored Certificate, or an AcquisitionFailure describing why
            issuance was not possible. The listener is stopped and challenge
            files removed on every path.
        """
        if not await self._resolves(domain):
            return self._failure(domain, FailureReason.DNS_UNRESOLVED, f"{domain} does not resolve")

        directory_url = settings.acme_staging_url if use_staging else settings.acme_directory_url
        issuer = CertificateIssuer.LETSENCRYPT_STAGING if use_staging else CertificateIssuer.LETSENCRYPT_PRODUCTION
        acme = self.acme_factory(directory_url)
        listener = ChallengeServer(self.webroot, host=self.challenge_host, port=self.challenge_port)
        proxy_stopped = False

        logger.info(f"Requesting certificate for {domain} from {directory_url}")
        try:
            if not is_port_free(self.challenge_host, self.challenge_port):
                if self.stop_proxy_for_challenge and self.proxy is not None:
                    logger.info(f"Port {self.challenge_port} busy, stopping reverse proxy for the challenge")
                    try:
                        proxy_stopped = await self.proxy.stop()
                    except DockerServiceError as e:
                        # State unknown after a failed stop; start it again afterwards
                        logger.warning(f"Could not stop reverse proxy for the challenge: {e.message}")
                        proxy_stopped = True
                if not is_port_free(self.challenge_host, self.challenge_port):
                    return self._failure(
                        domain,
                        FailureReason.CHALLENGE_FAILED,
                        f"Challenge port {self.challenge_port} is in use",
                    )

            try:
                listener.start()
            except OSError as e:
                return self._failure(
                    domain, FailureReason.CHALLENGE_FAILED, f"Cannot bind challenge listener: {e}"
                )

            fullchain_pem, privkey_pem, chain_pem = await acme.obtain_certificate([domain], email)
        except (ACMEError, OSError) as e:
            acme.reset()
            return self.classify_failure(domain, e)
        finally:
            listener.stop()
            if proxy_stopped:
                try:
                    await self.proxy.start()
                except Exception as e:
                    logger.error(f"Failed to restart reverse proxy after challenge: {e}")

        return await self.store.put(domain, fullchain_pem, privkey_pem, chain_pem or None, issuer=issuer)

    async def self_sign(self, domain: str) -> Certificate:
        """
        Generate and store a self-signed certificate. Never touches the network.

        Raises:
            StoreError if the material cannot be written
        """
        fullchain_pem, privkey_pem = await asyncio.to_thread(
            generate_self_signed, domain, self.self_signed_days
        )
        cert = await self.store.put(
            domain, fullchain_pem, privkey_pem, fullchain_pem, issuer=CertificateIssuer.SELF_SIGNED
        )
        logger.info(f"Generated self-signed certificate for {domain}, valid until {cert.not_after:%Y-%m-%d}")
        return cert

    def classify_failure(self, domain: str, exc: Exception) -> AcquisitionFailure:
        """Map an issuance error onto a FailureReason."""
        code = getattr(exc, "code", None)
        if code == "rateLimited":
            reason = FailureReason.RATE_LIMITED
        elif code == "dns":
            reason = FailureReason.DNS_UNRESOLVED
        elif isinstance(exc, (ACMENetworkError, OSError, TimeoutError)):
            reason = FailureReason.NETWORK_ERROR
        else:
            reason = FailureReason.CHALLENGE_FAILED
        return self._failure(domain, reason, getattr(exc, "message", None) or str(exc))

    @staticmethod
    async def _resolves(domain: str) -> bool:
        try:
            await asyncio.to_thread(socket.getaddrinfo, domain, None)
        except (socket.gaierror, UnicodeError) as e:
            logger.warning(f"DNS lookup for {domain} failed: {e}")
            return False
        return True

    @staticmethod
    def _failure(domain: str, reason: FailureReason, message: str) -> AcquisitionFailure:
        logger.error(f"Certificate acquisition for {domain} failed ({reason.value}): {message}")
        return AcquisitionFailure(
            domain=domain, reason=reason, message=message, suggestion=FAILURE_SUGGESTIONS[reason]
        )


def generate_self_signed(domain: str, validity_days: int = 365) -> tuple[bytes, bytes]:
    """
    Create an RSA-2048 key and a self-signed certificate for a domain.

    Returns:
        Tuple of (certificate_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])

    try:
        san: list[x509.GeneralName] = [x509.IPAddress(ipaddress.ip_address(domain))]
    except ValueError:
        san = [x509.DNSName(domain)]
        if domain == "localhost":
            san.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))

    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName(san), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(private_key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem
