"""
ACME service for Let's Encrypt certificate management.

Provides low-level ACME protocol operations using the acme library
for obtaining SSL certificates from Let's Encrypt via HTTP-01.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path

import josepy as jose
import requests
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certdeploy.config import settings
from certdeploy.core.cert_helpers import split_fullchain

logger = logging.getLogger(__name__)

USER_AGENT = "certdeploy/0.1"


class ACMEError(Exception):
    """Base exception for ACME operations."""

    def __init__(self, message: str, suggestion: str | None = None, code: str | None = None):
        self.message = message
        self.suggestion = suggestion
        # ACME problem type without the urn prefix, e.g. "rateLimited"
        self.code = code
        super().__init__(message)


class ACMEChallengeError(ACMEError):
    """ACME challenge failed."""

    pass


class ACMEAuthorizationError(ACMEError):
    """ACME authorization failed."""

    pass


class ACMEOrderError(ACMEError):
    """ACME order failed."""

    pass


class ACMENetworkError(ACMEError):
    """The ACME server could not be reached."""

    pass


def _problem_code(exc: Exception) -> str | None:
    """Extract the ACME problem code from an acme library exception."""
    if isinstance(exc, messages.Error):
        return exc.code
    if isinstance(exc, acme_errors.ValidationError):
        for authzr in exc.failed_authzrs:
            for challb in authzr.body.challenges:
                if challb.error is not None:
                    return challb.error.code
    if isinstance(exc, acme_errors.IssuanceError):
        return exc.error.code
    return None


def _wrap(exc: Exception, error_cls: type[ACMEError], message: str, suggestion: str) -> ACMEError:
    if isinstance(exc, ACMEError):
        return exc
    if isinstance(exc, (requests.exceptions.RequestException, OSError)):
        return ACMENetworkError(
            f"{message}: {exc}", suggestion="Check outbound connectivity to the ACME directory"
        )
    return error_cls(f"{message}: {exc}", suggestion=suggestion, code=_problem_code(exc))


class ACMEService:
    """
    Low-level ACME protocol operations.

    Handles account registration, certificate orders, and
    HTTP-01 challenge files for Let's Encrypt.
    """

    def __init__(
        self,
        directory_url: str | None = None,
        webroot: str | None = None,
        account_key_path: str | None = None,
        timeout: int | None = None,
    ):
        self.directory_url = directory_url or settings.acme_directory_url
        self._challenge_dir = Path(webroot or settings.acme_webroot) / ".well-known" / "acme-challenge"
        if account_key_path is None:
            env = "staging" if self.directory_url == settings.acme_staging_url else "production"
            account_key_path = str(Path(settings.cert_base_dir) / "accounts" / env / "account_key.pem")
        self.account_key_path = Path(account_key_path)
        self.timeout = timeout if timeout is not None else settings.acme_timeout
        self._client: ClientV2 | None = None
        self._account_key: jose.JWK | None = None

    @property
    def challenge_dir(self) -> Path:
        return self._challenge_dir

    def reset(self):
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._client = None
        self._account_key = None

    async def _get_or_create_account_key(self) -> jose.JWK:
        """Load the persisted account key or generate and persist a new one."""
        if self._account_key:
            return self._account_key

        if self.account_key_path.exists():
            logger.debug(f"Loading ACME account key from {self.account_key_path}")
            private_key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
        else:
            logger.info("Generating new ACME account key")
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.account_key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key_pem)

        self._account_key = jose.JWKRSA(key=private_key)
        return self._account_key

    async def _get_client(self) -> ClientV2:
        """Get or create ACME client."""
        if self._client:
            return self._client

        account_key = await self._get_or_create_account_key()

        # Create client in thread pool (blocking network call)
        def create_client():
            net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            return ClientV2(directory, net=net)

        try:
            self._client = await asyncio.to_thread(create_client)
        except Exception as e:
            raise _wrap(e, ACMEError, "Failed to load ACME directory", "Check ACME_DIRECTORY_URL")
        return self._client

    async def register_account(self, email: str | None = None) -> str | None:
        """
        Register a new ACME account or retrieve the existing one.

        Args:
            email: Contact email for expiry notices

        Returns:
            Account URL
        """
        acme_client = await self._get_client()

        def do_registration():
            regr = messages.NewRegistration.from_data(email=email or None, terms_of_service_agreed=True)
            try:
                account_resource = acme_client.new_account(regr)
                logger.info("Created new ACME account")
                return account_resource
            except acme_errors.ConflictError as conflict:
                # Account already exists for this key
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing_regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return acme_client.query_registration(existing_regr)

        try:
            account_resource = await asyncio.to_thread(do_registration)
        except Exception as e:
            raise _wrap(e, ACMEError, "Failed to register ACME account", "Check the registration email address")
        return getattr(account_resource, "uri", None)

    @staticmethod
    def _make_key_and_csr(domains: list[str]) -> tuple[bytes, bytes]:
        """
        Generate a certificate key and a CSR signed by it.

        Returns:
            Tuple of (private_key_pem, csr_pem)
        """
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        builder = x509.CertificateSigningRequestBuilder()
        builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        san_list = [x509.DNSName(domain) for domain in domains]
        builder = builder.add_extension(x509.SubjectAlternativeName(san_list), critical=False)
        csr = builder.sign(private_key, hashes.SHA256())

        private_key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return private_key_pem, csr.public_bytes(serialization.Encoding.PEM)

    async def create_order(self, domains: list[str]) -> tuple[messages.OrderResource, bytes]:
        """
        Create a new certificate order.

        Args:
            domains: List of domains for the certificate

        Returns:
            Tuple of (order, private_key_pem); the key belongs to the order's CSR
        """
        acme_client = await self._get_client()
        private_key_pem, csr_pem = self._make_key_and_csr(domains)

        try:
            order = await asyncio.to_thread(acme_client.new_order, csr_pem)
        except Exception as e:
            raise _wrap(e, ACMEOrderError, "Failed to create order", "Check that all domains are valid and resolvable")

        logger.info(f"Created ACME order for domains: {domains}")
        return order, private_key_pem

    async def get_http_challenges(self, order: messages.OrderResource) -> list[tuple[messages.ChallengeBody, str]]:
        """
        Extract pending HTTP-01 challenges from an order.

        Returns:
            List of (challenge, key_authorization) for authorizations not yet valid
        """
        acme_client = await self._get_client()
        pending = []

        for authz in order.authorizations:
            if authz.body.status == messages.STATUS_VALID:
                continue
            for challenge in authz.body.challenges:
                if isinstance(challenge.chall, challenges.HTTP01):
                    pending.append((challenge, challenge.chall.key_authorization(acme_client.net.key)))
                    break
            else:
                raise ACMEChallengeError(
                    f"No HTTP-01 challenge offered for {authz.body.identifier.value}",
                    suggestion="Server may only support DNS-01 challenges",
                )

        return pending

    async def setup_challenge_file(self, token, key_authorization: str) -> Path:
        """
        Create HTTP-01 challenge file.

        Args:
            token: Challenge token (str or bytes)
            key_authorization: Key authorization string

        Returns:
            Path to created challenge file
        """
        self._challenge_dir.mkdir(parents=True, exist_ok=True)

        # Handle bytes token from ACME library
        if isinstance(token, bytes):
            token = jose.b64encode(token).decode("ascii")

        challenge_path = self._challenge_dir / token
        challenge_path.write_text(key_authorization)
        os.chmod(challenge_path, 0o644)

        logger.info(f"Created challenge file at {challenge_path}")
        return challenge_path

    async def cleanup_challenge(self, token) -> None:
        """Remove an HTTP-01 challenge file if present."""
        if isinstance(token, bytes):
            token = jose.b64encode(token).decode("ascii")

        challenge_path = self._challenge_dir / token
        if challenge_path.exists():
            challenge_path.unlink()
            logger.info(f"Removed challenge file {challenge_path}")

    async def respond_to_challenge(self, challenge):
        """
        Notify ACME server that challenge is ready.

        Args:
            challenge: Challenge to respond to

        Returns:
            Updated challenge resource
        """
        acme_client = await self._get_client()

        def do_respond():
            return acme_client.answer_challenge(challenge, challenge.chall.response(acme_client.net.key))

        try:
            response = await asyncio.to_thread(do_respond)
        except Exception as e:
            raise _wrap(
                e,
                ACMEChallengeError,
                "Failed to respond to challenge",
                "Ensure http://<domain>/.well-known/acme-challenge/ reaches this host on port 80",
            )
        logger.info(f"Responded to challenge for token {challenge.chall.encode('token')}")
        return response

    async def poll_authorizations(self, order: messages.OrderResource) -> messages.OrderResource:
        """
        Wait until every authorization of the order is final.

        Raises:
            ACMEAuthorizationError if any authorization is invalid or the wait times out
        """
        acme_client = await self._get_client()
        # acme compares deadlines against naive local time
        deadline = datetime.now() + timedelta(seconds=self.timeout)

        try:
            updated_order = await asyncio.to_thread(acme_client.poll_authorizations, order, deadline)
        except acme_errors.TimeoutError:
            raise ACMEAuthorizationError(
                f"Authorization timed out after {self.timeout} seconds",
                suggestion="Increase ACME_TIMEOUT or check domain accessibility",
            )
        except Exception as e:
            raise _wrap(
                e,
                ACMEAuthorizationError,
                "Authorization failed",
                "Check that the domain points to this server and port 80 is accessible",
            )

        logger.info("All authorizations validated")
        return updated_order

    async def finalize_order(self, order: messages.OrderResource) -> bytes:
        """
        Finalize a validated order and download the certificate.

        Returns:
            PEM fullchain (leaf followed by intermediates)
        """
        acme_client = await self._get_client()
        deadline = datetime.now() + timedelta(seconds=self.timeout)

        try:
            finalized_order = await asyncio.to_thread(acme_client.finalize_order, order, deadline)
        except Exception as e:
            raise _wrap(
                e, ACMEOrderError, "Failed to finalize order", "Check that all authorizations completed successfully"
            )

        return finalized_order.fullchain_pem.encode("utf-8")

    async def obtain_certificate(self, domains: list[str], email: str | None = None) -> tuple[bytes, bytes, bytes]:
        """
        Run a complete HTTP-01 issuance.

        The caller must make the challenge directory reachable on port 80
        for the duration of this call.

        Returns:
            Tuple of (fullchain_pem, private_key_pem, chain_pem)
        """
        await self.register_account(email)
        order, private_key_pem = await self.create_order(domains)

        pending = await self.get_http_challenges(order)
        tokens = []
        try:
            for challenge, key_authz in pending:
                token = challenge.chall.encode("token")
                await self.setup_challenge_file(token, key_authz)
                tokens.append(token)

            for challenge, _ in pending:
                await self.respond_to_challenge(challenge)

            order = await self.poll_authorizations(order)
            fullchain_pem = await self.finalize_order(order)
        finally:
            for token in tokens:
                await self.cleanup_challenge(token)

        _, chain_pem = split_fullchain(fullchain_pem)
        logger.info(f"Successfully obtained certificate for {domains}")
        return fullchain_pem, private_key_pem, chain_pem
