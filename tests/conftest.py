"""
Global test fixtures.

Points every filesystem setting at a temporary directory and provides
certificate builders plus in-memory fakes for the container runtime,
the ACME service and the reverse proxy.
"""

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certdeploy.config import settings
from certdeploy.core.cert_acquirer import CertificateAcquirer
from certdeploy.core.cert_store import CertificateStore
from certdeploy.core.database import Database
from certdeploy.core.docker_service import ContainerOperationError, image_repository
from certdeploy.core.event_store import EventStore
from certdeploy.core.locking import OperationLock
from certdeploy.models.health import HealthCheckPolicy


@pytest.fixture(autouse=True)
def isolated_paths(tmp_path, monkeypatch):
    """Keep settings-derived paths inside the test's temporary directory."""
    monkeypatch.setattr(settings, "cert_base_dir", str(tmp_path / "letsencrypt"))
    monkeypatch.setattr(settings, "acme_webroot", str(tmp_path / "webroot"))
    monkeypatch.setattr(settings, "lock_file", str(tmp_path / "lock" / "certdeploy.lock"))
    monkeypatch.setattr(settings, "event_db_path", str(tmp_path / "db" / "events.db"))
    return tmp_path


def _new_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


class CertFactory:
    """Builds leaf certificates signed by a throwaway CA, or self-signed ones."""

    def __init__(self):
        self.ca_key = _new_key()
        self.ca_name = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Let's Encrypt"),
                x509.NameAttribute(NameOID.COMMON_NAME, "R11"),
            ]
        )
        now = datetime.now(timezone.utc)
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(self.ca_name)
            .issuer_name(self.ca_name)
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=365))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )
        self.ca_pem = self.ca_cert.public_bytes(serialization.Encoding.PEM)

    def build(self, domain: str = "example.com", days: float = 90, self_signed: bool = False, now=None):
        """
        Returns:
            Tuple of (fullchain_pem, privkey_pem, chain_pem)
        """
        now = now or datetime.now(timezone.utc)
        not_after = now + timedelta(days=days)
        key = _new_key()
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        issuer, signing_key = (subject, key) if self_signed else (self.ca_name, self.ca_key)

        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_after - timedelta(days=90))
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(signing_key, hashes.SHA256())
        )
        leaf_pem = cert.public_bytes(serialization.Encoding.PEM)
        if self_signed:
            return leaf_pem, _pem(key), leaf_pem
        return leaf_pem + self.ca_pem, _pem(key), self.ca_pem


@pytest.fixture(scope="session")
def cert_factory():
    return CertFactory()


@pytest.fixture
def cert_store(tmp_path):
    return CertificateStore(base_dir=str(tmp_path / "certs"), renewal_days=30, archive_keep=3)


@pytest.fixture
def event_store(tmp_path):
    return EventStore(db=Database(str(tmp_path / "audit" / "events.db")))


@pytest.fixture
def operation_lock(tmp_path):
    return OperationLock(lock_file=str(tmp_path / "op.lock"), timeout=1, poll_interval=0.01)


@pytest.fixture
def fast_policy():
    return HealthCheckPolicy(endpoint="http://service.test/health", interval_seconds=0, max_attempts=3)


@pytest.fixture
def mock_proxy():
    """Reverse proxy collaborator with reload/stop/start."""
    proxy = MagicMock()
    proxy.reload = AsyncMock(return_value=None)
    proxy.stop = AsyncMock(return_value=True)
    proxy.start = AsyncMock(return_value=None)
    return proxy


class FakeACME:
    """Stands in for ACMEService.obtain_certificate."""

    def __init__(self, factory: CertFactory, error: Exception | None = None):
        self.factory = factory
        self.error = error
        self.calls: list[list[str]] = []
        self.reset_count = 0

    async def obtain_certificate(self, domains, email=None):
        self.calls.append(list(domains))
        if self.error is not None:
            raise self.error
        return self.factory.build(domains[0], days=90)

    def reset(self):
        self.reset_count += 1


@pytest.fixture
def fake_acme(cert_factory):
    return FakeACME(cert_factory)


class FakeRuntime:
    """In-memory container runtime with the DockerService async interface."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: dict[str, str] = {}
        self.created: dict[str, int] = {}
        self.healthy_images: set[str] = set()
        self.fail_start: set[str] = set()
        self.calls: list[tuple] = []
        self._seq = itertools.count(1)

    def add_image(self, ref: str) -> str:
        image_id = f"sha256:{next(self._seq):064x}"
        self.images[ref] = image_id
        self.created[image_id] = next(self._seq)
        return image_id

    def run_existing(self, name: str, ref: str) -> None:
        if ref not in self.images:
            self.add_image(ref)
        self.containers[name] = {
            "id": f"c{next(self._seq)}",
            "name": name,
            "image": ref,
            "image_id": self.images[ref],
            "running": True,
        }

    def running_containers(self, name: str) -> list[dict]:
        container = self.containers.get(name)
        return [container] if container and container["running"] else []

    def health_check_factory(self, name: str):
        """Health probe answering for whatever image is running under name."""

        def factory(policy):
            async def check():
                running = self.running_containers(name)
                return bool(running) and running[0]["image_id"] in {self.images.get(r) for r in self.healthy_images}

            return check

        return factory

    async def find_container(self, name):
        container = self.containers.get(name)
        return dict(container) if container else None

    async def get_container_status(self, name):
        container = self.containers[name]
        return {"container_name": name, "image": container["image"], "running": container["running"]}

    async def tag_image(self, source, target_ref):
        self.calls.append(("tag", source, target_ref))
        image_id = self.images.get(source, source)
        if image_id not in self.created:
            raise ContainerOperationError(f"Image '{source}' not found", error_type="image_not_found")
        self.images[target_ref] = image_id

    async def stop_container(self, name, timeout=None):
        self.calls.append(("stop", name))
        container = self.containers.get(name)
        if container is None or not container["running"]:
            return False
        container["running"] = False
        return True

    async def remove_container(self, name):
        self.calls.append(("remove", name))
        return self.containers.pop(name, None) is not None

    async def start_container(self, image_ref, name, **kwargs):
        self.calls.append(("start", image_ref, name))
        if name in self.containers:
            raise ContainerOperationError(f"Conflict: name {name} in use", error_type="docker_api_error")
        if image_ref in self.fail_start or image_ref not in self.images:
            raise ContainerOperationError(f"Cannot start {image_ref}", error_type="docker_api_error")
        self.run_existing(name, image_ref)
        return self.containers[name]["id"] + "0" * 12

    async def list_images(self, repository):
        by_id: dict[str, list[str]] = {}
        for ref, image_id in self.images.items():
            if image_repository(ref) == repository:
                by_id.setdefault(image_id, []).append(ref)
        listed = [{"id": i, "tags": tags, "created": self.created[i]} for i, tags in by_id.items()]
        return sorted(listed, key=lambda image: image["created"], reverse=True)

    async def images_in_use(self):
        return {c["image_id"] for c in self.containers.values()}

    async def remove_image(self, ref):
        self.calls.append(("rmi", ref))
        return self.images.pop(ref, None) is not None


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def directory_urls():
    """ACME directory URLs requested through the acquirer's factory."""
    return []


@pytest.fixture
def acquirer(cert_store, fake_acme, mock_proxy, directory_urls, tmp_path):
    """Acquirer bound to the fake CA with an ephemeral challenge port and DNS assumed to resolve."""

    def factory(url):
        directory_urls.append(url)
        return fake_acme

    acquirer = CertificateAcquirer(
        store=cert_store,
        proxy=mock_proxy,
        acme_factory=factory,
        webroot=str(tmp_path / "webroot"),
        challenge_host="127.0.0.1",
        challenge_port=0,
        stop_proxy_for_challenge=True,
        self_signed_days=365,
    )
    acquirer._resolves = AsyncMock(return_value=True)
    return acquirer
