"""
Certificate material storage.

Each domain's material lives in an immutable version directory under
``archive/<domain>/``; ``live/<domain>`` is a symlink to the current
version, so consumers keep reading ``live/<domain>/fullchain.pem``. New
material is written to a fresh version directory and published by
atomically replacing the symlink, so a reader never observes a fullchain
from one issuance next to a private key from another.
"""

import asyncio
import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from certdeploy.config import settings
from certdeploy.core.cert_helpers import (
    detect_issuer,
    parse_certificate,
    validate_certificate_key_match,
)
from certdeploy.models.certificate import Certificate, CertificateIssuer, compute_status

logger = logging.getLogger(__name__)

FULLCHAIN = "fullchain.pem"
PRIVKEY = "privkey.pem"
CHAIN = "chain.pem"
METADATA = "metadata.json"


class StoreError(Exception):
    """Disk or permission failure in the certificate store."""

    def __init__(self, message: str, domain: str | None = None, suggestion: str | None = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class CertificateStore:
    """Read and atomically replace certificate material per domain."""

    def __init__(
        self,
        base_dir: str | None = None,
        renewal_days: int | None = None,
        archive_keep: int | None = None,
    ):
        self.base_dir = Path(base_dir or settings.cert_base_dir)
        self.live_dir = self.base_dir / "live"
        self.archive_dir = self.base_dir / "archive"
        self.snapshot_dir = self.base_dir / "snapshots"
        self.renewal_days = renewal_days if renewal_days is not None else settings.cert_renewal_days
        self.archive_keep = max(1, archive_keep if archive_keep is not None else settings.cert_archive_keep)

    async def get(self, domain: str, now: datetime | None = None) -> Certificate | None:
        """
        Read the live certificate for a domain.

        Returns None (absent) when no complete, matching key/cert pair is
        published. Permission and other I/O errors raise StoreError.
        """
        self._check_domain(domain)
        return await asyncio.to_thread(self._get_sync, domain, now)

    def _get_sync(self, domain: str, now: datetime | None) -> Certificate | None:
        """Synchronous read of the live certificate."""
        live_path = self._live_path(domain)

        try:
            version_dir = live_path.resolve(strict=True)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise self._store_error(f"Cannot resolve {live_path}: {e}", domain)

        # Read both files from the same resolved version directory
        try:
            fullchain_pem = (version_dir / FULLCHAIN).read_bytes()
            privkey_pem = (version_dir / PRIVKEY).read_bytes()
        except FileNotFoundError:
            logger.error(f"Incomplete certificate material for {domain} in {version_dir}")
            return None
        except OSError as e:
            raise self._store_error(f"Cannot read certificate material for {domain}: {e}", domain)

        try:
            cert_info = parse_certificate(fullchain_pem)
            matches = validate_certificate_key_match(fullchain_pem, privkey_pem)
        except (ValueError, TypeError) as e:
            logger.error(f"Unreadable certificate material for {domain}: {e}")
            return None

        if not matches:
            logger.error(f"Private key does not match certificate for {domain} in {version_dir}")
            return None

        metadata = self._read_metadata(version_dir)
        try:
            issuer = CertificateIssuer(metadata["issuer"])
        except (KeyError, ValueError):
            issuer = detect_issuer(cert_info)

        status = compute_status(
            cert_info["not_after"], issuer, now=now, renewal_window=timedelta(days=self.renewal_days)
        )

        return Certificate(
            domain=domain,
            status=status,
            issuer=issuer,
            issuer_name=cert_info["issuer"],
            not_before=cert_info["not_before"],
            not_after=cert_info["not_after"],
            serial_number=cert_info["serial_number"],
            fingerprint_sha256=cert_info["fingerprint_sha256"],
            alt_names=cert_info["alt_names"],
            fullchain_path=str(live_path / FULLCHAIN),
            privkey_path=str(live_path / PRIVKEY),
            chain_path=str(live_path / CHAIN),
            version=version_dir.name,
            renewal_window_days=self.renewal_days,
        )

    async def put(
        self,
        domain: str,
        fullchain_pem: bytes,
        privkey_pem: bytes,
        chain_pem: bytes | None = None,
        issuer: CertificateIssuer = CertificateIssuer.NONE,
    ) -> Certificate:
        """
        Atomically replace a domain's certificate material.

        Args:
            domain: Domain the material belongs to
            fullchain_pem: Leaf certificate followed by intermediates
            privkey_pem: Private key matching the leaf
            chain_pem: Intermediates only (defaults to the fullchain)
            issuer: Issuer class recorded in metadata (detected when NONE)

        Returns:
            The newly published Certificate

        Raises:
            ValueError if key and certificate do not match
            StoreError on disk/permission failures; prior material stays live
        """
        self._check_domain(domain)
        return await asyncio.to_thread(self._put_sync, domain, fullchain_pem, privkey_pem, chain_pem, issuer)

    def _put_sync(
        self,
        domain: str,
        fullchain_pem: bytes,
        privkey_pem: bytes,
        chain_pem: bytes | None,
        issuer: CertificateIssuer,
    ) -> Certificate:
        """Synchronous write and publish."""
        if not validate_certificate_key_match(fullchain_pem, privkey_pem):
            raise ValueError(f"Private key does not match certificate for {domain}")
        if issuer == CertificateIssuer.NONE:
            issuer = detect_issuer(parse_certificate(fullchain_pem))

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        version_dir = self.archive_dir / domain / f"{stamp}-{uuid.uuid4().hex[:6]}"

        try:
            self._adopt_legacy_live_dir(domain)
            version_dir.mkdir(parents=True)
            self._write_file(version_dir / FULLCHAIN, fullchain_pem, 0o644)
            self._write_file(version_dir / PRIVKEY, privkey_pem, 0o600)
            self._write_file(version_dir / CHAIN, chain_pem if chain_pem is not None else fullchain_pem, 0o644)
            metadata = {"domain": domain, "issuer": issuer.value, "created_at": datetime.now(timezone.utc).isoformat()}
            self._write_file(version_dir / METADATA, json.dumps(metadata, indent=2).encode("utf-8"), 0o644)
            self._fsync_dir(version_dir)
            self._swap_live_link(domain, version_dir)
        except OSError as e:
            shutil.rmtree(version_dir, ignore_errors=True)
            raise self._store_error(f"Failed to write certificate material for {domain}: {e}", domain)

        logger.info(f"Published certificate for {domain} ({issuer.value}) as version {version_dir.name}")
        self._prune_archive(domain)

        cert = self._get_sync(domain, None)
        if cert is None:
            raise self._store_error(f"Published certificate for {domain} could not be read back", domain)
        return cert

    async def backup(self, domain: str) -> str:
        """
        Snapshot the live material of a domain.

        Returns:
            Snapshot identifier usable with restore()
        """
        self._check_domain(domain)
        return await asyncio.to_thread(self._backup_sync, domain)

    def _backup_sync(self, domain: str) -> str:
        """Synchronous snapshot copy."""
        try:
            current = self._live_path(domain).resolve(strict=True)
        except FileNotFoundError:
            raise StoreError(
                f"No certificate to back up for {domain}",
                domain=domain,
                suggestion="Acquire a certificate first",
            )
        except OSError as e:
            raise self._store_error(f"Cannot resolve live certificate for {domain}: {e}", domain)

        snapshot_id = f"snap-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        dest = self.snapshot_dir / domain / snapshot_id

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(current, dest)
        except OSError as e:
            shutil.rmtree(dest, ignore_errors=True)
            raise self._store_error(f"Failed to back up certificate for {domain}: {e}", domain)

        logger.info(f"Created certificate snapshot {snapshot_id} for {domain}")
        return snapshot_id

    async def restore(self, domain: str, snapshot_id: str) -> Certificate:
        """Republish snapshot material as the live certificate."""
        self._check_domain(domain)
        self._check_domain(snapshot_id)
        return await asyncio.to_thread(self._restore_sync, domain, snapshot_id)

    def _restore_sync(self, domain: str, snapshot_id: str) -> Certificate:
        source = self.snapshot_dir / domain / snapshot_id
        if not source.is_dir():
            raise StoreError(
                f"Snapshot {snapshot_id} not found for {domain}",
                domain=domain,
                suggestion="List snapshots with 'certdeploy cert snapshots'",
            )

        try:
            fullchain_pem = (source / FULLCHAIN).read_bytes()
            privkey_pem = (source / PRIVKEY).read_bytes()
            chain_path = source / CHAIN
            chain_pem = chain_path.read_bytes() if chain_path.exists() else None
        except OSError as e:
            raise self._store_error(f"Cannot read snapshot {snapshot_id} for {domain}: {e}", domain)

        metadata = self._read_metadata(source)
        try:
            issuer = CertificateIssuer(metadata["issuer"])
        except (KeyError, ValueError):
            issuer = CertificateIssuer.NONE

        cert = self._put_sync(domain, fullchain_pem, privkey_pem, chain_pem, issuer)
        logger.info(f"Restored certificate for {domain} from snapshot {snapshot_id}")
        return cert

    async def list_snapshots(self, domain: str) -> list[str]:
        """List snapshot identifiers for a domain, oldest first."""
        self._check_domain(domain)
        return await asyncio.to_thread(self._list_snapshots_sync, domain)

    def _list_snapshots_sync(self, domain: str) -> list[str]:
        domain_dir = self.snapshot_dir / domain
        if not domain_dir.exists():
            return []
        return sorted(p.name for p in domain_dir.iterdir() if p.is_dir())

    async def delete(self, domain: str) -> bool:
        """Remove the live link and archived versions (snapshots are kept)."""
        self._check_domain(domain)
        return await asyncio.to_thread(self._delete_sync, domain)

    def _delete_sync(self, domain: str) -> bool:
        live_path = self._live_path(domain)
        existed = live_path.is_symlink() or live_path.exists()
        try:
            if live_path.is_symlink():
                live_path.unlink()
            elif live_path.is_dir():
                shutil.rmtree(live_path)
            shutil.rmtree(self.archive_dir / domain, ignore_errors=True)
        except OSError as e:
            raise self._store_error(f"Failed to delete certificate for {domain}: {e}", domain)

        if existed:
            logger.info(f"Deleted certificate material for {domain}")
        return existed

    def _live_path(self, domain: str) -> Path:
        return self.live_dir / domain

    @staticmethod
    def _check_domain(name: str) -> None:
        if not name or "/" in name or name in (".", ".."):
            raise ValueError(f"Invalid name: {name!r}")

    @staticmethod
    def _write_file(path: Path, data: bytes, mode: int) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        try:
            os.write(fd, data)
            os.fsync(fd)
        finally:
            os.close(fd)
        # Apply mode regardless of the process umask
        os.chmod(path, mode)

    @staticmethod
    def _fsync_dir(path: Path) -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _swap_live_link(self, domain: str, version_dir: Path) -> None:
        """Point live/<domain> at version_dir with a single rename."""
        self.live_dir.mkdir(parents=True, exist_ok=True)
        target = os.path.relpath(version_dir, self.live_dir)
        tmp_link = self.live_dir / f".{domain}.{uuid.uuid4().hex[:8]}.tmp"
        os.symlink(target, tmp_link)
        try:
            os.replace(tmp_link, self._live_path(domain))
        except OSError:
            tmp_link.unlink(missing_ok=True)
            raise
        self._fsync_dir(self.live_dir)

    def _adopt_legacy_live_dir(self, domain: str) -> None:
        """Move a plain live/<domain> directory into the archive."""
        live_path = self._live_path(domain)
        if live_path.is_dir() and not live_path.is_symlink():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            legacy_dir = self.archive_dir / domain / f"{stamp}-legacy"
            legacy_dir.parent.mkdir(parents=True, exist_ok=True)
            logger.warning(f"Adopting legacy certificate directory {live_path} into {legacy_dir}")
            os.rename(live_path, legacy_dir)
            self._swap_live_link(domain, legacy_dir)

    def _prune_archive(self, domain: str) -> None:
        domain_archive = self.archive_dir / domain
        try:
            current = self._live_path(domain).resolve(strict=True)
        except OSError:
            return

        versions = sorted(p for p in domain_archive.iterdir() if p.is_dir())
        for old in versions[: -self.archive_keep]:
            if old.resolve() == current:
                continue
            try:
                shutil.rmtree(old)
                logger.debug(f"Pruned archived certificate version {old.name} for {domain}")
            except OSError as e:
                logger.warning(f"Failed to prune {old}: {e}")

    @staticmethod
    def _read_metadata(version_dir: Path) -> dict:
        try:
            return json.loads((version_dir / METADATA).read_text())
        except (OSError, ValueError):
            return {}

    @staticmethod
    def _store_error(message: str, domain: str) -> StoreError:
        logger.error(message)
        return StoreError(
            message,
            domain=domain,
            suggestion="Check disk space and permissions on the certificate directory",
        )


# Singleton instance
_cert_store: CertificateStore | None = None


def get_cert_store() -> CertificateStore:
    """Get the global certificate store instance."""
    global _cert_store
    if _cert_store is None:
        _cert_store = CertificateStore()
    return _cert_store
