"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and orchestrator settings.
"""

import ipaddress
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from certdeploy.models.health import HealthCheckPolicy


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env file
        populate_by_name=True,
    )

    # Certificate lifecycle inputs
    domain: str = Field(default="localhost", alias="DOMAIN", description="Domain to manage a certificate for")
    email: str = Field(default="admin@localhost", alias="EMAIL", description="Email for Let's Encrypt registration")
    staging: bool = Field(default=False, alias="STAGING", description="Use the Let's Encrypt staging environment")
    force_renewal: bool = Field(default=False, alias="FORCE_RENEWAL", description="Renew even if still valid")
    fallback_self_signed: bool = Field(
        default=True,
        alias="FALLBACK_SELFSIGNED",
        description="Fall back to a self-signed certificate when ACME issuance fails",
    )

    # Certificate storage
    cert_base_dir: str = Field(default="/etc/letsencrypt", alias="CERT_BASE_DIR")
    cert_renewal_days: int = Field(
        default=30, alias="CERT_RENEWAL_DAYS", description="Days before expiry to trigger renewal"
    )
    cert_expiry_warning_days: int = Field(
        default=14, alias="CERT_EXPIRY_WARNING_DAYS", description="Days before expiry to generate warning events"
    )
    self_signed_validity_days: int = Field(default=365, alias="SELF_SIGNED_VALIDITY_DAYS")
    cert_archive_keep: int = Field(
        default=5, alias="CERT_ARCHIVE_KEEP", description="Archived certificate versions to keep per domain"
    )

    # ACME/Let's Encrypt Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_webroot: str = Field(
        default="/var/www/certbot",
        alias="ACME_WEBROOT",
        description="Shared webroot holding .well-known/acme-challenge files",
    )
    acme_challenge_host: str = Field(default="0.0.0.0", alias="ACME_CHALLENGE_HOST")
    acme_challenge_port: int = Field(default=80, alias="ACME_CHALLENGE_PORT")
    acme_timeout: int = Field(
        default=300, alias="ACME_TIMEOUT", description="Seconds to wait for authorization and finalization"
    )
    acme_stop_proxy_for_challenge: bool = Field(
        default=True,
        alias="ACME_STOP_PROXY_FOR_CHALLENGE",
        description="Stop the reverse proxy when it holds the challenge port",
    )

    # Renewal scheduler
    renewal_interval_hours: float = Field(default=12, alias="RENEWAL_INTERVAL_HOURS")

    # Service / container configuration
    service_name: str = Field(default="blog", alias="SERVICE_NAME")
    proxy_container_name: str = Field(
        default="blog", alias="PROXY_CONTAINER_NAME", description="Container running the reverse proxy"
    )
    deploy_ports: str = Field(
        default="80:80,443:443", alias="DEPLOY_PORTS", description="Comma-separated host:container port pairs"
    )
    deploy_volumes: str = Field(
        default="/etc/letsencrypt:/etc/letsencrypt:ro,/var/www/certbot:/var/www/certbot:ro",
        alias="DEPLOY_VOLUMES",
        description="Comma-separated host:container[:mode] bind mounts",
    )
    deploy_memory_limit: str = Field(default="512m", alias="DEPLOY_MEMORY_LIMIT")
    deploy_cpus: float = Field(default=1.0, alias="DEPLOY_CPUS")
    image_retention: int = Field(
        default=3, alias="IMAGE_RETENTION", description="Images of a repository kept after a healthy deploy"
    )
    remove_failed_candidate: bool = Field(
        default=False,
        alias="REMOVE_FAILED_CANDIDATE",
        description="Remove a failed first-time deployment instead of leaving it running degraded",
    )
    docker_stop_timeout: int = Field(default=10, alias="DOCKER_STOP_TIMEOUT")

    # Health checks
    health_endpoint: str = Field(default="http://localhost/health", alias="HEALTH_ENDPOINT")
    health_check_interval: float = Field(
        default=2.0, alias="HEALTH_CHECK_INTERVAL", description="Seconds between health check attempts"
    )
    health_check_max_attempts: int = Field(
        default=30, alias="HEALTH_CHECK_MAX_ATTEMPTS", description="Number of health check attempts"
    )
    health_check_timeout: float = Field(
        default=5.0, alias="HEALTH_CHECK_TIMEOUT", description="HTTP request timeout per attempt"
    )

    # Locking
    lock_file: str = Field(default="/var/lock/certdeploy.lock", alias="LOCK_FILE")
    lock_timeout: float = Field(
        default=600, alias="LOCK_TIMEOUT", description="Seconds to wait for the certificate/proxy lock"
    )

    # Audit events
    event_db_path: str = Field(default="/var/lib/certdeploy/events.db", alias="EVENT_DB_PATH")
    event_retention_days: int = Field(default=90, alias="EVENT_RETENTION_DAYS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


# Global settings instance
settings = Settings()


def ensure_directories():
    """Ensure required directories exist."""
    dirs_to_create = [
        settings.cert_base_dir,
        settings.acme_webroot,
        str(Path(settings.event_db_path).parent),
        str(Path(settings.lock_file).parent),
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)


def default_health_policy(endpoint: str | None = None) -> HealthCheckPolicy:
    """Build the health check policy configured for deployments."""
    return HealthCheckPolicy(
        endpoint=endpoint or settings.health_endpoint,
        interval_seconds=settings.health_check_interval,
        max_attempts=settings.health_check_max_attempts,
    )


def is_loopback_domain(domain: str) -> bool:
    """Check if a domain is non-routable (localhost or a loopback address)."""
    name = domain.strip().lower().rstrip(".")
    if name == "localhost" or name.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(name).is_loopback
    except ValueError:
        return False


def parse_port_bindings(value: str) -> dict[str, int]:
    """Parse "host:container" pairs into docker SDK port bindings."""
    ports: dict[str, int] = {}
    for pair in filter(None, (p.strip() for p in value.split(","))):
        host_port, _, container_port = pair.partition(":")
        if not container_port:
            container_port = host_port
        ports[f"{int(container_port)}/tcp"] = int(host_port)
    return ports


def parse_volume_bindings(value: str) -> dict[str, dict[str, str]]:
    """Parse "host:container[:mode]" entries into docker SDK volume bindings."""
    volumes: dict[str, dict[str, str]] = {}
    for entry in filter(None, (v.strip() for v in value.split(","))):
        parts = entry.split(":")
        if len(parts) < 2:
            raise ValueError(f"Invalid volume binding: {entry}")
        mode = parts[2] if len(parts) > 2 else "rw"
        volumes[parts[0]] = {"bind": parts[1], "mode": mode}
    return volumes
