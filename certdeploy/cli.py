"""Typer command line for certificate lifecycle and service deployment.

Exit codes follow the operation outcome: certificate commands exit 0 when a
usable certificate is in place and 1 otherwise; ``deploy`` and ``restart``
exit 0 (healthy), 2 (rolled back), 1 (failed) or 3 (rollback failed).
"""

import asyncio
import logging
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from certdeploy.config import default_health_policy, ensure_directories, settings
from certdeploy.core.cancellation import CancellationToken, install_signal_handlers
from certdeploy.core.cert_manager import get_lifecycle_manager
from certdeploy.core.cert_scheduler import RenewalScheduler
from certdeploy.core.cert_store import StoreError, get_cert_store
from certdeploy.core.deploy_controller import get_deploy_controller
from certdeploy.core.docker_service import DockerServiceError, get_docker_service
from certdeploy.core.event_store import get_event_store
from certdeploy.core.health_poller import check_health_once
from certdeploy.core.locking import LockTimeoutError, get_operation_lock
from certdeploy.models.certificate import Certificate, LifecycleResult, LifecycleState
from certdeploy.models.deployment import DeploymentOutcome, DeploymentResult
from certdeploy.models.health import HealthCheckPolicy

console = Console()

app = typer.Typer(help="Certificate lifecycle and service deployment orchestrator.", no_args_is_help=True)
cert_app = typer.Typer(help="Acquire, renew and inspect TLS certificates.", no_args_is_help=True)
app.add_typer(cert_app, name="cert")

DOMAIN_OPTION = typer.Option(None, "--domain", "-d", help="Domain (defaults to $DOMAIN).")
SERVICE_OPTION = typer.Option(None, "--service", "-s", help="Service container name (defaults to $SERVICE_NAME).")

_OUTCOME_STYLE = {
    DeploymentOutcome.HEALTHY: "green",
    DeploymentOutcome.ROLLED_BACK: "yellow",
    DeploymentOutcome.FAILED: "red",
    DeploymentOutcome.ROLLBACK_FAILED: "bold red",
}


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Override $LOG_LEVEL."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _fatal(message: str, suggestion: str | None = None, code: int = 1) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    if suggestion:
        console.print(f"  suggestion: {suggestion}")
    raise typer.Exit(code=code)


def _print_certificate(cert: Certificate) -> None:
    table = Table(title=f"Certificate for {cert.domain}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", cert.status.value)
    table.add_row("Issuer", cert.issuer.value)
    table.add_row("Issuer DN", cert.issuer_name or "")
    table.add_row("Valid from", cert.not_before.isoformat() if cert.not_before else "")
    table.add_row("Valid until", cert.not_after.isoformat() if cert.not_after else "")
    table.add_row("Days left", str(cert.days_until_expiry))
    table.add_row("Names", ", ".join(cert.alt_names))
    table.add_row("Serial", cert.serial_number or "")
    table.add_row("SHA-256", cert.fingerprint_sha256 or "")
    table.add_row("Fullchain", cert.fullchain_path or "")
    table.add_row("Private key", cert.privkey_path or "")
    table.add_row("Chain", cert.chain_path or "")
    table.add_row("Version", cert.version or "")
    console.print(table)


def _report_lifecycle(result: LifecycleResult) -> None:
    style = "green" if result.succeeded else "red"
    if result.state == LifecycleState.FALLBACK_SELF_SIGNED:
        style = "yellow"
    console.print(f"[{style}]domain={result.domain} state={result.state.value} reason={result.reason}[/{style}]")
    if result.message:
        console.print(result.message)
    if not result.succeeded:
        raise typer.Exit(code=1)


async def _run_lifecycle(domain: str, email: str | None, force: bool, staging: bool | None, fallback: bool | None):
    ensure_directories()
    manager = get_lifecycle_manager()
    return await manager.run(
        domain, email=email, force_renewal=force, use_staging=staging, fallback_self_signed=fallback
    )


def _lifecycle_command(domain, email, force, staging, fallback) -> None:
    domain = domain or settings.domain
    try:
        result = asyncio.run(_run_lifecycle(domain, email, force, staging, fallback))
    except StoreError as e:
        _fatal(f"domain={domain} state=failed reason=store_error: {e.message}", e.suggestion)
    except LockTimeoutError as e:
        _fatal(f"domain={domain} state=init reason=lock_timeout: {e.message}", e.suggestion)
    except ValueError as e:
        _fatal(f"domain={domain} state=init reason=invalid_domain: {e}")
    _report_lifecycle(result)


@cert_app.command("acquire")
def cert_acquire(
    domain: str | None = DOMAIN_OPTION,
    email: str | None = typer.Option(None, "--email", "-e", help="ACME contact (defaults to $EMAIL)."),
    staging: bool = typer.Option(False, "--staging", help="Use the CA staging endpoint (or $STAGING=1)."),
    force: bool = typer.Option(False, "--force", help="Renew even if valid (or $FORCE_RENEWAL=1)."),
    no_fallback: bool = typer.Option(
        False, "--no-fallback", help="Fail instead of self-signing (overrides $FALLBACK_SELFSIGNED)."
    ),
) -> None:
    """Ensure a usable certificate exists for a domain."""
    _lifecycle_command(
        domain,
        email,
        force or settings.force_renewal,
        True if staging else None,
        False if no_fallback else None,
    )


@cert_app.command("renew")
def cert_renew(
    domain: str | None = DOMAIN_OPTION,
    staging: bool = typer.Option(False, "--staging", help="Use the CA staging endpoint (or $STAGING=1)."),
) -> None:
    """Force renewal of a domain's certificate."""
    _lifecycle_command(domain, None, True, True if staging else None, None)


@cert_app.command("info")
def cert_info(domain: str | None = DOMAIN_OPTION) -> None:
    """Show the current certificate; exit 1 if absent."""
    domain = domain or settings.domain
    try:
        cert = asyncio.run(get_cert_store().get(domain))
    except StoreError as e:
        _fatal(f"domain={domain} reason=store_error: {e.message}", e.suggestion)
    except ValueError as e:
        _fatal(f"domain={domain} reason=invalid_domain: {e}")

    if cert is None:
        _fatal(f"domain={domain} status=absent", "Run 'certdeploy cert acquire' to obtain one")
    _print_certificate(cert)


@cert_app.command("backup")
def cert_backup(domain: str | None = DOMAIN_OPTION) -> None:
    """Snapshot the live certificate material."""
    domain = domain or settings.domain
    try:
        snapshot_id = asyncio.run(get_cert_store().backup(domain))
    except StoreError as e:
        _fatal(e.message, e.suggestion)
    except ValueError as e:
        _fatal(str(e))
    console.print(f"[green]Snapshot {snapshot_id} created for {domain}[/green]")


@cert_app.command("restore")
def cert_restore(
    snapshot: str = typer.Option(..., "--snapshot", help="Snapshot id from 'cert snapshots'."),
    domain: str | None = DOMAIN_OPTION,
) -> None:
    """Republish a snapshot as the live certificate."""
    domain = domain or settings.domain
    try:
        cert = asyncio.run(get_cert_store().restore(domain, snapshot))
    except (StoreError, ValueError) as e:
        _fatal(getattr(e, "message", str(e)), getattr(e, "suggestion", None))
    console.print(f"[green]Restored {domain} from {snapshot}[/green]")
    _print_certificate(cert)


@cert_app.command("snapshots")
def cert_snapshots(domain: str | None = DOMAIN_OPTION) -> None:
    """List certificate snapshots for a domain."""
    domain = domain or settings.domain
    try:
        snapshots = asyncio.run(get_cert_store().list_snapshots(domain))
    except ValueError as e:
        _fatal(str(e))
    if not snapshots:
        console.print(f"No snapshots for {domain}")
        return
    for snapshot_id in snapshots:
        console.print(snapshot_id)


@cert_app.command("delete")
def cert_delete(
    domain: str | None = DOMAIN_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove the live certificate and its archive (snapshots are kept)."""
    domain = domain or settings.domain
    if not yes:
        typer.confirm(f"Delete certificate material for {domain}?", abort=True)
    try:
        existed = asyncio.run(get_cert_store().delete(domain))
    except StoreError as e:
        _fatal(e.message, e.suggestion)
    except ValueError as e:
        _fatal(str(e))
    if not existed:
        _fatal(f"domain={domain} status=absent")
    console.print(f"[green]Deleted certificate material for {domain}[/green]")


def _report_deployment(result: DeploymentResult) -> None:
    style = _OUTCOME_STYLE[result.outcome]
    console.print(
        f"[{style}]service={result.attempt.service_name} state={result.attempt.state.value} "
        f"outcome={result.outcome.value} reason={result.reason}[/{style}]"
    )
    if result.message:
        console.print(result.message)
    if result.service_running is False:
        console.print(f"[bold red]No container is running for {result.attempt.service_name}[/bold red]")
    raise typer.Exit(code=result.exit_code)


def _policy(endpoint: str | None, max_attempts: int | None, timeout_seconds: float | None) -> HealthCheckPolicy:
    policy = default_health_policy(endpoint)
    attempts = max_attempts or policy.max_attempts
    interval = policy.interval_seconds
    if timeout_seconds is not None and attempts > 1:
        interval = timeout_seconds / (attempts - 1)
    return HealthCheckPolicy(endpoint=policy.endpoint, interval_seconds=interval, max_attempts=attempts)


async def _with_cancellation(operation):
    token = CancellationToken()
    install_signal_handlers(token)
    return await operation(token)


@app.command()
def deploy(
    image: str = typer.Option(..., "--image", "-i", help="Candidate image reference."),
    service: str | None = SERVICE_OPTION,
    timeout_seconds: float | None = typer.Option(None, "--timeout-seconds", min=0, help="Total health-check wait."),
    max_attempts: int | None = typer.Option(None, "--max-attempts", min=1, help="Health-check attempts."),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Health endpoint (defaults to $HEALTH_ENDPOINT)."),
) -> None:
    """Replace the service container with a new image, rolling back on failure."""
    service = service or settings.service_name
    policy = _policy(endpoint, max_attempts, timeout_seconds)
    controller = get_deploy_controller()
    try:
        result = asyncio.run(
            _with_cancellation(lambda token: controller.deploy(service, image, policy, cancel_token=token))
        )
    except LockTimeoutError as e:
        _fatal(f"service={service} state=initiated reason=lock_timeout: {e.message}", e.suggestion)
    _report_deployment(result)


@app.command()
def restart(
    service: str | None = SERVICE_OPTION,
    endpoint: str | None = typer.Option(None, "--endpoint", help="Health endpoint (defaults to $HEALTH_ENDPOINT)."),
) -> None:
    """Redeploy the running image with the same backup/rollback protocol."""
    service = service or settings.service_name
    policy = default_health_policy(endpoint)
    controller = get_deploy_controller()
    try:
        result = asyncio.run(
            _with_cancellation(lambda token: controller.restart(service, policy, cancel_token=token))
        )
    except LockTimeoutError as e:
        _fatal(f"service={service} state=initiated reason=lock_timeout: {e.message}", e.suggestion)
    except DockerServiceError as e:
        _fatal(e.message, e.suggestion)
    _report_deployment(result)


@app.command()
def status(service: str | None = SERVICE_OPTION) -> None:
    """Show the service container status; exit 1 if it has no container."""
    service = service or settings.service_name
    try:
        info = asyncio.run(get_deploy_controller().status(service))
    except DockerServiceError as e:
        _fatal(e.message, e.suggestion)

    if info is None:
        _fatal(f"service={service} status=absent")

    table = Table(title=f"Service {service}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in info.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)
    if not info.get("running"):
        raise typer.Exit(code=1)


async def _stop_service(service: str, timeout: int | None) -> bool:
    async with get_operation_lock().hold(f"stop:{service}"):
        return await get_docker_service().stop_container(service, timeout=timeout)


@app.command()
def stop(
    service: str | None = SERVICE_OPTION,
    timeout: int | None = typer.Option(
        None, "--timeout", min=0, help="Seconds before kill (defaults to $DOCKER_STOP_TIMEOUT)."
    ),
) -> None:
    """Stop the service container; the container and its image are kept."""
    service = service or settings.service_name
    try:
        stopped = asyncio.run(_stop_service(service, timeout))
    except LockTimeoutError as e:
        _fatal(f"service={service} reason=lock_timeout: {e.message}", e.suggestion)
    except DockerServiceError as e:
        _fatal(e.message, e.suggestion)
    if stopped:
        console.print(f"[green]Stopped {service}[/green]")
    else:
        console.print(f"{service} was not running")


@app.command()
def logs(
    service: str | None = SERVICE_OPTION,
    tail: int = typer.Option(50, "--tail", min=1, help="Number of lines to show."),
) -> None:
    """Show recent log lines of the service container."""
    service = service or settings.service_name
    try:
        output = asyncio.run(get_docker_service().get_container_logs(service, tail=tail))
    except DockerServiceError as e:
        _fatal(e.message, e.suggestion)
    console.print(output, markup=False, highlight=False, end="")


@app.command()
def health(
    endpoint: str | None = typer.Option(None, "--endpoint", help="Health endpoint (defaults to $HEALTH_ENDPOINT)."),
) -> None:
    """Probe the health endpoint once."""
    endpoint = endpoint or settings.health_endpoint
    healthy, error = asyncio.run(check_health_once(endpoint))
    if not healthy:
        _fatal(f"{endpoint} unhealthy: {error}")
    console.print(f"[green]{endpoint} healthy[/green]")


async def _run_scheduler(domain: str) -> None:
    token = CancellationToken()
    install_signal_handlers(token)
    scheduler = RenewalScheduler(domain=domain)
    await scheduler.run_once()
    scheduler.start()
    console.print(f"Renewal scheduler running for {domain}; next run {scheduler.get_next_run_time()}")
    try:
        await token.wait()
    finally:
        scheduler.stop()


@app.command()
def scheduler(domain: str | None = DOMAIN_OPTION) -> None:
    """Run the renewal scheduler until SIGTERM/SIGINT."""
    ensure_directories()
    asyncio.run(_run_scheduler(domain or settings.domain))


@app.command()
def events(
    category: str | None = typer.Option(None, "--category", help="ssl, deployment or system."),
    resource: str | None = typer.Option(None, "--resource", help="Domain or service name."),
    limit: int = typer.Option(20, "--limit", min=1),
) -> None:
    """List recent audit events."""
    rows = asyncio.run(get_event_store().list_events(category=category, resource_id=resource, limit=limit))
    table = Table(title="Events")
    table.add_column("Time")
    table.add_column("Severity")
    table.add_column("Category")
    table.add_column("Resource")
    table.add_column("Message")
    for event in rows:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.severity.value,
            event.category,
            event.resource_id or "",
            event.message,
        )
    console.print(table)
