"""
Docker service for container and image management.

Provides an async-safe wrapper around the Docker SDK for the operations
the deployment controller needs (find, start, stop, remove, tag, prune)
and a reverse-proxy adapter that reloads, stops and starts the proxy
container.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.types import LogConfig
from docker.utils import parse_repository_tag

from certdeploy.config import parse_port_bindings, parse_volume_bindings, settings

logger = logging.getLogger(__name__)


class DockerServiceError(Exception):
    """Base exception for Docker service errors."""

    def __init__(self, message: str, error_type: str, suggestion: str | None = None):
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
        super().__init__(message)


class ContainerNotFoundError(DockerServiceError):
    """Container not found."""

    pass


class ContainerOperationError(DockerServiceError):
    """Error during container operation."""

    pass


class DockerUnavailableError(DockerServiceError):
    """Docker daemon not available."""

    pass


def image_repository(image_ref: str) -> str:
    """Repository part of an image reference ("img:v2" -> "img")."""
    repository, _ = parse_repository_tag(image_ref)
    return repository


class DockerService:
    """Service for managing Docker containers and images."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise DockerUnavailableError(
                    f"Cannot connect to Docker daemon: {e}",
                    error_type="docker_unavailable",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    @staticmethod
    def _api_error(action: str, e: Exception) -> ContainerOperationError:
        return ContainerOperationError(
            f"Docker API error during {action}: {e}",
            error_type="docker_api_error",
            suggestion="Check Docker daemon status and permissions",
        )

    def _get_container(self, name: str):
        """Get a container by name or id."""
        try:
            return self.client.containers.get(name)
        except NotFound:
            raise ContainerNotFoundError(
                f"Container '{name}' not found",
                error_type="container_not_found",
                suggestion=f"Deploy the service first with 'certdeploy deploy --service {name}'",
            )
        except APIError as e:
            raise self._api_error(f"lookup of {name}", e)

    async def find_container(self, name: str) -> dict[str, Any] | None:
        """
        Look up a container (running or not).

        Returns:
            Dict with id, name, image (reference it was started from),
            image_id and running; None if no such container exists
        """
        return await asyncio.to_thread(self._find_container_sync, name)

    def _find_container_sync(self, name: str) -> dict[str, Any] | None:
        try:
            container = self._get_container(name)
        except ContainerNotFoundError:
            return None

        attrs = container.attrs
        return {
            "id": container.id,
            "name": container.name,
            "image": attrs.get("Config", {}).get("Image"),
            "image_id": attrs.get("Image"),
            "running": attrs.get("State", {}).get("Running", False),
        }

    async def get_container_status(self, name: str) -> dict[str, Any]:
        """Get detailed container status."""
        return await asyncio.to_thread(self._get_container_status_sync, name)

    def _get_container_status_sync(self, name: str) -> dict[str, Any]:
        """Synchronous container status retrieval."""
        container = self._get_container(name)
        container.reload()  # Refresh container data

        attrs = container.attrs
        state = attrs.get("State", {})

        # Parse started_at timestamp
        started_at = None
        if state.get("StartedAt"):
            try:
                # Docker returns ISO format with nanoseconds
                started_str = state["StartedAt"].split(".")[0].replace("Z", "")
                started_at = datetime.fromisoformat(started_str).replace(tzinfo=timezone.utc)
            except (ValueError, IndexError):
                pass

        uptime_seconds = None
        if started_at and state.get("Running"):
            uptime_seconds = int((datetime.now(timezone.utc) - started_at).total_seconds())

        return {
            "container_id": container.short_id,
            "container_name": container.name,
            "image": attrs.get("Config", {}).get("Image"),
            "status": state.get("Status", "unknown"),
            "running": state.get("Running", False),
            "started_at": started_at,
            "uptime_seconds": uptime_seconds,
            "health_status": state.get("Health", {}).get("Status", "unknown"),
            "restart_count": attrs.get("RestartCount"),
            "exit_code": state.get("ExitCode"),
        }

    async def start_container(
        self,
        image_ref: str,
        name: str,
        ports: dict[str, int] | None = None,
        volumes: dict[str, dict[str, str]] | None = None,
        mem_limit: str | None = None,
        cpus: float | None = None,
    ) -> str:
        """
        Run a detached container with the service's resource limits.

        Returns:
            The new container id
        """
        ports = ports if ports is not None else parse_port_bindings(settings.deploy_ports)
        volumes = volumes if volumes is not None else parse_volume_bindings(settings.deploy_volumes)
        mem_limit = mem_limit or settings.deploy_memory_limit
        cpus = cpus or settings.deploy_cpus

        logger.info(f"Starting container {name} from {image_ref}")
        return await asyncio.to_thread(self._start_container_sync, image_ref, name, ports, volumes, mem_limit, cpus)

    def _start_container_sync(self, image_ref, name, ports, volumes, mem_limit, cpus) -> str:
        try:
            container = self.client.containers.run(
                image_ref,
                name=name,
                detach=True,
                ports=ports,
                volumes=volumes,
                mem_limit=mem_limit,
                nano_cpus=int(cpus * 1e9),
                restart_policy={"Name": "unless-stopped"},
                log_config=LogConfig(type=LogConfig.types.JSON, config={"max-size": "10m", "max-file": "3"}),
            )
        except ImageNotFound:
            raise ContainerOperationError(
                f"Image '{image_ref}' not found",
                error_type="image_not_found",
                suggestion="Build or pull the image before deploying",
            )
        except APIError as e:
            raise self._api_error(f"start of {name}", e)

        logger.info(f"Container {name} started ({container.short_id})")
        return container.id

    async def stop_container(self, name: str, timeout: int | None = None) -> bool:
        """
        Stop a container if it is running.

        Returns:
            True if a running container was stopped
        """
        timeout = timeout if timeout is not None else settings.docker_stop_timeout
        return await asyncio.to_thread(self._stop_container_sync, name, timeout)

    def _stop_container_sync(self, name: str, timeout: int) -> bool:
        try:
            container = self._get_container(name)
        except ContainerNotFoundError:
            return False

        if container.status != "running":
            return False
        try:
            container.stop(timeout=timeout)
        except NotFound:
            return False
        except APIError as e:
            raise self._api_error(f"stop of {name}", e)

        logger.info(f"Container {name} stopped")
        return True

    async def start_existing(self, name: str) -> None:
        """Start a stopped container."""
        await asyncio.to_thread(self._start_existing_sync, name)

    def _start_existing_sync(self, name: str) -> None:
        container = self._get_container(name)
        try:
            container.start()
        except APIError as e:
            raise self._api_error(f"start of {name}", e)
        logger.info(f"Container {name} started")

    async def remove_container(self, name: str) -> bool:
        """
        Remove a container if present.

        Returns:
            True if a container was removed
        """
        return await asyncio.to_thread(self._remove_container_sync, name)

    def _remove_container_sync(self, name: str) -> bool:
        try:
            container = self._get_container(name)
            container.remove(force=True)
        except (ContainerNotFoundError, NotFound):
            return False
        except APIError as e:
            raise self._api_error(f"removal of {name}", e)

        logger.info(f"Container {name} removed")
        return True

    async def tag_image(self, source: str, target_ref: str) -> None:
        """Tag an image (by id or reference) as target_ref."""
        await asyncio.to_thread(self._tag_image_sync, source, target_ref)

    def _tag_image_sync(self, source: str, target_ref: str) -> None:
        repository, tag = parse_repository_tag(target_ref)
        try:
            image = self.client.images.get(source)
            image.tag(repository, tag=tag)
        except ImageNotFound:
            raise ContainerOperationError(
                f"Image '{source}' not found", error_type="image_not_found", suggestion="Check the image reference"
            )
        except APIError as e:
            raise self._api_error(f"tag of {source}", e)
        logger.info(f"Tagged {source} as {target_ref}")

    async def list_images(self, repository: str) -> list[dict[str, Any]]:
        """
        List local images of a repository, newest first.

        Returns:
            List of dicts with id, tags and created
        """
        return await asyncio.to_thread(self._list_images_sync, repository)

    def _list_images_sync(self, repository: str) -> list[dict[str, Any]]:
        try:
            images = self.client.images.list(name=repository)
        except APIError as e:
            raise self._api_error(f"listing of {repository}", e)

        result = [{"id": image.id, "tags": list(image.tags), "created": image.attrs.get("Created", "")} for image in images]
        result.sort(key=lambda image: image["created"], reverse=True)
        return result

    async def images_in_use(self) -> set[str]:
        """Image ids referenced by any container, running or not."""
        return await asyncio.to_thread(self._images_in_use_sync)

    def _images_in_use_sync(self) -> set[str]:
        try:
            containers = self.client.containers.list(all=True)
        except APIError as e:
            raise self._api_error("container listing", e)
        return {container.attrs.get("Image") for container in containers}

    async def remove_image(self, image_ref: str) -> bool:
        """
        Remove an image reference.

        Returns:
            True if removed, False if it did not exist
        """
        return await asyncio.to_thread(self._remove_image_sync, image_ref)

    def _remove_image_sync(self, image_ref: str) -> bool:
        try:
            self.client.images.remove(image_ref)
        except ImageNotFound:
            return False
        except APIError as e:
            raise self._api_error(f"removal of image {image_ref}", e)
        logger.info(f"Removed image {image_ref}")
        return True

    async def exec_in_container(self, name: str, command: list[str]) -> tuple[int, str, str]:
        """
        Execute command in a container.

        Returns:
            Tuple of (exit_code, stdout, stderr)
        """
        return await asyncio.to_thread(self._exec_in_container_sync, name, command)

    def _exec_in_container_sync(self, name: str, command: list[str]) -> tuple[int, str, str]:
        """Synchronous command execution."""
        container = self._get_container(name)

        try:
            exec_result = container.exec_run(cmd=command, demux=True)
        except APIError as e:
            raise self._api_error(f"exec in {name}", e)

        stdout, stderr = exec_result.output or (None, None)
        return (
            exec_result.exit_code,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    async def get_container_logs(self, name: str, tail: int = 50) -> str:
        """Get recent container logs."""
        return await asyncio.to_thread(self._get_container_logs_sync, name, tail)

    def _get_container_logs_sync(self, name: str, tail: int) -> str:
        """Synchronous log retrieval."""
        container = self._get_container(name)
        logs = container.logs(tail=tail, timestamps=True)
        return logs.decode() if logs else ""


class DockerProxy:
    """Reverse proxy running as an nginx container."""

    def __init__(self, docker_service: DockerService, container_name: str | None = None):
        self.docker = docker_service
        self.container_name = container_name or settings.proxy_container_name

    async def reload(self) -> None:
        """
        Send reload signal to nginx (graceful reload).

        Raises:
            ContainerOperationError if nginx rejects the reload
        """
        logger.info(f"Sending reload signal to {self.container_name}")
        exit_code, _, stderr = await self.docker.exec_in_container(self.container_name, ["nginx", "-s", "reload"])
        if exit_code != 0:
            raise ContainerOperationError(
                f"nginx reload failed in {self.container_name}: {stderr.strip()}",
                error_type="reload_failed",
                suggestion="Run 'nginx -t' in the container to check the configuration",
            )

    async def stop(self) -> bool:
        """Stop the proxy container. Returns True if it was running."""
        return await self.docker.stop_container(self.container_name)

    async def start(self) -> None:
        """Start the previously stopped proxy container."""
        await self.docker.start_existing(self.container_name)


# Singleton instances
_docker_service: DockerService | None = None
_docker_proxy: DockerProxy | None = None


def get_docker_service() -> DockerService:
    """Get the global Docker service instance."""
    global _docker_service
    if _docker_service is None:
        _docker_service = DockerService()
    return _docker_service


def get_docker_proxy() -> DockerProxy:
    """Get the global reverse proxy adapter."""
    global _docker_proxy
    if _docker_proxy is None:
        _docker_proxy = DockerProxy(get_docker_service())
    return _docker_proxy
