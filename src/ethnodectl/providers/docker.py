"""Container runtime provider backed by the Docker Engine.

Networks, containers, volumes and published ports are queried through the
Docker SDK, which returns structured objects rather than text. Compose projects
are driven through the ``docker compose`` CLI because the SDK has no compose
support. Every failure surfaces as one of the typed errors in
:mod:`ethnodectl.errors`.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound

from ..errors import (
    ResourceInUse,
    RuntimeCommandError,
    RuntimeNotFound,
    RuntimeUnavailable,
)
from ..models import RuntimeStatus

LOGGER = logging.getLogger(__name__)

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
_DAEMON_DOWN_HINTS = ("cannot connect to the docker daemon", "is the docker daemon running")


def expand_host_port(value: object) -> list[int]:
    """Return the ports described by a ``HostPort`` value such as ``30303-30304``."""
    text = str(value or "").strip()
    if not text:
        return []
    start_text, sep, end_text = text.partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if sep else start
    except ValueError:
        return []
    if end < start:
        start, end = end, start
    return list(range(start, end + 1))


def _host_ports_from_bindings(bindings: Mapping[str, Any] | None) -> set[int]:
    ports: set[int] = set()
    if not isinstance(bindings, Mapping):
        return ports
    for entries in bindings.values():
        if not isinstance(entries, Iterable) or isinstance(entries, (str, bytes)):
            continue
        for entry in entries:
            if isinstance(entry, Mapping):
                ports.update(expand_host_port(entry.get("HostPort")))
    return ports


class DockerRuntime:
    """Narrow command interface to the container runtime."""

    def __init__(
        self,
        *,
        docker_bin: str = "docker",
        stop_timeout: int = 30,
        client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ) -> None:
        """Store runtime settings; the daemon is contacted lazily."""
        self.docker_bin = docker_bin
        self.stop_timeout = stop_timeout
        self._client_factory = client_factory
        self._client: docker.DockerClient | None = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def client(self) -> docker.DockerClient:
        """Return a connected SDK client."""
        if self._client is None:
            try:
                client = self._client_factory()
                client.ping()
            except DockerException as exc:
                raise RuntimeUnavailable(f"Docker daemon unreachable: {exc}") from exc
            self._client = client
        return self._client

    def available(self) -> bool:
        """Return whether the daemon answers."""
        try:
            self.client()
        except RuntimeUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    def _get_network(self, name: str) -> Any:
        try:
            return self.client().networks.get(name)
        except NotFound as exc:
            raise RuntimeNotFound(f"Network '{name}' does not exist.") from exc
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to inspect network '{name}': {exc}") from exc

    def network_exists(self, name: str) -> bool:
        """Return whether a network called exactly *name* exists."""
        try:
            networks = self.client().networks.list(names=[name])
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to list networks: {exc}") from exc
        return any(network.name == name for network in networks)

    def create_network(self, name: str) -> None:
        """Create a bridge network called *name*."""
        try:
            self.client().networks.create(name, driver="bridge")
        except APIError as exc:
            if exc.status_code == 409:
                LOGGER.debug("Network %s appeared concurrently.", name)
                return
            raise RuntimeCommandError(f"Failed to create network '{name}': {exc}") from exc
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to create network '{name}': {exc}") from exc
        LOGGER.info("Created docker network %s.", name)

    def remove_network(self, name: str) -> None:
        """Remove network *name*."""
        network = self._get_network(name)
        try:
            network.remove()
        except NotFound as exc:
            raise RuntimeNotFound(f"Network '{name}' does not exist.") from exc
        except APIError as exc:
            explanation = str(getattr(exc, "explanation", "") or exc).lower()
            if exc.status_code in (403, 409) or "active endpoints" in explanation:
                raise ResourceInUse(f"Network '{name}' is still in use: {exc}") from exc
            raise RuntimeCommandError(f"Failed to remove network '{name}': {exc}") from exc
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to remove network '{name}': {exc}") from exc
        LOGGER.info("Removed docker network %s.", name)

    def network_members(self, name: str) -> list[str]:
        """Return names of containers attached to network *name*."""
        network = self._get_network(name)
        try:
            network.reload()
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to inspect network '{name}': {exc}") from exc
        containers = network.attrs.get("Containers") or {}
        members = [
            str(entry.get("Name"))
            for entry in containers.values()
            if isinstance(entry, Mapping) and entry.get("Name")
        ]
        return sorted(members)

    def disconnect(self, network_name: str, container: str) -> None:
        """Force-disconnect *container* from *network_name*."""
        network = self._get_network(network_name)
        try:
            network.disconnect(container, force=True)
        except NotFound as exc:
            raise RuntimeNotFound(f"Container '{container}' is not attached.") from exc
        except DockerException as exc:
            raise RuntimeCommandError(
                f"Failed to disconnect '{container}' from '{network_name}': {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Containers and ports
    # ------------------------------------------------------------------
    def _list_containers(self, filters: Mapping[str, object] | None = None) -> list[Any]:
        try:
            return list(self.client().containers.list(all=True, filters=dict(filters or {})))
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to list containers: {exc}") from exc

    def published_ports(self) -> set[int]:
        """Return host ports published or requested by any container."""
        ports: set[int] = set()
        for container in self._list_containers():
            attrs = getattr(container, "attrs", {}) or {}
            network_settings = attrs.get("NetworkSettings") or {}
            host_config = attrs.get("HostConfig") or {}
            ports |= _host_ports_from_bindings(network_settings.get("Ports"))
            ports |= _host_ports_from_bindings(host_config.get("PortBindings"))
        return ports

    def project_containers(self, project: str) -> list[str]:
        """Return names of containers belonging to compose *project*."""
        containers = self._list_containers({"label": [f"{COMPOSE_PROJECT_LABEL}={project}"]})
        return sorted(str(container.name) for container in containers)

    def project_status(self, project: str) -> RuntimeStatus:
        """Return whether any container of compose *project* is running."""
        try:
            containers = self._list_containers(
                {"label": [f"{COMPOSE_PROJECT_LABEL}={project}"]}
            )
        except RuntimeUnavailable:
            return RuntimeStatus.UNKNOWN
        if any(container.status == "running" for container in containers):
            return RuntimeStatus.RUNNING
        return RuntimeStatus.STOPPED

    def remove_project_containers(self, project: str) -> list[str]:
        """Force-remove every container of *project*; return the removed names."""
        removed: list[str] = []
        for container in self._list_containers({"label": [f"{COMPOSE_PROJECT_LABEL}={project}"]}):
            try:
                container.remove(force=True, v=True)
            except NotFound:
                continue
            except DockerException as exc:
                raise RuntimeCommandError(
                    f"Failed to remove container '{container.name}': {exc}"
                ) from exc
            removed.append(str(container.name))
        return removed

    def remove_project_volumes(self, project: str) -> list[str]:
        """Remove volumes labelled with compose *project*; return their names."""
        try:
            volumes = self.client().volumes.list(
                filters={"label": f"{COMPOSE_PROJECT_LABEL}={project}"}
            )
        except DockerException as exc:
            raise RuntimeUnavailable(f"Failed to list volumes: {exc}") from exc
        removed: list[str] = []
        for volume in volumes:
            try:
                volume.remove(force=True)
            except NotFound:
                continue
            except DockerException as exc:
                raise RuntimeCommandError(
                    f"Failed to remove volume '{volume.name}': {exc}"
                ) from exc
            removed.append(str(volume.name))
        return removed

    # ------------------------------------------------------------------
    # Compose projects
    # ------------------------------------------------------------------
    def compose_up(
        self, directory: Path, project: str, *, force_recreate: bool = False
    ) -> None:
        """Start *project* in the background, optionally recreating its containers."""
        args = ["up", "-d", "--remove-orphans"]
        if force_recreate:
            args.append("--force-recreate")
        self._compose(directory, project, args)

    def compose_pull(self, directory: Path, project: str) -> None:
        """Fetch the images referenced by *project*."""
        self._compose(directory, project, ["pull"])

    def compose_stop(self, directory: Path, project: str) -> None:
        """Stop *project* without removing containers."""
        self._compose(directory, project, ["stop", "-t", str(self.stop_timeout)])

    def compose_restart(self, directory: Path, project: str) -> None:
        """Restart every service of *project*."""
        self._compose(directory, project, ["restart"])

    def compose_down(self, directory: Path, project: str, *, volumes: bool = True) -> None:
        """Stop and remove *project* containers (and volumes when requested)."""
        args = ["down", "-t", str(self.stop_timeout), "--remove-orphans"]
        if volumes:
            args.append("--volumes")
        self._compose(directory, project, args)

    def _compose(self, directory: Path, project: str, args: Sequence[str]) -> None:
        command = [
            self.docker_bin,
            "compose",
            "--project-name",
            project,
            "--project-directory",
            str(directory),
            *args,
        ]
        self._run_command(
            command,
            cwd=directory,
            error_prefix=f"docker compose {args[0]} ({project})",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailable(
                f"{args[0]} not found: {exc}",
                remediation="Install Docker Engine with the compose plugin.",
            ) from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            if any(hint in message.lower() for hint in _DAEMON_DOWN_HINTS):
                raise RuntimeUnavailable(f"{error_prefix} failed: {message}")
            raise RuntimeCommandError(
                f"{error_prefix} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["COMPOSE_PROJECT_LABEL", "DockerRuntime", "expand_host_port"]
