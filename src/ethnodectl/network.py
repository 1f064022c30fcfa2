"""Lifecycle of the container network shared by nodes and validator services.

The network is reference counted over its consumer set: every installed node
instance plus every auxiliary service whose compose configuration names the
network. It is created on demand and removed only when that set is empty.
Removal problems never fail the calling operation; they come back as warnings
and the next maintenance pass (``ethnodectl network prune``) retries.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import yaml

from .errors import (
    EthnodectlError,
    OperationWarning,
    PartialCleanupWarning,
    RuntimeNotFound,
)
from .state import ServiceRegistry

LOGGER = logging.getLogger(__name__)


class NetworkRuntime(Protocol):
    """Subset of the container runtime used for network management."""

    def network_exists(self, name: str) -> bool: ...  # noqa: D102

    def create_network(self, name: str) -> None: ...  # noqa: D102

    def remove_network(self, name: str) -> None: ...  # noqa: D102

    def network_members(self, name: str) -> list[str]: ...  # noqa: D102

    def disconnect(self, network_name: str, container: str) -> None: ...  # noqa: D102


@dataclass(frozen=True, slots=True)
class NetworkRemoval:
    """Outcome of a removal attempt."""

    removed: bool
    retained_by: tuple[str, ...] = ()
    warnings: tuple[OperationWarning, ...] = ()


@dataclass(frozen=True, slots=True)
class NetworkStatus:
    """Point-in-time view of the shared network."""

    name: str
    exists: bool
    members: tuple[str, ...]
    consumers: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "exists": self.exists,
            "members": list(self.members),
            "consumers": list(self.consumers),
        }


def compose_references_network(path: Path, network: str) -> bool:
    """Return whether the compose file at *path* names *network*."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        LOGGER.warning("Cannot parse %s (%s); falling back to a text match.", path, exc)
        return network in text
    if not isinstance(data, Mapping):
        return False

    networks = data.get("networks")
    if isinstance(networks, Mapping):
        for key, value in networks.items():
            if key == network:
                return True
            if isinstance(value, Mapping) and value.get("name") == network:
                return True

    services = data.get("services")
    if isinstance(services, Mapping):
        for service in services.values():
            if not isinstance(service, Mapping):
                continue
            attached = service.get("networks")
            if isinstance(attached, (list, tuple)) and network in attached:
                return True
            if isinstance(attached, Mapping) and network in attached:
                return True
    return False


@dataclass(slots=True)
class NetworkLifecycleManager:
    """Create and destroy the shared network based on its consumers."""

    runtime: NetworkRuntime
    registry: ServiceRegistry
    name: str = "validator-net"
    settle_delay: float = 2.0
    config_file: str = "compose.yml"
    sleep: Callable[[float], None] = field(default=time.sleep)

    def consumers(self, excluding_instance: str | None = None) -> list[str]:
        """Return instances and auxiliary services justifying the network."""
        names = [
            instance.name
            for instance in self.registry.list_instances()
            if instance.name != excluding_instance
        ]
        for service in self.registry.installed_auxiliary():
            compose_path = self.registry.auxiliary_dir(service) / self.config_file
            if compose_references_network(compose_path, self.name):
                names.append(service)
        return names

    def ensure_created(self) -> bool:
        """Create the network if missing; return whether it was created."""
        if self.runtime.network_exists(self.name):
            return False
        self.runtime.create_network(self.name)
        return True

    def maybe_remove(self, excluding_instance: str | None = None) -> NetworkRemoval:
        """Remove the network when no consumer other than *excluding_instance* remains."""
        retained = self.consumers(excluding_instance)
        if retained:
            LOGGER.info("Keeping network %s; still used by %s.", self.name, ", ".join(retained))
            return NetworkRemoval(removed=False, retained_by=tuple(retained))

        warnings: list[OperationWarning] = []
        try:
            if not self.runtime.network_exists(self.name):
                return NetworkRemoval(removed=False)
            members = self.runtime.network_members(self.name)
        except EthnodectlError as exc:
            warnings.append(PartialCleanupWarning("network.inspect", str(exc)))
            return NetworkRemoval(removed=False, warnings=tuple(warnings))

        for member in members:
            try:
                self.runtime.disconnect(self.name, member)
            except RuntimeNotFound:
                continue
            except EthnodectlError as exc:
                LOGGER.warning("Could not disconnect %s from %s: %s", member, self.name, exc)
                warnings.append(PartialCleanupWarning("network.disconnect", str(exc)))
        if members and self.settle_delay > 0:
            self.sleep(self.settle_delay)

        try:
            self.runtime.remove_network(self.name)
        except RuntimeNotFound:
            return NetworkRemoval(removed=False, warnings=tuple(warnings))
        except EthnodectlError as exc:
            LOGGER.warning("Network %s not removed (may still be in use): %s", self.name, exc)
            warnings.append(
                PartialCleanupWarning(
                    "network.remove",
                    f"Network '{self.name}' not removed, it may still be in use: {exc}",
                )
            )
            return NetworkRemoval(removed=False, warnings=tuple(warnings))
        return NetworkRemoval(removed=True, warnings=tuple(warnings))

    def status(self) -> NetworkStatus:
        """Return existence, attached containers and consumers of the network."""
        exists = self.runtime.network_exists(self.name)
        members = tuple(self.runtime.network_members(self.name)) if exists else ()
        return NetworkStatus(
            name=self.name,
            exists=exists,
            members=members,
            consumers=tuple(self.consumers()),
        )


__all__ = [
    "NetworkLifecycleManager",
    "NetworkRemoval",
    "NetworkRuntime",
    "NetworkStatus",
    "compose_references_network",
]
