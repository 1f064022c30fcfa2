"""Domain records shared by the registry, installer and CLI."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path


class InstanceStatus(StrEnum):
    """Lifecycle status persisted for an instance."""

    ABSENT = "absent"
    STAGING = "staging"
    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"


class RuntimeStatus(StrEnum):
    """Observed state of a workload in the container runtime."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class PortReservation:
    """A host port held by one instance for one purpose."""

    port: int
    protocol: str
    owner: str
    purpose: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "protocol": self.protocol,
            "owner": self.owner,
            "purpose": self.purpose,
        }


@dataclass(frozen=True, slots=True)
class ServiceInstance:
    """An installed node instance as recorded in its attributes file."""

    name: str
    root: Path
    execution: str
    consensus: str
    network: str
    status: InstanceStatus
    mevboost: bool = True
    execution_version: str = "latest"
    consensus_version: str = "latest"
    host_ip: str = "127.0.0.1"
    shared_network: str = "validator-net"
    installed_at: str = ""
    ports: tuple[PortReservation, ...] = field(default_factory=tuple)

    def port(self, purpose: str) -> int | None:
        """Return the port reserved for *purpose*, if any."""
        for reservation in self.ports:
            if reservation.purpose == purpose:
                return reservation.port
        return None

    @property
    def number(self) -> int:
        """Return the numeric suffix of the instance name."""
        match = re.search(r"(\d+)$", self.name)
        return int(match.group(1)) if match else 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "root": str(self.root),
            "status": self.status.value,
            "network": self.network,
            "execution": {"client": self.execution, "version": self.execution_version},
            "consensus": {"client": self.consensus, "version": self.consensus_version},
            "mevboost": self.mevboost,
            "host_ip": self.host_ip,
            "shared_network": self.shared_network,
            "installed_at": self.installed_at,
            "ports": [reservation.to_dict() for reservation in self.ports],
        }


@dataclass(frozen=True, slots=True)
class InstallRequest:
    """Attributes supplied when installing a new instance."""

    execution: str = "reth"
    consensus: str = "teku"
    network: str = "hoodi"
    execution_version: str = "latest"
    consensus_version: str = "latest"
    host_ip: str = "127.0.0.1"
    mevboost: bool = True
    start: bool = True


__all__ = [
    "InstallRequest",
    "InstanceStatus",
    "PortReservation",
    "RuntimeStatus",
    "ServiceInstance",
]
