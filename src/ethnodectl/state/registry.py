"""Discovery of installed node instances.

Instances live in ``<instance_root>/<prefix><n>`` directories. The ``.env``
file inside each directory is the only record of an instance: it carries the
client selections, status and port reservations, and it is the environment
file ``docker compose`` reads. An instance counts as installed only when that
file carries the completion marker, which is written inside the staging area
just before promotion.

Nothing is cached. Every query rescans the directory tree, so the registry is
always consistent with the filesystem even after a crash.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..envfile import EnvDocument, EnvFileError
from ..errors import InstanceNotFound
from ..models import InstanceStatus, PortReservation, ServiceInstance
from ..ports import reservations_from_attributes, reservations_to_attributes

LOGGER = logging.getLogger(__name__)

ATTRIBUTES_FILE = ".env"
MARKER_KEY = "ETHNODECTL_INSTALL_COMPLETE"

KEY_NAME = "NODE_NAME"
KEY_STATUS = "NODE_STATUS"
KEY_NETWORK = "NETWORK"
KEY_EXECUTION = "EXECUTION_CLIENT"
KEY_CONSENSUS = "CONSENSUS_CLIENT"
KEY_EXECUTION_VERSION = "EXECUTION_VERSION"
KEY_CONSENSUS_VERSION = "CONSENSUS_VERSION"
KEY_MEVBOOST = "MEVBOOST"
KEY_HOST_IP = "HOST_IP"
KEY_SHARED_NETWORK = "SHARED_NETWORK"
KEY_INSTALLED_AT = "INSTALLED_AT"


class RegistryError(RuntimeError):
    """Raised when instance attributes cannot be read or written."""


def instance_attributes(instance: ServiceInstance) -> dict[str, str]:
    """Return the attribute keys describing *instance* (marker excluded)."""
    values = {
        KEY_NAME: instance.name,
        KEY_STATUS: instance.status.value,
        KEY_NETWORK: instance.network,
        KEY_EXECUTION: instance.execution,
        KEY_EXECUTION_VERSION: instance.execution_version,
        KEY_CONSENSUS: instance.consensus,
        KEY_CONSENSUS_VERSION: instance.consensus_version,
        KEY_MEVBOOST: "true" if instance.mevboost else "false",
        KEY_HOST_IP: instance.host_ip,
        KEY_SHARED_NETWORK: instance.shared_network,
        KEY_INSTALLED_AT: instance.installed_at,
    }
    values.update(reservations_to_attributes(instance.ports))
    return values


def instance_from_attributes(name: str, root: Path, document: EnvDocument) -> ServiceInstance:
    """Build a :class:`ServiceInstance` from a parsed attributes document."""
    values = document.to_dict()
    raw_status = values.get(KEY_STATUS, InstanceStatus.ACTIVE.value)
    try:
        status = InstanceStatus(raw_status)
    except ValueError:
        LOGGER.warning("Instance %s has unknown status %r; treating as failed.", name, raw_status)
        status = InstanceStatus.FAILED
    return ServiceInstance(
        name=name,
        root=root,
        execution=values.get(KEY_EXECUTION, "unknown"),
        consensus=values.get(KEY_CONSENSUS, "unknown"),
        network=values.get(KEY_NETWORK, "unknown"),
        status=status,
        mevboost=values.get(KEY_MEVBOOST, "true").lower() == "true",
        execution_version=values.get(KEY_EXECUTION_VERSION, "latest"),
        consensus_version=values.get(KEY_CONSENSUS_VERSION, "latest"),
        host_ip=values.get(KEY_HOST_IP, "127.0.0.1"),
        shared_network=values.get(KEY_SHARED_NETWORK, "validator-net"),
        installed_at=values.get(KEY_INSTALLED_AT, ""),
        ports=reservations_from_attributes(name, values),
    )


def utc_now() -> str:
    """Return an ISO-8601 timestamp suitable for ``INSTALLED_AT``."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ServiceRegistry:
    """Enumerate node instances and auxiliary services under ``instance_root``."""

    instance_root: Path
    prefix: str = "ethnode"
    auxiliary: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "instance_root", self.instance_root.expanduser())

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    @property
    def name_pattern(self) -> re.Pattern[str]:
        """Return the pattern every instance name matches."""
        return re.compile(rf"^{re.escape(self.prefix)}(\d+)$")

    def is_valid_name(self, name: str) -> bool:
        """Return whether *name* follows the fleet naming pattern."""
        return bool(self.name_pattern.match(name))

    def instance_dir(self, name: str) -> Path:
        """Return the final directory for instance *name*."""
        return self.instance_root / name

    def attributes_path(self, name: str) -> Path:
        """Return the attributes file path for instance *name*."""
        return self.instance_dir(name) / ATTRIBUTES_FILE

    def next_instance_name(self) -> str:
        """Return the lowest unused ``<prefix><n>`` whose directory does not exist."""
        number = 1
        while self.instance_dir(f"{self.prefix}{number}").exists():
            number += 1
        return f"{self.prefix}{number}"

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------
    def _candidate_dirs(self) -> list[tuple[int, Path]]:
        if not self.instance_root.is_dir():
            return []
        found: list[tuple[int, Path]] = []
        pattern = self.name_pattern
        for entry in self.instance_root.iterdir():
            match = pattern.match(entry.name)
            if match and entry.is_dir():
                found.append((int(match.group(1)), entry))
        found.sort()
        return found

    def _load_document(self, directory: Path) -> EnvDocument | None:
        try:
            return EnvDocument.load(directory / ATTRIBUTES_FILE)
        except EnvFileError as exc:
            LOGGER.warning("Skipping %s: %s", directory, exc)
            return None

    def list_instances(self) -> list[ServiceInstance]:
        """Return installed instances sorted by number, rescanning the filesystem."""
        instances: list[ServiceInstance] = []
        for _, directory in self._candidate_dirs():
            document = self._load_document(directory)
            if document is None or document.get(MARKER_KEY) != "true":
                continue
            instances.append(instance_from_attributes(directory.name, directory, document))
        return instances

    def list_incomplete(self) -> list[Path]:
        """Return instance-shaped directories lacking the completion marker."""
        incomplete: list[Path] = []
        for _, directory in self._candidate_dirs():
            document = self._load_document(directory)
            if document is None or document.get(MARKER_KEY) != "true":
                incomplete.append(directory)
        return incomplete

    def find_instance(self, name: str) -> ServiceInstance | None:
        """Return the installed instance called *name*, or ``None``."""
        if not self.is_valid_name(name):
            return None
        directory = self.instance_dir(name)
        if not directory.is_dir():
            return None
        document = self._load_document(directory)
        if document is None or document.get(MARKER_KEY) != "true":
            return None
        return instance_from_attributes(name, directory, document)

    def get_instance(self, name: str) -> ServiceInstance:
        """Return the installed instance called *name*."""
        instance = self.find_instance(name)
        if instance is None:
            raise InstanceNotFound(f"Instance '{name}' is not installed.")
        return instance

    # ------------------------------------------------------------------
    # Auxiliary services
    # ------------------------------------------------------------------
    def auxiliary_dir(self, service: str) -> Path:
        """Return the directory of auxiliary *service*."""
        return self.instance_root / service

    def installed_auxiliary(self) -> list[str]:
        """Return the configured auxiliary services that have a directory."""
        return [name for name in self.auxiliary if self.auxiliary_dir(name).is_dir()]

    def reserved_ports(self) -> list[PortReservation]:
        """Return reservations from every instance directory and auxiliary service."""
        reservations: list[PortReservation] = []
        for _, directory in self._candidate_dirs():
            document = self._load_document(directory)
            if document is not None:
                reservations.extend(
                    reservations_from_attributes(directory.name, document.to_dict())
                )
        for service in self.installed_auxiliary():
            try:
                document = EnvDocument.load(self.auxiliary_dir(service) / ATTRIBUTES_FILE)
            except EnvFileError as exc:
                LOGGER.warning("Skipping ports of %s: %s", service, exc)
                continue
            reservations.extend(reservations_from_attributes(service, document.to_dict()))
        return reservations

    # ------------------------------------------------------------------
    # Mutation of a single attributes record
    # ------------------------------------------------------------------
    def set_status(self, name: str, status: InstanceStatus) -> None:
        """Persist *status* for the installed instance *name*."""
        path = self.attributes_path(name)
        document = self._require_document(path)
        document.set(KEY_STATUS, status.value)
        self._save(document, path)

    def deregister(self, name: str) -> bool:
        """Drop the completion marker; return whether the instance was registered."""
        path = self.attributes_path(name)
        if not path.exists():
            return False
        document = self._require_document(path)
        was_registered = document.remove(MARKER_KEY)
        document.set(KEY_STATUS, InstanceStatus.ABSENT.value)
        self._save(document, path)
        return was_registered

    def release_ports(self, name: str) -> list[PortReservation]:
        """Remove port keys from *name*'s attributes; return what was released."""
        path = self.attributes_path(name)
        if not path.exists():
            return []
        document = self._require_document(path)
        released = list(reservations_from_attributes(name, document.to_dict()))
        for purpose in {reservation.purpose for reservation in released}:
            document.remove(purpose)
        self._save(document, path)
        return released

    def _require_document(self, path: Path) -> EnvDocument:
        try:
            return EnvDocument.load(path)
        except EnvFileError as exc:
            raise RegistryError(str(exc)) from exc

    def _save(self, document: EnvDocument, path: Path) -> None:
        try:
            document.save(path, mode=0o640)
        except EnvFileError as exc:
            raise RegistryError(str(exc)) from exc


__all__ = [
    "ATTRIBUTES_FILE",
    "MARKER_KEY",
    "RegistryError",
    "ServiceRegistry",
    "instance_attributes",
    "instance_from_attributes",
    "utc_now",
]
