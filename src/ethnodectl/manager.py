"""Facade wiring every lifecycle component from an :class:`AppConfig`."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .errors import EthnodectlError
from .installer import (
    CancellationToken,
    InstallResult,
    ProgressCallback,
    RemovalResult,
    StagedInstaller,
    UpdateResult,
)
from .models import (
    InstallRequest,
    InstanceStatus,
    PortReservation,
    RuntimeStatus,
    ServiceInstance,
)
from .network import NetworkLifecycleManager, NetworkRemoval, NetworkStatus
from .ports import PortAllocator
from .providers import DockerRuntime
from .state import ServiceRegistry
from .sync import ConfigSynchronizer, SyncReport
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class NodeManager:
    """Presentation-facing entry point for node lifecycle operations."""

    config: AppConfig
    registry: ServiceRegistry
    runtime: DockerRuntime
    allocator: PortAllocator
    network: NetworkLifecycleManager
    synchronizer: ConfigSynchronizer
    installer: StagedInstaller

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        runtime: DockerRuntime | None = None,
        templates: TemplateEngine | None = None,
    ) -> NodeManager:
        """Build every component from *config*."""
        runtime = runtime or DockerRuntime(
            docker_bin=config.docker.docker_bin,
            stop_timeout=config.docker.stop_timeout,
        )
        templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        registry = ServiceRegistry(
            config.instance_root,
            prefix=config.instance_prefix,
            auxiliary=config.auxiliary_services,
        )
        allocator = PortAllocator(
            registry=registry,
            runtime=runtime,
            attempts=config.ports.attempts,
            probe_bind=config.ports.probe_bind,
        )
        network = NetworkLifecycleManager(
            runtime=runtime,
            registry=registry,
            name=config.network.name,
            settle_delay=config.network.settle_delay,
            config_file=config.network.config_file,
        )
        synchronizer = ConfigSynchronizer(registry, templates, runtime)
        installer = StagedInstaller(
            registry=registry,
            allocator=allocator,
            network=network,
            synchronizer=synchronizer,
            runtime=runtime,
            templates=templates,
            staging_root=config.staging_dir,
            port_overrides=config.ports.overrides,
            escalation_command=config.docker.escalation_command,
        )
        return cls(
            config=config,
            registry=registry,
            runtime=runtime,
            allocator=allocator,
            network=network,
            synchronizer=synchronizer,
            installer=installer,
        )

    def install(
        self,
        name: str | None,
        request: InstallRequest,
        *,
        cancel: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> InstallResult:
        """Install *name* (or the next free name) with *request*."""
        target = name or self.registry.next_instance_name()
        return self.installer.install(target, request, cancel=cancel, progress=progress)

    def remove(self, name: str, *, progress: ProgressCallback | None = None) -> RemovalResult:
        """Remove instance *name*."""
        return self.installer.remove(name, progress=progress)

    def update(
        self,
        name: str,
        *,
        execution_version: str | None = None,
        consensus_version: str | None = None,
        start: bool = True,
        progress: ProgressCallback | None = None,
    ) -> UpdateResult:
        """Move instance *name* to new client versions."""
        self.registry.get_instance(name)
        if start:
            self.network.ensure_created()
        return self.installer.update(
            name,
            execution_version=execution_version,
            consensus_version=consensus_version,
            start=start,
            progress=progress,
        )

    def list(self) -> list[ServiceInstance]:
        """Return installed instances."""
        return self.registry.list_instances()

    def get(self, name: str) -> ServiceInstance:
        """Return installed instance *name*."""
        return self.registry.get_instance(name)

    def runtime_status(self, name: str) -> RuntimeStatus:
        """Return the observed runtime state of instance *name*."""
        return self.runtime.project_status(name)

    def start(self, name: str) -> ServiceInstance:
        """Start instance *name*, ensuring the shared network exists first."""
        instance = self.registry.get_instance(name)
        try:
            self.network.ensure_created()
            self.runtime.compose_up(instance.root, name)
        except EthnodectlError as exc:
            LOGGER.warning("Instance %s failed to start: %s", name, exc)
            self.registry.set_status(name, InstanceStatus.FAILED)
            raise
        self.registry.set_status(name, InstanceStatus.ACTIVE)
        return self.registry.get_instance(name)

    def stop(self, name: str) -> ServiceInstance:
        """Stop instance *name* without removing it."""
        instance = self.registry.get_instance(name)
        self.runtime.compose_stop(instance.root, name)
        self.registry.set_status(name, InstanceStatus.STOPPED)
        return self.registry.get_instance(name)

    def resync(self) -> SyncReport:
        """Regenerate every dependent configuration artifact."""
        return self.synchronizer.resync()

    def prune_network(self) -> NetworkRemoval:
        """Remove the shared network if nothing uses it any more."""
        return self.network.maybe_remove()

    def network_status(self) -> NetworkStatus:
        return self.network.status()

    def reservations(self) -> list[PortReservation]:
        """Return persisted port reservations of instances and auxiliary services."""
        return self.allocator.reservations()

    def incomplete(self) -> list[Path]:
        return self.registry.list_incomplete()


__all__ = ["NodeManager"]
