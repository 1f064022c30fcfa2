"""Regeneration of configuration consumed by auxiliary services.

Each artifact is a pure function of the installed instances: it is recomputed
from scratch on every pass and written wholesale, never patched. A service is
restarted only when one of its own artifacts actually changed and the service
is running.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .clients import CONSENSUS_CLIENTS, EXECUTION_CLIENTS, beacon_url
from .envfile import EnvDocument, EnvFileError
from .errors import EthnodectlError, OperationWarning, PartialCleanupWarning
from .models import RuntimeStatus, ServiceInstance
from .state import ServiceRegistry
from .templates import TemplateEngine, TemplateRenderError, write_atomic

LOGGER = logging.getLogger(__name__)

PROMETHEUS_TEMPLATE = "monitoring/prometheus.yml.j2"
NODE_EXPORTER_TARGET = "monitoring-node-exporter:9100"
VERO_METRICS_TARGET = "vero:9010"


class ServiceRuntime(Protocol):
    """Subset of the container runtime used to restart dependent services."""

    def project_status(self, project: str) -> RuntimeStatus: ...  # noqa: D102

    def compose_restart(self, directory: Path, project: str) -> None: ...  # noqa: D102


@dataclass(frozen=True, slots=True)
class ArtifactResult:
    """What happened to one generated artifact."""

    owner: str
    path: Path
    changed: bool
    restarted: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "owner": self.owner,
            "path": str(self.path),
            "changed": self.changed,
            "restarted": self.restarted,
        }


@dataclass(frozen=True, slots=True)
class SyncReport:
    """Outcome of a resynchronisation pass."""

    artifacts: tuple[ArtifactResult, ...] = ()
    warnings: tuple[OperationWarning, ...] = ()

    @property
    def changed(self) -> int:
        """Number of artifacts whose content changed."""
        return sum(1 for artifact in self.artifacts if artifact.changed)

    @property
    def restarted(self) -> list[str]:
        """Owners restarted during the pass."""
        return [artifact.owner for artifact in self.artifacts if artifact.restarted]


@dataclass(frozen=True, slots=True)
class _Artifact:
    owner: str
    relative_path: str
    writer: Callable[[Path, Sequence[ServiceInstance], set[str]], bool]


class ConfigSynchronizer:
    """Keep scrape targets and beacon endpoint lists aligned with the registry."""

    def __init__(
        self,
        registry: ServiceRegistry,
        templates: TemplateEngine,
        runtime: ServiceRuntime | None,
    ) -> None:
        """Store collaborators."""
        self.registry = registry
        self.templates = templates
        self.runtime = runtime
        self._artifacts = (
            _Artifact("monitoring", "prometheus.yml", self._write_prometheus),
            _Artifact("vero", ".env", self._endpoint_writer("BEACON_NODE_URLS")),
            _Artifact("teku-validator", ".env", self._endpoint_writer("BEACON_NODE_URL")),
        )

    def resync(self) -> SyncReport:
        """Regenerate every artifact whose owning service is installed."""
        instances = self.registry.list_instances()
        installed = set(self.registry.installed_auxiliary())
        results: list[ArtifactResult] = []
        warnings: list[OperationWarning] = []

        for artifact in self._artifacts:
            if artifact.owner not in installed:
                continue
            directory = self.registry.auxiliary_dir(artifact.owner)
            path = directory / artifact.relative_path
            try:
                changed = artifact.writer(path, instances, installed)
            except (OSError, EnvFileError, TemplateRenderError) as exc:
                LOGGER.warning("Failed to regenerate %s: %s", path, exc)
                warnings.append(PartialCleanupWarning(f"sync.{artifact.owner}", str(exc)))
                continue

            restarted = False
            if changed and self.runtime is not None:
                try:
                    if self.runtime.project_status(artifact.owner) is RuntimeStatus.RUNNING:
                        self.runtime.compose_restart(directory, artifact.owner)
                        restarted = True
                except EthnodectlError as exc:
                    LOGGER.warning("Failed to restart %s: %s", artifact.owner, exc)
                    warnings.append(
                        PartialCleanupWarning(f"sync.{artifact.owner}.restart", str(exc))
                    )
            results.append(ArtifactResult(artifact.owner, path, changed, restarted))

        return SyncReport(artifacts=tuple(results), warnings=tuple(warnings))

    # ------------------------------------------------------------------
    def render_prometheus(self, instances: Sequence[ServiceInstance], installed: set[str]) -> str:
        """Return the scrape configuration for *instances*."""
        targets = []
        for instance in instances:
            execution = EXECUTION_CLIENTS.get(instance.execution)
            consensus = CONSENSUS_CLIENTS.get(instance.consensus)
            targets.append(
                {
                    "name": instance.name,
                    "execution": instance.execution,
                    "execution_metrics_port": execution.metrics_port if execution else 6060,
                    "consensus": instance.consensus,
                    "consensus_metrics_port": consensus.metrics_port if consensus else 8008,
                }
            )
        return self.templates.render_to_string(
            PROMETHEUS_TEMPLATE,
            {
                "node_exporter": NODE_EXPORTER_TARGET,
                "instances": targets,
                "vero": VERO_METRICS_TARGET if "vero" in installed else None,
            },
        )

    def _write_prometheus(
        self,
        path: Path,
        instances: Sequence[ServiceInstance],
        installed: set[str],
    ) -> bool:
        return write_atomic(path, self.render_prometheus(instances, installed), mode=0o644)

    def _endpoint_writer(
        self, key: str
    ) -> Callable[[Path, Sequence[ServiceInstance], set[str]], bool]:
        def write(path: Path, instances: Sequence[ServiceInstance], installed: set[str]) -> bool:
            urls = ",".join(beacon_url(instance.name, instance.consensus) for instance in instances)
            document = EnvDocument.load(path)
            document.set(key, urls)
            mode = (path.stat().st_mode & 0o777) if path.exists() else 0o640
            return document.save(path, mode=mode)

        return write


__all__ = ["ArtifactResult", "ConfigSynchronizer", "SyncReport"]
