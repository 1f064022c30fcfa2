"""All-or-nothing installation and idempotent removal of node instances.

An install is assembled inside a private staging directory that lives next to
the instance root, so the final step is a single ``os.rename``. Until that
rename happens nothing is visible to the registry: any failure, ``Ctrl-C`` or
``SIGTERM`` unwinds through :class:`StagingArea`, which deletes the staging
directory and undoes side effects registered along the way.

Removal never aborts. Each step is attempted in order and failures are
collected as warnings, so running it again always makes forward progress.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import signal
import subprocess
import tempfile
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from types import FrameType, TracebackType
from typing import Protocol

import yaml

from .clients import (
    MEVBOOST_IMAGE,
    ClientSpec,
    checkpoint_sync_url,
    consensus_client,
    execution_client,
)
from .config import PortOverride
from .envfile import EnvDocument, EnvFileError
from .errors import (
    AllocationFailed,
    DegradedInstall,
    EthnodectlError,
    InstallCancelled,
    InstallError,
    InstanceNotFound,
    OperationWarning,
    PartialCleanupWarning,
    ResourceConflict,
    UpdateError,
)
from .models import InstallRequest, InstanceStatus, PortReservation, ServiceInstance
from .network import NetworkLifecycleManager
from .ports import PortAllocator, build_layout
from .state import MARKER_KEY, RegistryError, ServiceRegistry, instance_attributes
from .state.registry import (
    ATTRIBUTES_FILE,
    KEY_CONSENSUS_VERSION,
    KEY_EXECUTION_VERSION,
    utc_now,
)
from .sync import ConfigSynchronizer
from .templates import TemplateEngine, TemplateRenderError, write_atomic

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

_VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class InstallRuntime(Protocol):
    """Subset of the container runtime used by install and removal."""

    def compose_up(  # noqa: D102
        self, directory: Path, project: str, *, force_recreate: bool = False
    ) -> None: ...

    def compose_pull(self, directory: Path, project: str) -> None: ...  # noqa: D102

    def compose_down(  # noqa: D102
        self, directory: Path, project: str, *, volumes: bool = True
    ) -> None: ...

    def remove_project_containers(self, project: str) -> list[str]: ...  # noqa: D102

    def remove_project_volumes(self, project: str) -> list[str]: ...  # noqa: D102


class InstallPhase(StrEnum):
    """States an installation moves through."""

    REQUESTED = "requested"
    STAGING = "staging"
    VALIDATING = "validating"
    PROMOTING = "promoting"
    ACTIVE = "active"
    ROLLING_BACK = "rolling-back"
    ABSENT = "absent"


@dataclass(frozen=True, slots=True)
class InstallResult:
    """A promoted instance and everything that went wrong after promotion."""

    instance: ServiceInstance
    network_created: bool = False
    warnings: tuple[OperationWarning, ...] = ()

    @property
    def degraded(self) -> bool:
        """Return whether the workload failed to start."""
        return any(isinstance(item, DegradedInstall) for item in self.warnings)


@dataclass(frozen=True, slots=True)
class RemovalResult:
    """Outcome of a removal; ``removed`` is ``False`` when nothing was installed."""

    name: str
    removed: bool
    released_ports: tuple[PortReservation, ...] = ()
    network_removed: bool = False
    warnings: tuple[OperationWarning, ...] = ()


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """An updated instance, the files rewritten and post-update problems."""

    instance: ServiceInstance
    changed_files: tuple[str, ...] = ()
    warnings: tuple[OperationWarning, ...] = ()

    @property
    def degraded(self) -> bool:
        """Return whether the recreated workload failed to start."""
        return any(item.step == "start" for item in self.warnings)


class CancellationToken:
    """Records a cancellation request until the next checkpoint observes it."""

    def __init__(self) -> None:
        """Start in the not-cancelled state."""
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return whether cancellation was requested."""
        return self._reason is not None

    def cancel(self, reason: str) -> None:
        """Request cancellation."""
        self._reason = reason

    def check(self, step: str) -> None:
        """Raise :class:`InstallCancelled` when cancellation was requested."""
        if self._reason is not None:
            raise InstallCancelled(step, self._reason)


@contextmanager
def signal_cancellation(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT and SIGTERM into *token* while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, handler),
    }
    try:
        yield token
    finally:
        for signum, original in previous.items():
            signal.signal(signum, original)


class StagingArea:
    """Scoped rollback guard around a private staging directory."""

    def __init__(
        self,
        staging_root: Path,
        name: str,
        *,
        on_rollback: Callable[[], object] | None = None,
    ) -> None:
        """Remember where to stage; the directory is created on entry."""
        self.staging_root = staging_root
        self.name = name
        self._on_rollback = on_rollback
        self.path: Path | None = None
        self.promoted = False
        self.rolled_back = False
        self._cleanups: list[tuple[str, Callable[[], object]]] = []

    @property
    def directory(self) -> Path:
        """Return the staging directory; only valid inside the ``with`` block."""
        if self.path is None:
            raise InstallError("staging", "staging directory was never created")
        return self.path

    def __enter__(self) -> StagingArea:
        """Create the staging directory."""
        self.staging_root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"{self.name}-", dir=str(self.staging_root)))
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Roll back unless the staging directory was promoted."""
        if not self.promoted:
            self.rollback()

    def add_cleanup(self, label: str, callback: Callable[[], object]) -> None:
        """Register an extra undo action run during rollback."""
        self._cleanups.append((label, callback))

    def promote(self, destination: Path) -> None:
        """Atomically rename the staging directory to *destination*."""
        if self.path is None:
            raise InstallError("promote", "staging directory was never created")
        os.rename(self.path, destination)
        self.promoted = True

    def rollback(self) -> None:
        """Delete the staging directory and run cleanups; safe to call repeatedly."""
        if self.promoted or self.rolled_back:
            return
        self.rolled_back = True
        if self._on_rollback is not None:
            try:
                self._on_rollback()
            except Exception as exc:  # noqa: BLE001 - rollback keeps going
                LOGGER.warning("Rollback notification failed: %s", exc)
        if self.path is not None and self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            if self.path.exists():
                LOGGER.warning("Staging directory %s could not be fully removed.", self.path)
        for label, callback in reversed(self._cleanups):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001 - rollback keeps going
                LOGGER.warning("Rollback step %s failed: %s", label, exc)


@dataclass(slots=True)
class StagedInstaller:
    """Install and remove node instances."""

    registry: ServiceRegistry
    allocator: PortAllocator
    network: NetworkLifecycleManager
    synchronizer: ConfigSynchronizer
    runtime: InstallRuntime
    templates: TemplateEngine
    staging_root: Path
    port_overrides: Mapping[str, PortOverride] = field(default_factory=dict)
    escalation_command: tuple[str, ...] = ()
    uid: int = field(default_factory=os.getuid)
    gid: int = field(default_factory=os.getgid)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def install(
        self,
        name: str,
        request: InstallRequest,
        *,
        cancel: CancellationToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> InstallResult:
        """Install instance *name*; either it ends up registered or nothing is left."""
        token = cancel or CancellationToken()
        report = progress or _noop_progress
        report(InstallPhase.REQUESTED.value, "started")

        if not self.registry.is_valid_name(name):
            raise InstallError(
                "validate",
                f"'{name}' does not match {self.registry.name_pattern.pattern}",
            )
        try:
            execution = execution_client(request.execution)
            consensus = consensus_client(request.consensus)
            checkpoint = checkpoint_sync_url(request.network)
        except EthnodectlError as exc:
            raise InstallError("validate", str(exc)) from exc

        final_dir = self.registry.instance_dir(name)
        conflict: ResourceConflict | None = None
        if self.registry.find_instance(name) is not None:
            conflict = ResourceConflict(name, "instance is already installed")
        elif final_dir.exists():
            conflict = ResourceConflict(
                str(final_dir),
                "directory exists without a completed install; "
                f"reclaim it with `ethnodectl instance remove {name}`",
            )
        if conflict is not None:
            raise InstallError("validate", str(conflict), cause=conflict)
        token.check("validate")

        network_created = False
        staging = StagingArea(
            self.staging_root,
            name,
            on_rollback=lambda: report(InstallPhase.ROLLING_BACK.value, "started"),
        )
        staging.add_cleanup("phase", lambda: report(InstallPhase.ABSENT.value, "rolled-back"))
        with staging:
            report(InstallPhase.STAGING.value, str(staging.path))
            layout = build_layout(self.port_overrides, mevboost=request.mevboost)
            try:
                reservations = self.allocator.allocate(name, layout)
            except AllocationFailed as exc:
                raise InstallError("allocate", str(exc), cause=exc) from exc
            report("allocate", "ok")
            token.check("allocate")

            instance = ServiceInstance(
                name=name,
                root=final_dir,
                execution=execution.name,
                consensus=consensus.name,
                network=request.network.strip().lower(),
                status=InstanceStatus.STAGING,
                mevboost=request.mevboost,
                execution_version=request.execution_version,
                consensus_version=request.consensus_version,
                host_ip=request.host_ip,
                shared_network=self.network.name,
                installed_at=utc_now(),
                ports=reservations,
            )
            try:
                self._materialize(staging.directory, instance, execution, consensus, checkpoint)
            except (OSError, EnvFileError, TemplateRenderError) as exc:
                raise InstallError("materialize", str(exc), cause=exc) from exc
            report("materialize", "ok")
            token.check("materialize")

            report(InstallPhase.VALIDATING.value, "started")
            self._validate(staging.directory, instance, execution, consensus)
            self._mark_complete(staging.directory)
            report(InstallPhase.VALIDATING.value, "ok")
            token.check("validate-staging")

            try:
                network_created = self.network.ensure_created()
            except EthnodectlError as exc:
                raise InstallError("network", str(exc), cause=exc) from exc
            if network_created:
                staging.add_cleanup(
                    "network",
                    lambda: self.network.maybe_remove(excluding_instance=name),
                )
            report("network", "created" if network_created else "exists")
            token.check("network")

            report(InstallPhase.PROMOTING.value, "started")
            if final_dir.exists():
                conflict = ResourceConflict(str(final_dir), "directory appeared during install")
                raise InstallError("promote", str(conflict), cause=conflict)
            try:
                staging.promote(final_dir)
            except OSError as exc:
                raise InstallError("promote", str(exc), cause=exc) from exc
        report(InstallPhase.PROMOTING.value, "ok")

        warnings: list[OperationWarning] = []
        status = InstanceStatus.STOPPED
        if request.start:
            try:
                self.runtime.compose_up(final_dir, name)
                status = InstanceStatus.ACTIVE
                report("start", "ok")
            except EthnodectlError as exc:
                status = InstanceStatus.FAILED
                LOGGER.warning("Instance %s installed but failed to start: %s", name, exc)
                warnings.append(DegradedInstall("start", str(exc)))
                report("start", "failed")
        try:
            self.registry.set_status(name, status)
        except RegistryError as exc:
            warnings.append(PartialCleanupWarning("status", str(exc)))

        sync = self.synchronizer.resync()
        warnings.extend(sync.warnings)
        report("sync", f"changed={sync.changed}")
        report(InstallPhase.ACTIVE.value, status.value)

        installed = self.registry.find_instance(name) or instance
        return InstallResult(
            instance=installed,
            network_created=network_created,
            warnings=tuple(warnings),
        )

    def _materialize(
        self,
        root: Path,
        instance: ServiceInstance,
        execution: ClientSpec,
        consensus: ClientSpec,
        checkpoint: str,
    ) -> None:
        for sub in ("data/execution", "data/consensus", "jwt"):
            (root / sub).mkdir(parents=True, exist_ok=True)
        os.chmod(root / "jwt", 0o750)
        _write_secret(root / "jwt" / "jwtsecret", secrets.token_hex(32))

        compose_files = self._compose_files(execution, consensus, instance.mevboost)
        for filename, content in self._render_compose(instance, execution, consensus).items():
            write_atomic(root / filename, content, mode=0o644)

        document = EnvDocument.parse(
            f"# ethnodectl instance attributes for {instance.name}\n"
        )
        document.update(instance_attributes(instance))
        document.update(
            {
                "COMPOSE_FILE": ":".join(compose_files),
                "CHECKPOINT_SYNC_URL": checkpoint,
                "NODE_UID": self.uid,
                "NODE_GID": self.gid,
            }
        )
        document.save(root / ATTRIBUTES_FILE, mode=0o640)

    @staticmethod
    def _compose_files(execution: ClientSpec, consensus: ClientSpec, mevboost: bool) -> list[str]:
        files = ["compose.yml", execution.compose_file, consensus.compose_file]
        if mevboost:
            files.append("mevboost.yml")
        return files

    def _render_compose(
        self,
        instance: ServiceInstance,
        execution: ClientSpec,
        consensus: ClientSpec,
    ) -> dict[str, str]:
        """Render every compose file of *instance* in memory, keyed by file name."""
        context = {
            "node_name": instance.name,
            "shared_network": instance.shared_network,
            "eth_network": instance.network,
            "mevboost": instance.mevboost,
            "mevboost_image": MEVBOOST_IMAGE,
            "execution": {
                "name": execution.name,
                "image": execution.image,
                "version": instance.execution_version,
                "metrics_port": execution.metrics_port,
            },
            "consensus": {
                "name": consensus.name,
                "image": consensus.image,
                "version": instance.consensus_version,
                "metrics_port": consensus.metrics_port,
            },
        }
        templates = {
            "compose.yml": "compose/base.yml.j2",
            execution.compose_file: "compose/execution.yml.j2",
            consensus.compose_file: "compose/consensus.yml.j2",
            "mevboost.yml": "compose/mevboost.yml.j2",
        }
        return {
            filename: self.templates.render_to_string(templates[filename], context)
            for filename in self._compose_files(execution, consensus, instance.mevboost)
        }

    def _validate(
        self,
        root: Path,
        instance: ServiceInstance,
        execution: ClientSpec,
        consensus: ClientSpec,
    ) -> None:
        problems: list[str] = []
        for filename in self._compose_files(execution, consensus, instance.mevboost):
            path = root / filename
            if not path.is_file() or path.stat().st_size == 0:
                problems.append(f"{filename} missing or empty")
                continue
            try:
                parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                problems.append(f"{filename} is not valid YAML: {exc}")
                continue
            if not isinstance(parsed, dict):
                problems.append(f"{filename} does not contain a mapping")

        secret_path = root / "jwt" / "jwtsecret"
        try:
            secret = secret_path.read_text(encoding="utf-8").strip()
        except OSError:
            secret = ""
        if len(secret) != 64:
            problems.append("jwt/jwtsecret missing or malformed")

        try:
            document = EnvDocument.load(root / ATTRIBUTES_FILE)
        except EnvFileError as exc:
            problems.append(str(exc))
        else:
            for reservation in instance.ports:
                if document.get(reservation.purpose) != str(reservation.port):
                    problems.append(f"{reservation.purpose} not recorded")
        if problems:
            raise InstallError("validate-staging", "; ".join(sorted(set(problems))))

    def _mark_complete(self, root: Path) -> None:
        path = root / ATTRIBUTES_FILE
        try:
            document = EnvDocument.load(path)
            document.set("NODE_STATUS", InstanceStatus.STOPPED.value)
            document.set(MARKER_KEY, "true")
            document.save(path, mode=0o640)
        except EnvFileError as exc:
            raise InstallError("validate-staging", str(exc), cause=exc) from exc

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def update(
        self,
        name: str,
        *,
        execution_version: str | None = None,
        consensus_version: str | None = None,
        start: bool = True,
        progress: ProgressCallback | None = None,
    ) -> UpdateResult:
        """Move instance *name* to new client image versions and recreate its containers.

        Attributes and compose files are rewritten in place; unchanged files are
        left untouched. Pull and start failures degrade the instance to ``failed``
        instead of raising.
        """
        report = progress or _noop_progress
        instance = self.registry.get_instance(name)
        for label, version in (("execution", execution_version), ("consensus", consensus_version)):
            if version is not None and not _VERSION_RE.match(version):
                raise UpdateError("validate", f"invalid {label} version {version!r}")
        try:
            execution = execution_client(instance.execution)
            consensus = consensus_client(instance.consensus)
        except EthnodectlError as exc:
            raise UpdateError("validate", str(exc), cause=exc) from exc

        updated = replace(
            instance,
            execution_version=execution_version or instance.execution_version,
            consensus_version=consensus_version or instance.consensus_version,
        )
        path = self.registry.attributes_path(name)
        try:
            rendered = self._render_compose(updated, execution, consensus)
            document = EnvDocument.load(path)
            document.set(KEY_EXECUTION_VERSION, updated.execution_version)
            document.set(KEY_CONSENSUS_VERSION, updated.consensus_version)
            changed = [
                filename
                for filename, content in rendered.items()
                if write_atomic(instance.root / filename, content, mode=0o644)
            ]
            if document.save(path, mode=0o640):
                changed.append(ATTRIBUTES_FILE)
        except (OSError, EnvFileError, TemplateRenderError) as exc:
            raise UpdateError("configure", str(exc), cause=exc) from exc
        report("configure", f"changed={len(changed)}")

        warnings: list[OperationWarning] = []
        if start:
            try:
                self.runtime.compose_pull(instance.root, name)
                report("pull", "ok")
            except EthnodectlError as exc:
                LOGGER.warning("Pulling images for %s failed: %s", name, exc)
                warnings.append(DegradedInstall("pull", str(exc)))
                report("pull", "failed")
            try:
                self.runtime.compose_up(instance.root, name, force_recreate=True)
                status = InstanceStatus.ACTIVE
                report("start", "ok")
            except EthnodectlError as exc:
                status = InstanceStatus.FAILED
                LOGGER.warning("Instance %s updated but failed to start: %s", name, exc)
                warnings.append(DegradedInstall("start", str(exc)))
                report("start", "failed")
            try:
                self.registry.set_status(name, status)
            except RegistryError as exc:
                warnings.append(PartialCleanupWarning("status", str(exc)))

        return UpdateResult(
            instance=self.registry.find_instance(name) or updated,
            changed_files=tuple(changed),
            warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def remove(self, name: str, *, progress: ProgressCallback | None = None) -> RemovalResult:
        """Tear down instance *name*; absent instances are a successful no-op."""
        report = progress or _noop_progress
        if not self.registry.is_valid_name(name):
            raise InstanceNotFound(
                f"'{name}' does not match {self.registry.name_pattern.pattern}"
            )
        directory = self.registry.instance_dir(name)
        if not directory.exists():
            report("lookup", "absent")
            return RemovalResult(name=name, removed=False)

        warnings: list[OperationWarning] = []

        if (directory / "compose.yml").exists():
            try:
                self.runtime.compose_down(directory, name, volumes=True)
                report("stop", "ok")
            except EthnodectlError as exc:
                warnings.append(PartialCleanupWarning("stop", str(exc)))
                report("stop", "warning")
        else:
            report("stop", "skipped")
        try:
            self.runtime.remove_project_containers(name)
            self.runtime.remove_project_volumes(name)
        except EthnodectlError as exc:
            warnings.append(PartialCleanupWarning("containers", str(exc)))

        try:
            self.registry.deregister(name)
            report("deregister", "ok")
        except RegistryError as exc:
            warnings.append(PartialCleanupWarning("deregister", str(exc)))
            report("deregister", "warning")
        dependents = self.synchronizer.resync()
        warnings.extend(dependents.warnings)

        released: list[PortReservation] = []
        try:
            released = self.registry.release_ports(name)
            report("release-ports", f"released={len(released)}")
        except RegistryError as exc:
            warnings.append(PartialCleanupWarning("release-ports", str(exc)))

        network_removed = False
        try:
            removal = self.network.maybe_remove(excluding_instance=name)
        except EthnodectlError as exc:
            warnings.append(PartialCleanupWarning("network", str(exc)))
        else:
            network_removed = removal.removed
            warnings.extend(removal.warnings)
            report("network", "removed" if removal.removed else "kept")

        if self._delete_directory(directory, warnings):
            report("delete", "ok")
        else:
            report("delete", "warning")

        final = self.synchronizer.resync()
        warnings.extend(final.warnings)
        report("sync", f"changed={final.changed}")

        return RemovalResult(
            name=name,
            removed=True,
            released_ports=tuple(released),
            network_removed=network_removed,
            warnings=tuple(warnings),
        )

    def _delete_directory(self, directory: Path, warnings: list[OperationWarning]) -> bool:
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return True
        except OSError as exc:
            LOGGER.info("Plain delete of %s failed (%s); trying escalation.", directory, exc)
            if not self.escalation_command:
                warnings.append(PartialCleanupWarning("delete", f"{directory}: {exc}"))
                return False
            command = [*self.escalation_command, "rm", "-rf", "--", str(directory)]
            try:
                result = self._run_escalated(command)
            except OSError as run_exc:
                warnings.append(PartialCleanupWarning("delete", f"{directory}: {run_exc}"))
                return False
            if result.returncode != 0 or directory.exists():
                detail = (result.stderr or result.stdout or "").strip() or "still present"
                warnings.append(PartialCleanupWarning("delete", f"{directory}: {detail}"))
                return False
        return True

    def _run_escalated(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute a privileged delete (isolated for testing)."""
        return subprocess.run(  # noqa: S603, S607
            list(command),
            capture_output=True,
            text=True,
            check=False,
        )


def _write_secret(path: Path, value: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(value)
    os.chmod(path, 0o600)


def _noop_progress(step: str, status: str) -> None:
    return None


__all__ = [
    "CancellationToken",
    "InstallRuntime",
    "InstallPhase",
    "InstallResult",
    "RemovalResult",
    "UpdateResult",
    "StagedInstaller",
    "StagingArea",
    "signal_cancellation",
]
