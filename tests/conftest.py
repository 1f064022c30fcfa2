"""Shared fixtures for the ethnodectl test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from ethnodectl.models import RuntimeStatus


class RecordingRuntime:
    """Container runtime double that records calls and keeps state in memory."""

    def __init__(self) -> None:
        self.network = False
        self.members: list[str] = []
        self.running: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.up_error: Exception | None = None

    def network_exists(self, name: str) -> bool:
        return self.network

    def create_network(self, name: str) -> None:
        self.calls.append(("create_network", name))
        self.network = True

    def remove_network(self, name: str) -> None:
        self.calls.append(("remove_network", name))
        self.network = False

    def network_members(self, name: str) -> list[str]:
        return list(self.members)

    def disconnect(self, network_name: str, container: str) -> None:
        self.calls.append(("disconnect", container))
        self.members.remove(container)

    def compose_up(
        self, directory: Path, project: str, *, force_recreate: bool = False
    ) -> None:
        self.calls.append(("recreate" if force_recreate else "up", project))
        if self.up_error is not None:
            raise self.up_error
        self.running.add(project)

    def compose_pull(self, directory: Path, project: str) -> None:
        self.calls.append(("pull", project))

    def compose_stop(self, directory: Path, project: str) -> None:
        self.calls.append(("stop", project))
        self.running.discard(project)

    def compose_down(self, directory: Path, project: str, *, volumes: bool = True) -> None:
        self.calls.append(("down", project))
        self.running.discard(project)

    def compose_restart(self, directory: Path, project: str) -> None:
        self.calls.append(("restart", project))

    def project_status(self, project: str) -> RuntimeStatus:
        return RuntimeStatus.RUNNING if project in self.running else RuntimeStatus.STOPPED

    def remove_project_containers(self, project: str) -> list[str]:
        return []

    def remove_project_volumes(self, project: str) -> list[str]:
        return []

    def published_ports(self) -> set[int]:
        return set()


@pytest.fixture
def recording_runtime() -> RecordingRuntime:
    """Return a fresh in-memory container runtime."""
    return RecordingRuntime()
