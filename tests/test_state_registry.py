"""Tests for filesystem-backed instance discovery."""
from __future__ import annotations

from pathlib import Path

import pytest

from ethnodectl.envfile import EnvDocument
from ethnodectl.errors import InstanceNotFound
from ethnodectl.models import InstanceStatus, PortReservation, ServiceInstance
from ethnodectl.state import (
    MARKER_KEY,
    ServiceRegistry,
    instance_attributes,
    instance_from_attributes,
)


def _write_instance(
    root: Path,
    name: str,
    *,
    complete: bool = True,
    status: str = "active",
    extra: dict[str, str] | None = None,
) -> Path:
    directory = root / name
    directory.mkdir(parents=True)
    lines = [
        f"NODE_NAME={name}",
        f"NODE_STATUS={status}",
        "NETWORK=hoodi",
        "EXECUTION_CLIENT=reth",
        "CONSENSUS_CLIENT=teku",
        "EL_RPC_PORT=8545",
        "CL_P2P_PORT=9000",
    ]
    lines.extend(f"{key}={value}" for key, value in (extra or {}).items())
    if complete:
        lines.append(f"{MARKER_KEY}=true")
    (directory / ".env").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return directory


def test_list_instances_rescans_filesystem(tmp_path: Path) -> None:
    """Instances appear and disappear with their directories."""
    registry = ServiceRegistry(tmp_path)
    _write_instance(tmp_path, "ethnode2")
    _write_instance(tmp_path, "ethnode10")

    assert [item.name for item in registry.list_instances()] == ["ethnode2", "ethnode10"]

    _write_instance(tmp_path, "ethnode1")
    assert [item.name for item in registry.list_instances()] == [
        "ethnode1",
        "ethnode2",
        "ethnode10",
    ]


def test_unrelated_and_incomplete_directories_are_not_instances(tmp_path: Path) -> None:
    """Only marked directories that match the naming pattern count."""
    registry = ServiceRegistry(tmp_path)
    _write_instance(tmp_path, "ethnode1")
    _write_instance(tmp_path, "ethnode2", complete=False)
    (tmp_path / "ethnode3").mkdir()
    (tmp_path / "ethnodex").mkdir()
    (tmp_path / "monitoring").mkdir()
    (tmp_path / "ethnode4").write_text("not a directory", encoding="utf-8")

    assert [item.name for item in registry.list_instances()] == ["ethnode1"]
    assert registry.list_incomplete() == [tmp_path / "ethnode2", tmp_path / "ethnode3"]
    assert registry.find_instance("ethnode2") is None


def test_instance_attributes_are_parsed(tmp_path: Path) -> None:
    """The attributes file supplies clients, status and reservations."""
    registry = ServiceRegistry(tmp_path)
    _write_instance(tmp_path, "ethnode1", status="stopped", extra={"MEVBOOST": "false"})

    instance = registry.get_instance("ethnode1")

    assert instance.execution == "reth"
    assert instance.consensus == "teku"
    assert instance.status is InstanceStatus.STOPPED
    assert instance.mevboost is False
    assert instance.port("EL_RPC_PORT") == 8545
    assert instance.number == 1


def test_unknown_status_is_treated_as_failed(tmp_path: Path) -> None:
    """Garbage status values do not break discovery."""
    registry = ServiceRegistry(tmp_path)
    _write_instance(tmp_path, "ethnode1", status="exploded")

    assert registry.get_instance("ethnode1").status is InstanceStatus.FAILED


def test_get_instance_raises_for_missing(tmp_path: Path) -> None:
    """Asking for an unknown instance raises InstanceNotFound."""
    registry = ServiceRegistry(tmp_path)

    with pytest.raises(InstanceNotFound):
        registry.get_instance("ethnode7")
    assert registry.find_instance("not-an-instance") is None


def test_next_instance_name_skips_existing_directories(tmp_path: Path) -> None:
    """Incomplete directories also block their number."""
    registry = ServiceRegistry(tmp_path, prefix="hoodi")
    assert registry.next_instance_name() == "hoodi1"

    _write_instance(tmp_path, "hoodi1")
    (tmp_path / "hoodi2").mkdir()

    assert registry.next_instance_name() == "hoodi3"


def test_reserved_ports_include_incomplete_and_auxiliary(tmp_path: Path) -> None:
    """Ports in incomplete directories and auxiliary services stay reserved."""
    registry = ServiceRegistry(tmp_path, auxiliary=("monitoring", "vero"))
    _write_instance(tmp_path, "ethnode1")
    _write_instance(tmp_path, "ethnode2", complete=False, extra={"EL_RPC_PORT": "8548"})
    (tmp_path / "monitoring").mkdir()
    (tmp_path / "monitoring" / ".env").write_text("GRAFANA_PORT=3000\n", encoding="utf-8")

    owners = {(item.owner, item.purpose, item.port) for item in registry.reserved_ports()}

    assert ("ethnode1", "EL_RPC_PORT", 8545) in owners
    assert ("ethnode2", "EL_RPC_PORT", 8548) in owners
    assert ("monitoring", "GRAFANA_PORT", 3000) in owners
    assert registry.installed_auxiliary() == ["monitoring"]


def test_set_status_and_deregister(tmp_path: Path) -> None:
    """Status updates persist and deregistration drops the marker."""
    registry = ServiceRegistry(tmp_path)
    directory = _write_instance(tmp_path, "ethnode1", extra={"CUSTOM": "keep"})

    registry.set_status("ethnode1", InstanceStatus.STOPPED)
    assert registry.get_instance("ethnode1").status is InstanceStatus.STOPPED

    assert registry.deregister("ethnode1") is True
    assert registry.find_instance("ethnode1") is None
    document = EnvDocument.load(directory / ".env")
    assert document.get("NODE_STATUS") == "absent"
    assert document.get("CUSTOM") == "keep"
    assert registry.deregister("ethnode1") is False
    assert registry.deregister("ethnode9") is False


def test_release_ports_removes_port_keys(tmp_path: Path) -> None:
    """Released ports disappear from the attributes file."""
    registry = ServiceRegistry(tmp_path)
    directory = _write_instance(tmp_path, "ethnode1")

    released = registry.release_ports("ethnode1")

    assert {(item.purpose, item.port) for item in released} == {
        ("EL_RPC_PORT", 8545),
        ("CL_P2P_PORT", 9000),
    }
    document = EnvDocument.load(directory / ".env")
    assert "EL_RPC_PORT" not in document
    assert document.get("NODE_NAME") == "ethnode1"
    assert registry.reserved_ports() == []
    assert registry.release_ports("ethnode1") == []


def test_attributes_round_trip(tmp_path: Path) -> None:
    """Serialising an instance and parsing it back preserves its fields."""
    instance = ServiceInstance(
        name="ethnode3",
        root=tmp_path / "ethnode3",
        execution="besu",
        consensus="lodestar",
        network="mainnet",
        status=InstanceStatus.ACTIVE,
        mevboost=False,
        host_ip="0.0.0.0",  # noqa: S104
        installed_at="2026-01-01T00:00:00Z",
        ports=(PortReservation(8545, "tcp", "ethnode3", "EL_RPC_PORT"),),
    )
    document = EnvDocument()
    document.update(instance_attributes(instance))

    parsed = instance_from_attributes("ethnode3", instance.root, document)

    assert parsed == instance
