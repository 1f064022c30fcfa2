"""Tests for host port allocation."""
from __future__ import annotations

import socket

import pytest

from ethnodectl.config import ConfigError, PortOverride
from ethnodectl.errors import AllocationFailed
from ethnodectl.models import PortReservation
from ethnodectl.ports import (
    DEFAULT_LAYOUT,
    PortAllocator,
    build_layout,
    can_bind,
    reservations_from_attributes,
    reservations_to_attributes,
)


class FakeRegistry:
    def __init__(self, reservations: list[PortReservation] | None = None) -> None:
        self.reservations = list(reservations or [])

    def reserved_ports(self) -> list[PortReservation]:
        return list(self.reservations)


class FakeRuntime:
    def __init__(self, published: set[int] | None = None) -> None:
        self.published = set(published or ())

    def published_ports(self) -> set[int]:
        return set(self.published)


def _allocator(
    registry: FakeRegistry | None = None,
    runtime: FakeRuntime | None = None,
    *,
    host: set[int] | None = None,
    attempts: int = 50,
) -> PortAllocator:
    return PortAllocator(
        registry=registry or FakeRegistry(),
        runtime=runtime,
        attempts=attempts,
        probe_bind=False,
        host_scanner=lambda: set(host or ()),
    )


def _by_purpose(reservations: tuple[PortReservation, ...]) -> dict[str, int]:
    return {key: int(value) for key, value in reservations_to_attributes(reservations).items()}


def test_first_instance_gets_base_ports() -> None:
    """With nothing in use every purpose lands on its base port."""
    allocator = _allocator()

    ports = _by_purpose(allocator.allocate("ethnode1", build_layout()))

    assert ports == {
        "EL_RPC_PORT": 8545,
        "EL_WS_PORT": 8546,
        "EE_PORT": 8551,
        "EL_P2P_PORT": 30303,
        "EL_P2P_PORT_2": 30304,
        "CL_REST_PORT": 5052,
        "CL_P2P_PORT": 9000,
        "CL_QUIC_PORT": 9001,
        "MEVBOOST_PORT": 18550,
        "EL_METRICS_PORT": 6060,
        "CL_METRICS_PORT": 8008,
    }


def test_second_instance_steps_by_increment() -> None:
    """A second instance skips the first one's reservations by increment."""
    allocator = _allocator()
    first = allocator.allocate("ethnode1", build_layout())
    registry = FakeRegistry(list(first))

    second = _by_purpose(_allocator(registry).allocate("ethnode2", build_layout()))

    assert second["EL_RPC_PORT"] == 8548
    assert second["EL_WS_PORT"] == 8549
    assert second["EE_PORT"] == 8554
    assert second["EL_P2P_PORT"] == 30305
    assert second["CL_REST_PORT"] == 5054
    assert second["CL_P2P_PORT"] == 9002
    assert second["CL_QUIC_PORT"] == 9003


def test_companion_ports_must_be_free_too() -> None:
    """A candidate is rejected when one of its companion offsets is taken."""
    allocator = _allocator(host={8551})

    port = allocator.find_port(8545, 3, span=(1, 6), purpose="EL_RPC_PORT")

    assert port == 8548


def test_all_sources_are_consulted() -> None:
    """Persisted, host-bound and container-published ports are all excluded."""
    registry = FakeRegistry([PortReservation(5052, "tcp", "monitoring", "CL_REST_PORT")])
    runtime = FakeRuntime({5054})
    allocator = _allocator(registry, runtime, host={5056})

    assert allocator.find_port(5052, 2) == 5058
    assert allocator.used_ports() == {5052, 5054, 5056}


def test_exclusion_list_is_honoured() -> None:
    """Callers can exclude ports they are about to use themselves."""
    allocator = _allocator()

    assert allocator.find_port(18550, 2, exclusion=[18550, 18552]) == 18554


def test_exhaustion_raises_allocation_failed() -> None:
    """Running out of attempts names the purpose and search window."""
    allocator = _allocator(host={6060, 6062, 6064}, attempts=3)

    with pytest.raises(AllocationFailed) as excinfo:
        allocator.find_port(6060, 2, purpose="EL_METRICS_PORT")

    assert excinfo.value.purpose == "EL_METRICS_PORT"
    assert "EL_METRICS_PORT" in str(excinfo.value)


def test_scan_stops_at_highest_port() -> None:
    """Candidates beyond 65535 are never returned."""
    allocator = _allocator(attempts=10)

    with pytest.raises(AllocationFailed):
        allocator.find_port(65534, 1, span=(2,))


def test_bind_check_rejects_busy_ports() -> None:
    """The bind checker vetoes candidates not visible to the other sources."""
    checked: list[tuple[int, str]] = []

    def checker(port: int, protocol: str) -> bool:
        checked.append((port, protocol))
        return port != 9000

    allocator = PortAllocator(
        registry=FakeRegistry(),
        probe_bind=True,
        host_scanner=set,
        bind_checker=checker,
    )

    assert allocator.find_port(9000, 2, protocols=("tcp", "udp")) == 9002
    assert (9002, "udp") in checked


def test_can_bind_detects_bound_socket() -> None:
    """A socket bound by this process makes the port unavailable."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("0.0.0.0", 0))  # noqa: S104
        holder.listen(1)
        port = holder.getsockname()[1]
        assert can_bind(port, "tcp") is False


def test_build_layout_applies_overrides_and_skips_mevboost() -> None:
    """Overrides replace base/increment and MEV-Boost can be dropped."""
    layout = build_layout({"el_rpc": PortOverride(base=18545, increment=5)}, mevboost=False)

    purposes = [spec.purpose for spec in layout]
    assert "MEVBOOST_PORT" not in purposes
    rpc = layout[0]
    assert (rpc.base, rpc.increment) == (18545, 5)
    assert len(layout) == len(DEFAULT_LAYOUT) - 1


def test_build_layout_rejects_unknown_purpose() -> None:
    """Overrides for unknown purposes are configuration errors."""
    with pytest.raises(ConfigError, match="Unknown port purposes"):
        build_layout({"grafana": PortOverride(base=3000)})


def test_reservations_from_attributes_reads_port_keys() -> None:
    """Only ``*_PORT`` style keys with valid numbers become reservations."""
    reservations = reservations_from_attributes(
        "ethnode1",
        {
            "NODE_NAME": "ethnode1",
            "EL_RPC_PORT": "8545",
            "EL_P2P_PORT_2": "30304",
            "CL_P2P_PORT": "9000",
            "BROKEN_PORT": "not-a-number",
            "HUGE_PORT": "70000",
        },
    )

    assert sorted((item.purpose, item.port, item.protocol) for item in reservations) == [
        ("CL_P2P_PORT", 9000, "tcp"),
        ("CL_P2P_PORT", 9000, "udp"),
        ("EL_P2P_PORT_2", 30304, "tcp"),
        ("EL_P2P_PORT_2", 30304, "udp"),
        ("EL_RPC_PORT", 8545, "tcp"),
    ]
    assert {item.owner for item in reservations} == {"ethnode1"}
