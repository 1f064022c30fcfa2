"""Host port allocation for node instances.

Ports are chosen by probing ``base, base + increment, ...`` until a candidate
is free according to three independent sources:

* reservations persisted in instance and auxiliary ``.env`` files,
* sockets currently bound on the host,
* host ports published by containers, running or stopped.

The allocator holds no state of its own; every call recomputes the used set
so a crashed previous run cannot leave stale bookkeeping behind.
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol

import psutil

from .config import ConfigError, PortOverride
from .errors import AllocationFailed
from .models import PortReservation

LOGGER = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 50


@dataclass(frozen=True, slots=True)
class PortCompanion:
    """A port placed at a fixed offset from its primary port."""

    purpose: str
    offset: int
    protocols: tuple[str, ...] = ("tcp",)


@dataclass(frozen=True, slots=True)
class PortSpec:
    """How to probe for one primary port and its companions."""

    purpose: str
    base: int
    increment: int
    protocols: tuple[str, ...] = ("tcp",)
    companions: tuple[PortCompanion, ...] = ()

    @property
    def override_key(self) -> str:
        """Return the ``ports.overrides`` key addressing this spec."""
        return self.purpose.lower().removesuffix("_port")

    @property
    def offsets(self) -> tuple[int, ...]:
        """Return the offsets that must be free alongside the primary port."""
        return tuple(companion.offset for companion in self.companions)


DEFAULT_LAYOUT: tuple[PortSpec, ...] = (
    PortSpec(
        "EL_RPC_PORT",
        8545,
        3,
        companions=(PortCompanion("EL_WS_PORT", 1), PortCompanion("EE_PORT", 6)),
    ),
    PortSpec(
        "EL_P2P_PORT",
        30303,
        2,
        protocols=("tcp", "udp"),
        companions=(PortCompanion("EL_P2P_PORT_2", 1, ("tcp", "udp")),),
    ),
    PortSpec("CL_REST_PORT", 5052, 2),
    PortSpec(
        "CL_P2P_PORT",
        9000,
        2,
        protocols=("tcp", "udp"),
        companions=(PortCompanion("CL_QUIC_PORT", 1, ("udp",)),),
    ),
    PortSpec("MEVBOOST_PORT", 18550, 2),
    PortSpec("EL_METRICS_PORT", 6060, 2),
    PortSpec("CL_METRICS_PORT", 8008, 2),
)

_PROTOCOLS_BY_PURPOSE: dict[str, tuple[str, ...]] = {}
for _spec in DEFAULT_LAYOUT:
    _PROTOCOLS_BY_PURPOSE[_spec.purpose] = _spec.protocols
    for _companion in _spec.companions:
        _PROTOCOLS_BY_PURPOSE[_companion.purpose] = _companion.protocols


def build_layout(
    overrides: Mapping[str, PortOverride] | None = None,
    *,
    mevboost: bool = True,
) -> tuple[PortSpec, ...]:
    """Return the default layout with configured base/increment overrides applied."""
    overrides = dict(overrides or {})
    known = {spec.override_key for spec in DEFAULT_LAYOUT}
    unknown = set(overrides) - known
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown port purposes in ports.overrides: {joined}.")

    layout: list[PortSpec] = []
    for spec in DEFAULT_LAYOUT:
        if spec.purpose == "MEVBOOST_PORT" and not mevboost:
            continue
        override = overrides.get(spec.override_key)
        if override is not None:
            base = override.base if override.base is not None else spec.base
            increment = override.increment if override.increment is not None else spec.increment
            if not 0 < base < 65536 or increment < 1:
                raise ConfigError(
                    f"ports.overrides.{spec.override_key} needs 0 < base < 65536 "
                    "and increment >= 1."
                )
            spec = replace(spec, base=base, increment=increment)
        layout.append(spec)
    return tuple(layout)


def reservations_from_attributes(
    owner: str,
    attributes: Mapping[str, str],
) -> tuple[PortReservation, ...]:
    """Reconstruct reservations from ``*_PORT`` keys of an attributes mapping."""
    reservations: list[PortReservation] = []
    for key, value in attributes.items():
        if not (key.endswith("_PORT") or "_PORT_" in key):
            continue
        try:
            port = int(str(value).strip())
        except ValueError:
            continue
        if not 0 < port < 65536:
            continue
        for protocol in _PROTOCOLS_BY_PURPOSE.get(key, ("tcp",)):
            reservations.append(
                PortReservation(port=port, protocol=protocol, owner=owner, purpose=key)
            )
    return tuple(reservations)


def reservations_to_attributes(reservations: Iterable[PortReservation]) -> dict[str, str]:
    """Return ``{purpose: port}`` suitable for an attributes file."""
    values: dict[str, str] = {}
    for reservation in reservations:
        values.setdefault(reservation.purpose, str(reservation.port))
    return values


class ReservationSource(Protocol):
    """Anything able to list persisted port reservations."""

    def reserved_ports(self) -> list[PortReservation]:
        """Return every persisted reservation."""
        ...


class PublishedPortSource(Protocol):
    """Anything able to list host ports published by containers."""

    def published_ports(self) -> set[int]:
        """Return host ports bound by containers."""
        ...


def scan_host_ports() -> set[int]:
    """Return local ports with a listening TCP socket or a bound UDP socket."""
    used: set[int] = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied as exc:
        LOGGER.warning("Host socket scan denied (%s); relying on bind probes only.", exc)
        return used
    for conn in connections:
        if not conn.laddr:
            continue
        if conn.status == psutil.CONN_LISTEN or conn.type == socket.SOCK_DGRAM:
            used.add(conn.laddr.port)
    return used


def can_bind(port: int, protocol: str = "tcp") -> bool:
    """Return whether *port* can currently be bound on all interfaces."""
    kind = socket.SOCK_DGRAM if protocol == "udp" else socket.SOCK_STREAM
    with socket.socket(socket.AF_INET, kind) as probe:
        probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(("0.0.0.0", port))  # noqa: S104 - probing, never listening
        except OSError:
            return False
    return True


@dataclass(slots=True)
class PortAllocator:
    """Find host ports that no instance, process or container is using."""

    registry: ReservationSource
    runtime: PublishedPortSource | None = None
    attempts: int = DEFAULT_ATTEMPTS
    probe_bind: bool = True
    host_scanner: Callable[[], set[int]] = field(default=scan_host_ports)
    bind_checker: Callable[[int, str], bool] = field(default=can_bind)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.attempts < 1:
            raise ValueError("Port probe attempts must be at least 1.")

    def reservations(self) -> list[PortReservation]:
        """Return persisted reservations sorted by port."""
        return sorted(
            self.registry.reserved_ports(),
            key=lambda item: (item.port, item.protocol, item.owner),
        )

    def used_ports(self) -> set[int]:
        """Return the union of every used-port source."""
        used = {reservation.port for reservation in self.registry.reserved_ports()}
        used |= self.host_scanner()
        if self.runtime is not None:
            used |= self.runtime.published_ports()
        return used

    def find_port(
        self,
        base: int,
        increment: int,
        exclusion: Iterable[int] = (),
        *,
        span: Sequence[int] = (),
        protocols: Sequence[str] = ("tcp",),
        purpose: str = "port",
    ) -> int:
        """Return the first free port in ``base + k * increment`` for k < attempts."""
        used = self.used_ports() | set(exclusion)
        return self._probe(base, increment, used, span=span, protocols=protocols, purpose=purpose)

    def allocate(self, owner: str, layout: Sequence[PortSpec]) -> tuple[PortReservation, ...]:
        """Allocate every port in *layout* for *owner* without reusing its own picks."""
        used = self.used_ports()
        reservations: list[PortReservation] = []
        for spec in layout:
            port = self._probe(
                spec.base,
                spec.increment,
                used,
                span=spec.offsets,
                protocols=spec.protocols,
                purpose=spec.purpose,
            )
            used.add(port)
            for protocol in spec.protocols:
                reservations.append(PortReservation(port, protocol, owner, spec.purpose))
            for companion in spec.companions:
                companion_port = port + companion.offset
                used.add(companion_port)
                for protocol in companion.protocols:
                    reservations.append(
                        PortReservation(companion_port, protocol, owner, companion.purpose)
                    )
            LOGGER.debug("Allocated %s=%s for %s", spec.purpose, port, owner)
        return tuple(reservations)

    def _probe(
        self,
        base: int,
        increment: int,
        used: set[int],
        *,
        span: Sequence[int],
        protocols: Sequence[str],
        purpose: str,
    ) -> int:
        if increment < 1:
            raise ValueError("Port increment must be at least 1.")
        for attempt in range(self.attempts):
            candidate = base + attempt * increment
            group = [candidate, *(candidate + offset for offset in span)]
            if any(port > 65535 for port in group):
                break
            if any(port in used for port in group):
                continue
            if self.probe_bind and not all(
                self.bind_checker(port, protocol) for port in group for protocol in protocols
            ):
                continue
            return candidate
        raise AllocationFailed(purpose, base, increment, self.attempts)


__all__ = [
    "DEFAULT_LAYOUT",
    "PortAllocator",
    "PortCompanion",
    "PortSpec",
    "build_layout",
    "can_bind",
    "reservations_from_attributes",
    "reservations_to_attributes",
    "scan_host_ports",
]
