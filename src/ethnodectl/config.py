"""Configuration loader for ethnodectl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/ethnodectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ETHNODECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ETHNODECTL_PORTS__ATTEMPTS=80
    export ETHNODECTL_NETWORK__NAME=validator-net

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses`` which are handed explicitly to every component.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "ETHNODECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9-]{0,30}$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortOverride:
    """Replacement base/increment for one port purpose."""

    base: int | None = None
    increment: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "increment": self.increment}


@dataclass(frozen=True)
class PortsConfig:
    """Port probing behaviour."""

    attempts: int = 50
    probe_bind: bool = True
    overrides: Mapping[str, PortOverride] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "probe_bind": self.probe_bind,
            "overrides": {key: value.to_dict() for key, value in self.overrides.items()},
        }


@dataclass(frozen=True)
class NetworkConfig:
    """Shared container network settings."""

    name: str = "validator-net"
    settle_delay: float = 2.0
    config_file: str = "compose.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "settle_delay": self.settle_delay,
            "config_file": self.config_file,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime integration values."""

    docker_bin: str = "docker"
    stop_timeout: int = 30
    escalation_command: tuple[str, ...] = ("sudo", "-n")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "stop_timeout": self.stop_timeout,
            "escalation_command": list(self.escalation_command),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ethnodectl."""

    config_file: Path
    instance_root: Path
    staging_dir: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    instance_prefix: str
    auxiliary_services: tuple[str, ...]
    ports: PortsConfig
    network: NetworkConfig
    docker: DockerConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instance_root": str(self.instance_root),
            "staging_dir": str(self.staging_dir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "instance_prefix": self.instance_prefix,
            "auxiliary_services": list(self.auxiliary_services),
            "ports": self.ports.to_dict(),
            "network": self.network.to_dict(),
            "docker": self.docker.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/ethnodectl/config.yml",
    "instance_root": "~",
    "staging_dir": None,  # derived from instance_root when absent
    "state_dir": "~/.local/state/ethnodectl",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "templates_dir": "~/.config/ethnodectl/templates",
    "lock_timeout": 30.0,
    "instance_prefix": "ethnode",
    "auxiliary_services": ["monitoring", "vero", "teku-validator", "web3signer"],
    "ports": {
        "attempts": 50,
        "probe_bind": True,
        "overrides": {},
    },
    "network": {
        "name": "validator-net",
        "settle_delay": 2.0,
        "config_file": "compose.yml",
    },
    "docker": {
        "docker_bin": "docker",
        "stop_timeout": 30,
        "escalation_command": ["sudo", "-n"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"attempts", "probe_bind", "overrides"},
    "network": {"name", "settle_delay", "config_file"},
    "docker": {"docker_bin", "stop_timeout", "escalation_command"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        unknown = set(_as_dict(value, section).keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    overrides = _as_dict(_as_dict(raw.get("ports"), "ports").get("overrides"), "ports.overrides")
    for purpose, entry in overrides.items():
        unknown = set(_as_dict(entry, f"ports.overrides.{purpose}").keys()) - {
            "base",
            "increment",
        }
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for ports.overrides.{purpose}: {joined}.")

    prefix = raw.get("instance_prefix")
    if prefix is not None and not _PREFIX_RE.match(str(prefix)):
        raise ConfigError(
            f"instance_prefix must be lowercase letters, digits or '-'. Got {prefix!r}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instance_root = _to_path(raw.get("instance_root"))
    state_dir = _to_path(raw.get("state_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    staging_value = raw.get("staging_dir")
    staging_dir = (
        _to_path(staging_value) if staging_value else instance_root / ".ethnodectl-staging"
    )
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    runtime_value = raw.get("runtime_dir")
    runtime_dir = _to_path(runtime_value) if runtime_value else state_dir / "run"

    lock_timeout = _expect_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    if lock_timeout <= 0:
        raise ConfigError(f"lock_timeout must be greater than zero. Got {lock_timeout}.")

    auxiliary = tuple(
        str(item) for item in _as_sequence(raw.get("auxiliary_services", []), "auxiliary_services")
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    attempts = _expect_int(ports_mapping.get("attempts"), "ports.attempts", default=50)
    if attempts < 1:
        raise ConfigError("ports.attempts must be at least 1.")
    port_overrides: dict[str, PortOverride] = {}
    for purpose, entry in _as_dict(ports_mapping.get("overrides"), "ports.overrides").items():
        entry_map = _as_dict(entry, f"ports.overrides.{purpose}")
        base_value = entry_map.get("base")
        increment_value = entry_map.get("increment")
        port_overrides[purpose.lower()] = PortOverride(
            base=(
                _expect_int(base_value, f"ports.overrides.{purpose}.base", default=0)
                if base_value is not None
                else None
            ),
            increment=(
                _expect_int(increment_value, f"ports.overrides.{purpose}.increment", default=1)
                if increment_value is not None
                else None
            ),
        )
    ports = PortsConfig(
        attempts=attempts,
        probe_bind=bool(ports_mapping.get("probe_bind", True)),
        overrides=port_overrides,
    )

    network_mapping = _as_dict(raw.get("network"), "network")
    network_name = str(network_mapping.get("name", "validator-net")).strip()
    if not network_name:
        raise ConfigError("network.name must be a non-empty string.")
    settle_delay = _expect_float(
        network_mapping.get("settle_delay"), "network.settle_delay", default=2.0
    )
    if settle_delay < 0:
        raise ConfigError("network.settle_delay must be non-negative.")
    network = NetworkConfig(
        name=network_name,
        settle_delay=settle_delay,
        config_file=str(network_mapping.get("config_file", "compose.yml")),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    escalation = tuple(
        str(item)
        for item in _as_sequence(
            docker_mapping.get("escalation_command", []), "docker.escalation_command"
        )
    )
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        stop_timeout=_expect_int(
            docker_mapping.get("stop_timeout"), "docker.stop_timeout", default=30
        ),
        escalation_command=escalation,
    )

    return AppConfig(
        config_file=config_file,
        instance_root=instance_root,
        staging_dir=staging_dir,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        instance_prefix=str(raw.get("instance_prefix", "ethnode")),
        auxiliary_services=auxiliary,
        ports=ports,
        network=network,
        docker=docker,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current = tree
    for segment in path[:-1]:
        child = current.setdefault(segment, {})
        if not isinstance(child, MutableMapping):
            key = ENV_PREFIX + "__".join(path).upper()
            raise ConfigError(f"{key} conflicts with a scalar value.")
        current = cast(MutableMapping[str, object], child)
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DockerConfig",
    "NetworkConfig",
    "PortOverride",
    "PortsConfig",
    "load_config",
]
