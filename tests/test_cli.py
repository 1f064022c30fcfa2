"""Tests for the ethnodectl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from ethnodectl import __version__, cli
from ethnodectl.cli import app
from ethnodectl.config import AppConfig
from ethnodectl.errors import RuntimeCommandError, RuntimeUnavailable
from ethnodectl.exit_codes import ExitCode

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _flatten(output: str) -> str:
    return " ".join(output.split())


def _read_operations(state_dir: Path) -> list[dict[str, object]]:
    path = state_dir / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def cli_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, recording_runtime
) -> dict[str, str]:
    """Point the CLI at a temporary config tree and an in-memory runtime."""
    config_path = tmp_path / "config.yml"
    (tmp_path / "nodes").mkdir()
    config_path.write_text(
        yaml.safe_dump(
            {
                "instance_root": str(tmp_path / "nodes"),
                "state_dir": str(tmp_path / "state"),
                "templates_dir": str(tmp_path / "templates"),
                "lock_timeout": 2,
                "ports": {"probe_bind": False},
                "network": {"settle_delay": 0},
                "docker": {"escalation_command": []},
            }
        ),
        encoding="utf-8",
    )

    def fake_runtime(config: AppConfig) -> object:
        return recording_runtime

    monkeypatch.setattr(cli, "_create_docker_runtime", fake_runtime)
    return {"ETHNODECTL_CONFIG_FILE": str(config_path)}


def test_version_flag(cli_env: dict[str, str]) -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"], env=cli_env)

    assert result.exit_code == 0
    assert f"ethnodectl {__version__}" in result.stdout


def test_config_show_json(cli_env: dict[str, str], tmp_path: Path) -> None:
    """The effective configuration reflects the YAML file."""
    result = runner.invoke(app, ["config", "show", "--json"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["instance_root"] == str(tmp_path / "nodes")
    assert payload["lock_timeout"] == 2.0
    assert payload["network"]["name"] == "validator-net"


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors are reported before any command runs."""
    config_path = tmp_path / "config.yml"
    config_path.write_text("bogus: true\n", encoding="utf-8")

    result = runner.invoke(
        app, ["instance", "list"], env={"ETHNODECTL_CONFIG_FILE": str(config_path)}
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown configuration keys" in result.stdout


def test_install_list_show_and_remove(
    cli_env: dict[str, str], tmp_path: Path, recording_runtime
) -> None:
    """A full lifecycle through the CLI leaves nothing behind."""
    installed = runner.invoke(
        app,
        ["instance", "install", "--execution", "besu", "--consensus", "lighthouse"],
        env=cli_env,
    )
    assert installed.exit_code == 0, installed.stdout
    assert "Instance 'ethnode1' installed (active)." in installed.stdout
    assert (tmp_path / "nodes" / "ethnode1" / ".env").exists()

    listed = runner.invoke(app, ["instance", "list", "--json"], env=cli_env)
    assert listed.exit_code == 0, listed.stdout
    instances = _extract_json(listed.stdout)["instances"]
    assert [item["name"] for item in instances] == ["ethnode1"]
    assert instances[0]["execution"] == {"client": "besu", "version": "latest"}

    shown = runner.invoke(app, ["instance", "show", "ethnode1", "--json"], env=cli_env)
    assert shown.exit_code == 0, shown.stdout
    details = _extract_json(shown.stdout)
    assert details["status"] == "active"
    assert details["runtime"] == "running"

    ports = runner.invoke(app, ["ports", "list", "--json"], env=cli_env)
    assert ports.exit_code == 0, ports.stdout
    owners = {item["owner"] for item in _extract_json(ports.stdout)["ports"]}
    assert owners == {"ethnode1"}

    removed = runner.invoke(app, ["instance", "remove", "ethnode1"], env=cli_env)
    assert removed.exit_code == 0, removed.stdout
    assert "Instance 'ethnode1' removed." in removed.stdout
    assert not (tmp_path / "nodes" / "ethnode1").exists()
    assert recording_runtime.network is False

    again = runner.invoke(app, ["instance", "remove", "ethnode1"], env=cli_env)
    assert again.exit_code == 0
    assert "nothing to remove" in again.stdout

    operations = _read_operations(tmp_path / "state")
    names = [record["operation"] for record in operations]
    assert "instance install" in names
    install_record = operations[names.index("instance install")]
    assert install_record["result"]["status"] == "success"
    assert install_record["target"]["name"] == "ethnode1"
    assert any(step["name"] == "materialize" for step in install_record["steps"])


def test_install_unknown_client_is_validation_error(
    cli_env: dict[str, str], tmp_path: Path
) -> None:
    """Unknown clients fail fast with the validation exit code."""
    result = runner.invoke(
        app, ["instance", "install", "ethnode1", "--execution", "geth"], env=cli_env
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown execution client" in _flatten(result.stdout)
    assert not (tmp_path / "nodes" / "ethnode1").exists()
    record = _read_operations(tmp_path / "state")[-1]
    assert record["result"]["status"] == "error"


def test_install_start_failure_is_reported_as_warning(
    cli_env: dict[str, str], recording_runtime
) -> None:
    """A degraded install exits successfully but surfaces the warning."""
    recording_runtime.up_error = RuntimeCommandError("image not found")

    result = runner.invoke(app, ["instance", "install"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "installed (failed)" in result.stdout
    assert "image not found" in _flatten(result.stdout)


def test_show_missing_instance(cli_env: dict[str, str]) -> None:
    """Showing an unknown instance is a validation error."""
    result = runner.invoke(app, ["instance", "show", "ethnode9"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION


def test_start_stop_commands(cli_env: dict[str, str], recording_runtime) -> None:
    """Start and stop delegate to compose and update the status."""
    runner.invoke(app, ["instance", "install", "ethnode1", "--no-start"], env=cli_env)

    started = runner.invoke(app, ["instance", "start", "ethnode1"], env=cli_env)
    stopped = runner.invoke(app, ["instance", "stop", "ethnode1"], env=cli_env)

    assert started.exit_code == 0, started.stdout
    assert stopped.exit_code == 0, stopped.stdout
    assert ("up", "ethnode1") in recording_runtime.calls
    assert ("stop", "ethnode1") in recording_runtime.calls


def test_network_status_and_prune(cli_env: dict[str, str], recording_runtime) -> None:
    """Network status reports consumers and prune keeps a used network."""
    runner.invoke(app, ["instance", "install", "ethnode1", "--no-start"], env=cli_env)

    status = runner.invoke(app, ["network", "status", "--json"], env=cli_env)
    assert status.exit_code == 0, status.stdout
    assert _extract_json(status.stdout)["consumers"] == ["ethnode1"]

    pruned = runner.invoke(app, ["network", "prune"], env=cli_env)
    assert pruned.exit_code == 0, pruned.stdout
    assert "kept; used by ethnode1" in pruned.stdout
    assert recording_runtime.network is True


def test_sync_command_reports_artifacts(cli_env: dict[str, str], tmp_path: Path) -> None:
    """``sync`` regenerates configuration for installed auxiliary services."""
    runner.invoke(app, ["instance", "install", "ethnode1", "--no-start"], env=cli_env)
    (tmp_path / "nodes" / "vero").mkdir()

    result = runner.invoke(app, ["sync"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "Synchronised 1 artifact(s), 1 changed." in result.stdout
    assert "ethnode1-teku:5052" in (tmp_path / "nodes" / "vero" / ".env").read_text()


def test_incomplete_lists_leftovers(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Leftover directories are listed with a reclaim hint."""
    (tmp_path / "nodes" / "ethnode4").mkdir()

    result = runner.invoke(app, ["instance", "incomplete"], env=cli_env)

    assert result.exit_code == 0
    assert "instance remove ethnode4" in _flatten(result.stdout)


def test_update_command_recreates_with_new_versions(
    cli_env: dict[str, str], tmp_path: Path, recording_runtime
) -> None:
    """``instance update`` rewrites the tags and force-recreates the project."""
    runner.invoke(app, ["instance", "install", "ethnode1"], env=cli_env)

    result = runner.invoke(
        app,
        ["instance", "update", "ethnode1", "--execution-version", "v1.4.0"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Instance 'ethnode1' updated (active)." in result.stdout
    assert recording_runtime.calls[-1] == ("recreate", "ethnode1")
    env_text = (tmp_path / "nodes" / "ethnode1" / ".env").read_text(encoding="utf-8")
    assert "EXECUTION_VERSION=v1.4.0" in env_text
    record = _read_operations(tmp_path / "state")[-1]
    assert record["operation"] == "instance update"
    assert record["result"]["status"] == "success"

    empty = runner.invoke(app, ["instance", "update", "ethnode1"], env=cli_env)
    assert empty.exit_code == ExitCode.VALIDATION
    missing = runner.invoke(
        app, ["instance", "update", "ethnode7", "--consensus-version", "v2"], env=cli_env
    )
    assert missing.exit_code == ExitCode.VALIDATION


def test_install_without_daemon_shows_remediation(
    cli_env: dict[str, str], recording_runtime, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Daemon outages during install exit with the provider code and a hint."""

    def unreachable(name: str) -> None:
        raise RuntimeUnavailable("Cannot connect to the Docker daemon")

    monkeypatch.setattr(recording_runtime, "create_network", unreachable)

    result = runner.invoke(app, ["instance", "install", "ethnode1"], env=cli_env)

    assert result.exit_code == ExitCode.PROVIDER
    output = _flatten(result.stdout)
    assert "Install failed during network" in output
    assert "Ensure the Docker daemon is running" in output
