"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ethnodectl.templates import TemplateEngine, TemplateRenderError, write_atomic


def _compose_context(execution: str = "reth", consensus: str = "teku") -> dict[str, object]:
    return {
        "node_name": "ethnode1",
        "shared_network": "validator-net",
        "eth_network": "hoodi",
        "mevboost": True,
        "mevboost_image": "flashbots/mev-boost",
        "execution": {
            "name": execution,
            "image": f"example/{execution}",
            "version": "latest",
            "metrics_port": 9001,
        },
        "consensus": {
            "name": consensus,
            "image": f"example/{consensus}",
            "version": "latest",
            "metrics_port": 8008,
        },
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in compose templates render into valid YAML."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("compose/base.yml.j2", _compose_context())
    parsed = yaml.safe_load(output)

    assert parsed["name"] == "ethnode1"
    assert parsed["networks"]["validator-net"] == {"external": True}
    assert parsed["networks"]["default"] == {"name": "ethnode1-net"}


@pytest.mark.parametrize("execution", ["reth", "besu", "nethermind"])
def test_execution_template_joins_shared_network(execution: str) -> None:
    """Every execution client is attached to the shared validator network."""
    engine = TemplateEngine.with_overrides(None)

    parsed = yaml.safe_load(
        engine.render_to_string("compose/execution.yml.j2", _compose_context(execution))
    )

    service = parsed["services"]["execution"]
    assert service["container_name"] == f"ethnode1-{execution}"
    assert "validator-net" in service["networks"]
    assert "${HOST_IP}:${EL_RPC_PORT}:8545/tcp" in service["ports"]


def test_missing_variable_raises() -> None:
    """Strict undefined turns a missing variable into a render error."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError):
        engine.render_to_string("compose/base.yml.j2", {"node_name": "ethnode1"})


def test_rendered_output_writes_atomically_with_mode(tmp_path: Path) -> None:
    """Rendered output is written with the requested mode and only when it changed."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "compose.yml"
    rendered = engine.render_to_string("compose/base.yml.j2", _compose_context())

    changed = write_atomic(destination, rendered, mode=0o600)

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Writing identical content is a no-op.
    changed_again = write_atomic(destination, rendered, mode=0o600)
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "compose" / "base.yml.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text("override {{ node_name }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string("compose/base.yml.j2", _compose_context())

    assert rendered == "override ethnode1"


def test_write_atomic_leaves_no_temporary_files(tmp_path: Path) -> None:
    """Atomic writes replace the target and clean up after themselves."""
    target = tmp_path / "nested" / "prometheus.yml"

    assert write_atomic(target, "a: 1\n", mode=0o644) is True
    assert write_atomic(target, "a: 1\n", mode=0o644) is False
    assert write_atomic(target, "a: 2\n", mode=0o644) is True

    assert target.read_text(encoding="utf-8") == "a: 2\n"
    assert sorted(path.name for path in target.parent.iterdir()) == ["prometheus.yml"]
