"""Jinja2 rendering for compose files and generated monitoring config."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be rendered."""


class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("ethnodectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders YAML, never HTML
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self._environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {template_name}: {exc}") from exc


def write_atomic(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Replace *destination* with *content* in one rename; skip identical content."""
    if destination.exists():
        try:
            if destination.read_text(encoding="utf-8") == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    os.chmod(destination, mode)
                return False
        except UnicodeDecodeError:
            pass
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "TemplateRenderError", "write_atomic"]
