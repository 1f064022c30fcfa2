"""Structured reading and writing of ``KEY=value`` environment documents.

Instances and auxiliary services keep their settings in ``.env`` files that
``docker compose`` also consumes. Updates go through :class:`EnvDocument` so a
file is always parsed into a record, modified, and serialised wholesale.
Comments and unknown keys survive a round trip.
"""
from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .templates import write_atomic

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NEEDS_QUOTES = re.compile(r"[\s#'\"]")


class EnvFileError(RuntimeError):
    """Raised when an environment document cannot be parsed or written."""


@dataclass(slots=True)
class _Line:
    key: str | None
    value: str = ""
    raw: str = ""


@dataclass(slots=True)
class EnvDocument:
    """An ordered ``KEY=value`` document."""

    lines: list[_Line] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> EnvDocument:
        """Parse *text*; comment and blank lines are preserved verbatim."""
        document = cls()
        for raw in text.splitlines():
            stripped = raw.strip()
            if not stripped or stripped.startswith("#"):
                document.lines.append(_Line(key=None, raw=raw))
                continue
            if stripped.startswith("export "):
                stripped = stripped[len("export ") :].lstrip()
            key, sep, value = stripped.partition("=")
            key = key.strip()
            if not sep or not _KEY_RE.match(key):
                document.lines.append(_Line(key=None, raw=raw))
                continue
            document.lines.append(_Line(key=key, value=_unquote(value.strip())))
        return document

    @classmethod
    def load(cls, path: Path) -> EnvDocument:
        """Read *path*, returning an empty document when it does not exist."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        except OSError as exc:
            raise EnvFileError(f"Failed to read {path}: {exc}") from exc
        return cls.parse(text)

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the last value assigned to *key*."""
        for line in reversed(self.lines):
            if line.key == key:
                return line.value
        return default

    def __contains__(self, key: object) -> bool:
        """Return whether *key* is assigned."""
        return any(line.key == key for line in self.lines)

    def __iter__(self) -> Iterator[str]:
        """Iterate assigned keys in document order."""
        seen: set[str] = set()
        for line in self.lines:
            if line.key is not None and line.key not in seen:
                seen.add(line.key)
                yield line.key

    def set(self, key: str, value: object) -> None:
        """Assign *value* to *key*, replacing any earlier assignments in place."""
        if not _KEY_RE.match(key):
            raise EnvFileError(f"Invalid environment key {key!r}.")
        text = "" if value is None else str(value)
        if "\n" in text:
            raise EnvFileError(f"Value for {key} must not contain newlines.")
        replaced = False
        kept: list[_Line] = []
        for line in self.lines:
            if line.key == key:
                if replaced:
                    continue
                line.value = text
                replaced = True
            kept.append(line)
        if not replaced:
            kept.append(_Line(key=key, value=text))
        self.lines = kept

    def update(self, values: Mapping[str, object]) -> None:
        """Assign every item of *values*."""
        for key, value in values.items():
            self.set(key, value)

    def remove(self, key: str) -> bool:
        """Drop *key*; return whether it was present."""
        before = len(self.lines)
        self.lines = [line for line in self.lines if line.key != key]
        return len(self.lines) != before

    def to_dict(self) -> dict[str, str]:
        """Return the assigned keys and values."""
        return {key: self.get(key) or "" for key in self}

    def render(self) -> str:
        """Serialise the whole document."""
        output: list[str] = []
        for line in self.lines:
            if line.key is None:
                output.append(line.raw)
            else:
                output.append(f"{line.key}={_quote(line.value)}")
        return "\n".join(output) + "\n" if output else ""

    def save(self, path: Path, *, mode: int = 0o644) -> bool:
        """Write the document atomically; return whether the file changed."""
        try:
            return write_atomic(path, self.render(), mode=mode)
        except OSError as exc:
            raise EnvFileError(f"Failed to write {path}: {exc}") from exc


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"')
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    return value


def _quote(value: str) -> str:
    if value and _NEEDS_QUOTES.search(value):
        escaped = value.replace('"', '\\"')
        return f'"{escaped}"'
    return value


__all__ = ["EnvDocument", "EnvFileError"]
