"""Structured operation logging for ethnodectl.

Every CLI operation produces one JSON line in ``operations.jsonl`` together
with a short human readable line in ``ethnodectl.log``. Logging never breaks an
operation: when the log directory cannot be created or written the logger
disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_OPERATIONS_FILE = "operations.jsonl"
_HUMAN_FILE = "ethnodectl.log"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the final result of a single operation."""

    name: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=_timestamp)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None
    _started: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "ok", detail: object = None) -> None:
        """Record an intermediate step."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _timestamp()}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = {
            "status": "success",
            "message": message,
            "changed": changed,
            "rc": 0,
            "context": _sanitize(dict(context or {})),
        }

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[object] = (),
        errors: Sequence[object] = (),
        changed: int = 0,
        backups: Sequence[object] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "changed": changed,
            "rc": 0,
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "backups": [str(item) for item in backups],
            "context": _sanitize(dict(context or {})),
        }

    def error(
        self,
        message: str,
        *,
        errors: Sequence[object] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = {
            "status": "error",
            "message": message,
            "rc": rc,
            "errors": [str(item) for item in (errors or [message])],
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        return {
            "id": self.op_id,
            "operation": self.name,
            "started_at": self.started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to the ethnodectl log directory."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / _OPERATIONS_FILE
        self._human_log_path = self._log_dir / _HUMAN_FILE
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Disabling structured logging; cannot create %s: %s", log_dir, exc)
            self._enabled = False

    @property
    def log_dir(self) -> Path:
        """Return the directory receiving log files."""
        return self._log_dir

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(name=name, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.", changed=0)
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"] if isinstance(record["result"], Mapping) else {}
        human = (
            f"{record['finished_at']} {scope.name} [{result.get('status', 'unknown')}] "
            f"{result.get('message', '')}\n"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human)
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            LOGGER.warning("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
