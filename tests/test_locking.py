"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from ethnodectl.locking import LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "ethnode1.lock"
    with manager.instance_lock("ethnode1") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("ethnode1", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("ethnode1"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("ethnode1", timeout=0.1):
                pass


def test_global_lock_serialises_mutations(tmp_path: Path) -> None:
    """A held global lock blocks any instance mutation."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_instances(["ethnode2"], timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["ethnode2", "ethnode1", "ethnode2"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "ethnodectl.lock",
            "ethnode1.lock",
            "ethnode2.lock",
        ]


def test_mutate_instances_without_global(tmp_path: Path) -> None:
    """The global lock can be skipped for read-mostly operations."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["ethnode1"], include_global=False) as bundle:
        assert [handle.path.name for handle in bundle.handles] == ["ethnode1.lock"]
    assert not (tmp_path / "run" / "ethnodectl.lock").exists()
