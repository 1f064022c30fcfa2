"""State helpers for ethnodectl."""
from __future__ import annotations

from .registry import (
    ATTRIBUTES_FILE,
    MARKER_KEY,
    RegistryError,
    ServiceRegistry,
    instance_attributes,
    instance_from_attributes,
)

__all__ = [
    "ATTRIBUTES_FILE",
    "MARKER_KEY",
    "RegistryError",
    "ServiceRegistry",
    "instance_attributes",
    "instance_from_attributes",
]
