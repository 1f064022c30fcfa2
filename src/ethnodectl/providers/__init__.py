"""Provider interfaces for ethnodectl."""
from __future__ import annotations

from .docker import COMPOSE_PROJECT_LABEL, DockerRuntime, expand_host_port

__all__ = [
    "COMPOSE_PROJECT_LABEL",
    "DockerRuntime",
    "expand_host_port",
]
