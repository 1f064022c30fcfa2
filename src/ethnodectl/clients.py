"""Catalog of interchangeable node components."""
from __future__ import annotations

from dataclasses import dataclass

from .errors import EthnodectlError


class UnknownClientError(EthnodectlError):
    """Raised when a client or network name is not in the catalog."""


@dataclass(frozen=True, slots=True)
class ClientSpec:
    """One execution or consensus client implementation."""

    name: str
    role: str
    image: str
    metrics_port: int

    @property
    def compose_file(self) -> str:
        """Return the compose fragment rendered for this client."""
        if self.role == "consensus":
            return f"{self.name}-cl-only.yml"
        return f"{self.name}.yml"


EXECUTION_CLIENTS: dict[str, ClientSpec] = {
    "reth": ClientSpec("reth", "execution", "ghcr.io/paradigmxyz/reth", 9001),
    "besu": ClientSpec("besu", "execution", "hyperledger/besu", 6060),
    "nethermind": ClientSpec("nethermind", "execution", "nethermind/nethermind", 6060),
}

CONSENSUS_CLIENTS: dict[str, ClientSpec] = {
    "lodestar": ClientSpec("lodestar", "consensus", "chainsafe/lodestar", 8008),
    "teku": ClientSpec("teku", "consensus", "consensys/teku", 8008),
    "grandine": ClientSpec("grandine", "consensus", "sifrai/grandine", 8008),
    "lighthouse": ClientSpec("lighthouse", "consensus", "sigp/lighthouse", 8008),
}

CHECKPOINT_SYNC_URLS: dict[str, str] = {
    "hoodi": "https://hoodi.checkpoint.sigp.io",
    "mainnet": "https://mainnet.checkpoint.sigp.io",
}

MEVBOOST_IMAGE = "flashbots/mev-boost"
BEACON_API_PORT = 5052


def execution_client(name: str) -> ClientSpec:
    """Return the execution client called *name*."""
    try:
        return EXECUTION_CLIENTS[name.strip().lower()]
    except KeyError:
        allowed = ", ".join(sorted(EXECUTION_CLIENTS))
        raise UnknownClientError(
            f"Unknown execution client '{name}'. Allowed: {allowed}."
        ) from None


def consensus_client(name: str) -> ClientSpec:
    """Return the consensus client called *name*."""
    try:
        return CONSENSUS_CLIENTS[name.strip().lower()]
    except KeyError:
        allowed = ", ".join(sorted(CONSENSUS_CLIENTS))
        raise UnknownClientError(
            f"Unknown consensus client '{name}'. Allowed: {allowed}."
        ) from None


def checkpoint_sync_url(network: str) -> str:
    """Return the checkpoint sync endpoint for an Ethereum network."""
    try:
        return CHECKPOINT_SYNC_URLS[network.strip().lower()]
    except KeyError:
        allowed = ", ".join(sorted(CHECKPOINT_SYNC_URLS))
        raise UnknownClientError(f"Unknown network '{network}'. Allowed: {allowed}.") from None


def beacon_url(instance: str, consensus: str) -> str:
    """Return the beacon API URL reachable on the shared network."""
    return f"http://{instance}-{consensus}:{BEACON_API_PORT}"


__all__ = [
    "BEACON_API_PORT",
    "CONSENSUS_CLIENTS",
    "ClientSpec",
    "EXECUTION_CLIENTS",
    "MEVBOOST_IMAGE",
    "UnknownClientError",
    "beacon_url",
    "checkpoint_sync_url",
    "consensus_client",
    "execution_client",
]
