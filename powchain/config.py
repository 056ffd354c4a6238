from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _genesis_payload() -> dict[str, Any]:
    return {"type": "GENESIS", "note": "Decentralized genesis"}


@dataclass(frozen=True)
class NodeConfig:
    # Difficulty is the count of leading "0" hex characters in a block hash.
    default_difficulty: int = 3
    # Genesis template is fixed so that independent nodes share one genesis block.
    genesis_difficulty: int = 1
    genesis_timestamp: int = 1_700_000_000_000
    genesis_payload: dict[str, Any] = field(default_factory=_genesis_payload)
    # Refuse replacement chains that were grown from a different genesis.
    pin_genesis: bool = True
    # Upper bound for difficulty requested over the network surface.
    max_difficulty: int = 16
    request_timeout: float = 5.0
    broadcast_workers: int = 8
    resolve_workers: int = 8
    max_request_body_bytes: int = 1_000_000
    max_peer_count: int = 128


CONFIG = NodeConfig()
