from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Union


GENESIS_PREV_HASH = "0" * 64
HASH_HEX_LENGTH = 64


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _strict_int(value: Any, field_name: str) -> int:
    # bool is an int subclass; a block with "index": true is malformed.
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"Block field '{field_name}' must be an integer")
    return value


@dataclass(frozen=True)
class Block:
    index: int
    timestamp: int
    payload: Any
    prev_hash: str
    nonce: int
    difficulty: int
    hash: str

    def hash_fields(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "prevHash": self.prev_hash,
            "nonce": self.nonce,
            "difficulty": self.difficulty,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.hash_fields()
        data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        """Parse an untrusted Block-shaped record received from a peer or from disk.

        Only the shape is checked here. Whether the block is consistent with
        its own hash or with a parent is the validator's job.
        """
        if not isinstance(data, dict):
            raise TypeError("Block record must be a JSON object")
        if "payload" in data:
            payload = data["payload"]
        elif "data" in data:
            payload = data["data"]
        else:
            raise KeyError("payload")

        prev_hash = data["prevHash"]
        block_hash = data["hash"]
        if not isinstance(prev_hash, str) or not isinstance(block_hash, str):
            raise TypeError("Block fields 'prevHash' and 'hash' must be strings")

        return cls(
            index=_strict_int(data["index"], "index"),
            timestamp=_strict_int(data["timestamp"], "timestamp"),
            payload=payload,
            prev_hash=prev_hash,
            nonce=_strict_int(data["nonce"], "nonce"),
            difficulty=_strict_int(data["difficulty"], "difficulty"),
            hash=block_hash,
        )


@dataclass(frozen=True)
class ByIndex:
    index: int


@dataclass(frozen=True)
class ByHash:
    hash: str


BlockKey = Union[ByIndex, ByHash]


def parse_block_key(text: str) -> BlockKey:
    raw = text.strip()
    if not raw:
        raise ValueError("Block key must not be empty")
    # A full-length digest is a hash even when every hex digit happens to be 0-9.
    if len(raw) == HASH_HEX_LENGTH:
        return ByHash(raw.lower())
    if raw.isascii() and raw.isdigit():
        return ByIndex(int(raw))
    return ByHash(raw.lower())


def blocks_from_dicts(rows: Any) -> list[Block]:
    if not isinstance(rows, list):
        raise TypeError("Chain must be a JSON array of blocks")
    return [Block.from_dict(item) for item in rows]


def blocks_to_dicts(blocks: list[Block]) -> list[dict[str, Any]]:
    return [block.to_dict() for block in blocks]
