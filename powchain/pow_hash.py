from __future__ import annotations

import time
from typing import Any, Callable

from .config import CONFIG, NodeConfig
from .models import GENESIS_PREV_HASH, Block, canonical_json, sha256_hex


class MiningInterruptedError(Exception):
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


def compute_hash(
    index: int,
    timestamp: int,
    payload: Any,
    prev_hash: str,
    nonce: int,
    difficulty: int,
) -> str:
    fields = {
        "index": index,
        "timestamp": timestamp,
        "payload": payload,
        "prevHash": prev_hash,
        "nonce": nonce,
        "difficulty": difficulty,
    }
    return sha256_hex(canonical_json(fields).encode("utf-8"))


def block_digest(block: Block) -> str:
    return compute_hash(
        block.index,
        block.timestamp,
        block.payload,
        block.prev_hash,
        block.nonce,
        block.difficulty,
    )


def meets_difficulty(block_hash: str, difficulty: int) -> bool:
    if difficulty <= 0:
        return True
    return block_hash.startswith("0" * difficulty)


def check_difficulty(difficulty: Any, minimum: int = 0) -> int:
    if isinstance(difficulty, bool) or not isinstance(difficulty, int):
        raise ValueError("Difficulty must be an integer")
    if difficulty < minimum:
        raise ValueError(f"Difficulty must be >= {minimum}")
    return difficulty


def proof_of_work(
    index: int,
    timestamp: int,
    payload: Any,
    prev_hash: str,
    difficulty: int,
    progress_callback: Callable[[dict[str, Any]], None] | None = None,
    stop_requested: Callable[[], bool] | None = None,
    progress_interval: int = 25_000,
) -> tuple[int, str]:
    """Search nonces upward from zero until the hash meets ``difficulty``.

    There is no nonce ceiling and no timeout. ``stop_requested`` is polled on
    every attempt so a shutting-down node can abandon the search.
    """
    difficulty = check_difficulty(difficulty)
    # Fail on unserializable payloads before entering the loop.
    canonical_json(payload)

    started = time.perf_counter()
    nonce = 0
    while True:
        if stop_requested and stop_requested():
            raise MiningInterruptedError("Mining interrupted")

        digest = compute_hash(index, timestamp, payload, prev_hash, nonce, difficulty)
        attempts = nonce + 1

        if progress_callback and attempts % progress_interval == 0:
            elapsed = max(0.0001, time.perf_counter() - started)
            progress_callback(
                {
                    "nonce": nonce,
                    "attempts": attempts,
                    "elapsed": elapsed,
                    "hash_rate": attempts / elapsed,
                    "hash_preview": digest[:16],
                }
            )

        if meets_difficulty(digest, difficulty):
            if progress_callback:
                elapsed = max(0.0001, time.perf_counter() - started)
                progress_callback(
                    {
                        "nonce": nonce,
                        "attempts": attempts,
                        "elapsed": elapsed,
                        "hash_rate": attempts / elapsed,
                        "hash_preview": digest[:16],
                        "solved": True,
                    }
                )
            return nonce, digest
        nonce += 1


def mine_block(
    index: int,
    timestamp: int,
    payload: Any,
    prev_hash: str,
    difficulty: int,
    **mining_kwargs: Any,
) -> Block:
    nonce, digest = proof_of_work(index, timestamp, payload, prev_hash, difficulty, **mining_kwargs)
    return Block(
        index=index,
        timestamp=timestamp,
        payload=payload,
        prev_hash=prev_hash,
        nonce=nonce,
        difficulty=difficulty,
        hash=digest,
    )


def create_genesis_block(config: NodeConfig = CONFIG) -> Block:
    return mine_block(
        index=0,
        timestamp=int(config.genesis_timestamp),
        payload=config.genesis_payload,
        prev_hash=GENESIS_PREV_HASH,
        difficulty=int(config.genesis_difficulty),
    )


def create_successor_block(
    parent: Block,
    payload: Any,
    difficulty: int,
    timestamp: int | None = None,
    **mining_kwargs: Any,
) -> Block:
    return mine_block(
        index=parent.index + 1,
        timestamp=now_ms() if timestamp is None else timestamp,
        payload=payload,
        prev_hash=parent.hash,
        difficulty=difficulty,
        **mining_kwargs,
    )
