from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from .config import CONFIG, NodeConfig
from .models import Block, BlockKey, ByHash, ByIndex, canonical_json
from .pow_hash import check_difficulty, create_genesis_block, create_successor_block
from .storage import ChainStore, PersistenceError
from .validation import ACCEPTED, RejectReason, Verdict, check_chain, check_successor, reject


logger = logging.getLogger(__name__)

__all__ = [
    "BlockConstructionError",
    "EmptyLedgerError",
    "Ledger",
    "LedgerError",
    "MiningBusyError",
    "PersistenceError",
]


class LedgerError(Exception):
    pass


class EmptyLedgerError(LedgerError):
    pass


class BlockConstructionError(LedgerError):
    pass


class MiningBusyError(LedgerError):
    pass


def _normalize_payload(payload: Any) -> Any:
    # A private JSON copy: callers cannot mutate a block's payload after append.
    try:
        return json.loads(canonical_json(payload))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Payload must be JSON-serializable: {exc}") from exc


def _time_iso(timestamp_ms: int) -> str | None:
    try:
        moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Ledger:
    """The node's chain of blocks.

    Every read and every mutation goes through ``chain_lock``, so readers never
    see a half-applied append or replace. Proof-of-work for local appends runs
    with ``chain_lock`` released; only one local mining operation runs at a
    time.
    """

    def __init__(self, store: ChainStore, config: NodeConfig = CONFIG):
        self.config = config
        self.store = store
        self.default_difficulty = check_difficulty(config.default_difficulty, minimum=1)
        self.chain_lock = threading.RLock()
        self._mining_lock = threading.Lock()
        self._chain: list[Block] = []
        self._initialize()

    def _initialize(self) -> None:
        loaded = self.store.load()
        if loaded:
            verdict = check_chain(loaded)
            if verdict:
                self._chain = loaded
                logger.info("Loaded chain with %d blocks", len(loaded))
                return
            logger.warning(
                "Stored chain is invalid (%s at position %s), starting from genesis",
                verdict.reason.value if verdict.reason else "unknown",
                verdict.index,
            )
        if self.store.exists():
            self.store.quarantine()

        genesis = create_genesis_block(self.config)
        self._chain = [genesis]
        logger.info("Synthesized genesis block %s", genesis.hash)
        self._save_unlocked()

    def _save_unlocked(self) -> None:
        try:
            self.store.save(self._chain)
        except PersistenceError:
            logger.error("Chain persistence failed; in-memory chain has %d blocks", len(self._chain))
            raise
        except OSError as exc:
            logger.error("Chain persistence failed; in-memory chain has %d blocks", len(self._chain))
            raise PersistenceError(str(exc)) from exc

    def tip(self) -> Block:
        with self.chain_lock:
            if not self._chain:
                raise EmptyLedgerError("Ledger has no blocks")
            return self._chain[-1]

    def genesis(self) -> Block:
        with self.chain_lock:
            if not self._chain:
                raise EmptyLedgerError("Ledger has no blocks")
            return self._chain[0]

    @property
    def height(self) -> int:
        return self.tip().index

    @property
    def length(self) -> int:
        with self.chain_lock:
            return len(self._chain)

    def blocks(self) -> list[Block]:
        with self.chain_lock:
            return list(self._chain)

    def is_valid(self) -> bool:
        with self.chain_lock:
            return check_chain(self._chain).ok

    def set_default_difficulty(self, difficulty: int) -> int:
        value = check_difficulty(difficulty, minimum=1)
        if value > self.config.max_difficulty:
            raise ValueError(f"Difficulty must be <= {self.config.max_difficulty}")
        with self.chain_lock:
            self.default_difficulty = value
        logger.info("Default difficulty set to %d", value)
        return value

    def append(
        self,
        payload: Any,
        difficulty: int | None = None,
        wait: bool = True,
        stop_requested: Callable[[], bool] | None = None,
        progress_callback: Callable[[dict[str, Any]], None] | None = None,
    ) -> Block:
        payload = _normalize_payload(payload)
        if difficulty is None:
            with self.chain_lock:
                target = self.default_difficulty
        else:
            target = check_difficulty(difficulty, minimum=1)

        if not self._mining_lock.acquire(blocking=wait):
            raise MiningBusyError("A mining operation is already in progress")
        try:
            while True:
                parent = self.tip()
                block = create_successor_block(
                    parent,
                    payload,
                    target,
                    stop_requested=stop_requested,
                    progress_callback=progress_callback,
                )
                with self.chain_lock:
                    verdict = check_successor(block, parent)
                    if not verdict:
                        raise BlockConstructionError(
                            f"Mined block {block.index} failed validation against its parent: "
                            f"{verdict.reason.value if verdict.reason else 'unknown'}"
                        )
                    if self._chain[-1].hash != parent.hash:
                        logger.info(
                            "Tip moved from %s to %s while mining, restarting",
                            parent.hash[:16],
                            self._chain[-1].hash[:16],
                        )
                        continue
                    self._chain.append(block)
                    self._save_unlocked()
                logger.info("Mined block %d %s (difficulty %d, nonce %d)", block.index, block.hash, target, block.nonce)
                return block
        finally:
            self._mining_lock.release()

    @property
    def mining(self) -> bool:
        return self._mining_lock.locked()

    def lookup(self, key: BlockKey) -> Block | None:
        with self.chain_lock:
            if isinstance(key, ByIndex):
                return next((block for block in self._chain if block.index == key.index), None)
            if isinstance(key, ByHash):
                return next((block for block in self._chain if block.hash == key.hash), None)
        raise TypeError(f"Unsupported block key: {key!r}")

    def check_replace(self, candidate: Sequence[Block]) -> Verdict:
        with self.chain_lock:
            if len(candidate) <= len(self._chain):
                return reject(RejectReason.NOT_LONGER)
            verdict = check_chain(candidate)
            if not verdict:
                return verdict
            if self.config.pin_genesis and candidate[0] != self._chain[0]:
                return reject(RejectReason.GENESIS_MISMATCH, 0)
            return ACCEPTED

    def replace(self, candidate: Sequence[Block]) -> bool:
        blocks = list(candidate)
        with self.chain_lock:
            verdict = self.check_replace(blocks)
            if not verdict:
                logger.debug(
                    "Replacement chain of %d blocks refused: %s",
                    len(blocks),
                    verdict.reason.value if verdict.reason else "unknown",
                )
                return False
            previous_length = len(self._chain)
            self._chain = blocks
            self._save_unlocked()
        logger.info("Replaced chain of %d blocks with chain of %d blocks", previous_length, len(blocks))
        return True

    def accept_pushed(self, block: Block) -> Verdict:
        with self.chain_lock:
            tip = self._chain[-1]
            verdict = check_successor(block, tip)
            if not verdict:
                logger.info(
                    "Rejected pushed block %d %s at height %d: %s",
                    block.index,
                    block.hash[:16],
                    tip.index,
                    verdict.reason.value if verdict.reason else "unknown",
                )
                return verdict
            self._chain.append(block)
            self._save_unlocked()
        logger.info("Accepted pushed block %d %s", block.index, block.hash)
        return verdict

    def explorer_rows(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for block in self.blocks():
            if isinstance(block.payload, str):
                preview = block.payload[:80]
            else:
                preview = canonical_json(block.payload)[:80]
            rows.append(
                {
                    "index": block.index,
                    "timeISO": _time_iso(block.timestamp),
                    "hash": block.hash,
                    "prevHash": block.prev_hash,
                    "difficulty": block.difficulty,
                    "nonce": block.nonce,
                    "payloadPreview": preview,
                }
            )
        return rows

    def status(self) -> dict[str, Any]:
        with self.chain_lock:
            tip = self._chain[-1]
            return {
                "height": tip.index,
                "length": len(self._chain),
                "tipHash": tip.hash,
                "genesisHash": self._chain[0].hash,
                "defaultDifficulty": self.default_difficulty,
                "valid": check_chain(self._chain).ok,
                "mining": self.mining,
            }
