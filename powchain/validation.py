from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from .models import Block
from .pow_hash import block_digest, meets_difficulty


class RejectReason(Enum):
    BAD_INDEX = "bad-index"
    BAD_LINK = "bad-link"
    BAD_HASH = "bad-hash"
    INSUFFICIENT_DIFFICULTY = "insufficient-difficulty"
    EMPTY_CHAIN = "empty-chain"
    MALFORMED = "malformed"
    GENESIS_MISMATCH = "genesis-mismatch"
    NOT_LONGER = "not-longer"


@dataclass(frozen=True)
class Verdict:
    ok: bool
    reason: RejectReason | None = None
    # Index of the offending block within the checked sequence, when known.
    index: int | None = None

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "index": self.index,
        }


ACCEPTED = Verdict(ok=True)


def reject(reason: RejectReason, index: int | None = None) -> Verdict:
    return Verdict(ok=False, reason=reason, index=index)


def check_self_consistent(block: Block) -> Verdict:
    try:
        digest = block_digest(block)
    except (TypeError, ValueError):
        return reject(RejectReason.MALFORMED, block.index)
    if digest != block.hash:
        return reject(RejectReason.BAD_HASH, block.index)
    if block.difficulty < 0 or not meets_difficulty(block.hash, block.difficulty):
        return reject(RejectReason.INSUFFICIENT_DIFFICULTY, block.index)
    return ACCEPTED


def check_successor(candidate: Block, parent: Block) -> Verdict:
    if candidate.index != parent.index + 1:
        return reject(RejectReason.BAD_INDEX, candidate.index)
    if candidate.prev_hash != parent.hash:
        return reject(RejectReason.BAD_LINK, candidate.index)
    # Only genesis may carry zero difficulty; every later block must show work.
    if candidate.difficulty < 1:
        return reject(RejectReason.INSUFFICIENT_DIFFICULTY, candidate.index)
    return check_self_consistent(candidate)


def is_valid_successor(candidate: Block, parent: Block) -> bool:
    return check_successor(candidate, parent).ok


def check_chain(blocks: Sequence[Block]) -> Verdict:
    # Genesis is taken as given; pinning it is the ledger's decision.
    if not blocks:
        return reject(RejectReason.EMPTY_CHAIN)
    for position in range(1, len(blocks)):
        verdict = check_successor(blocks[position], blocks[position - 1])
        if not verdict:
            return Verdict(ok=False, reason=verdict.reason, index=position)
    return ACCEPTED


def is_valid_chain(blocks: Sequence[Block]) -> bool:
    return check_chain(blocks).ok
