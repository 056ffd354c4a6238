from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .chain import Ledger
from .models import Block, blocks_from_dicts


logger = logging.getLogger(__name__)

# fetch_chain(peer_url, timeout) -> list of Block-shaped records
ChainFetcher = Callable[[str, float], Any]


@dataclass
class ResolveOutcome:
    replaced: bool
    length: int
    source_peer: str | None = None
    checked: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "replaced": self.replaced,
            "length": self.length,
            "source_peer": self.source_peer,
            "checked": self.checked,
            "failures": dict(self.failures),
        }


class Resolver:
    """Longest-valid-chain fork resolution against a set of peers."""

    def __init__(
        self,
        ledger: Ledger,
        fetch_chain: ChainFetcher,
        workers: int = 8,
        timeout: float = 5.0,
    ) -> None:
        self.ledger = ledger
        self.fetch_chain = fetch_chain
        self.workers = max(1, int(workers))
        self.timeout = float(timeout)

    def _fetch_candidate(self, peer: str) -> tuple[list[Block] | None, str]:
        try:
            rows = self.fetch_chain(peer, self.timeout)
        except Exception as exc:
            return None, f"fetch-failed: {exc}"
        try:
            return blocks_from_dicts(rows), ""
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"malformed: {exc}"

    def resolve(self, peers: Iterable[str]) -> ResolveOutcome:
        ordered_peers = sorted(set(peers))
        local = self.ledger.blocks()
        outcome = ResolveOutcome(replaced=False, length=len(local))
        if not ordered_peers:
            return outcome

        # Fetches run concurrently; results are reduced in peer order so the
        # winner does not depend on which response arrived first.
        with ThreadPoolExecutor(
            max_workers=min(self.workers, len(ordered_peers)),
            thread_name_prefix="powchain-resolve",
        ) as pool:
            results = list(pool.map(self._fetch_candidate, ordered_peers))

        best = local
        best_peer: str | None = None
        for peer, (candidate, error) in zip(ordered_peers, results):
            outcome.checked += 1
            if candidate is None:
                outcome.failures[peer] = error
                logger.warning("Resolve: peer %s skipped: %s", peer, error)
                continue
            if len(candidate) <= len(best):
                continue
            verdict = self.ledger.check_replace(candidate)
            if not verdict:
                reason = verdict.reason.value if verdict.reason else "invalid"
                outcome.failures[peer] = f"rejected: {reason}"
                logger.warning("Resolve: peer %s offered a chain that was refused: %s at %s", peer, reason, verdict.index)
                continue
            best = candidate
            best_peer = peer

        if best_peer is not None:
            outcome.replaced = self.ledger.replace(best)
            if outcome.replaced:
                outcome.source_peer = best_peer
            else:
                outcome.failures[best_peer] = "refused-by-ledger"
        outcome.length = self.ledger.length
        logger.info(
            "Resolve finished: replaced=%s length=%d peers=%d failures=%d",
            outcome.replaced,
            outcome.length,
            outcome.checked,
            len(outcome.failures),
        )
        return outcome
