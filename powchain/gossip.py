from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Iterable

from .chain import Ledger
from .models import Block
from .validation import Verdict


logger = logging.getLogger(__name__)

# push_block(peer_url, block, timeout) -> peer response (ignored)
BlockPusher = Callable[[str, Block, float], Any]


class Gossip:
    """Best-effort push of new blocks to peers, and intake of pushed blocks."""

    def __init__(
        self,
        ledger: Ledger,
        push_block: BlockPusher,
        workers: int = 8,
        timeout: float = 5.0,
    ) -> None:
        self.ledger = ledger
        self.push_block = push_block
        self.timeout = float(timeout)
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="powchain-gossip")
        self._stats_lock = threading.Lock()
        self._delivered: dict[str, int] = defaultdict(int)
        self._failed: dict[str, int] = defaultdict(int)

    def _push_to_peer(self, peer: str, block: Block) -> bool:
        try:
            self.push_block(peer, block, self.timeout)
        except Exception as exc:
            with self._stats_lock:
                self._failed[peer] += 1
            logger.warning("Gossip: push of block %d to %s failed: %s", block.index, peer, exc)
            return False
        with self._stats_lock:
            self._delivered[peer] += 1
        logger.debug("Gossip: pushed block %d to %s", block.index, peer)
        return True

    def broadcast(self, block: Block, peers: Iterable[str]) -> list[Future]:
        futures: list[Future] = []
        for peer in sorted(set(peers)):
            try:
                futures.append(self._executor.submit(self._push_to_peer, peer, block))
            except RuntimeError:
                # Executor already shut down; the node is stopping.
                logger.debug("Gossip: executor closed, dropping push of block %d to %s", block.index, peer)
        if futures:
            logger.info("Gossip: broadcasting block %d to %d peers", block.index, len(futures))
        return futures

    def wait(self, futures: list[Future], timeout: float | None = None) -> int:
        done, _pending = wait_futures(futures, timeout=timeout)
        return sum(1 for future in done if not future.cancelled() and future.result())

    def on_receive(self, block: Block) -> Verdict:
        return self.ledger.accept_pushed(block)

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return {
                "delivered": dict(self._delivered),
                "failed": dict(self._failed),
            }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
