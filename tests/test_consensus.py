from __future__ import annotations

import unittest
from dataclasses import replace

from powchain.chain import Ledger
from powchain.config import CONFIG
from powchain.consensus import Resolver
from powchain.pow_hash import create_genesis_block, create_successor_block
from powchain.storage import MemoryChainStore


FAST_CONFIG = replace(CONFIG, default_difficulty=1)


def _chain_rows(length: int, tag: str, genesis=None) -> list[dict]:
    blocks = [genesis or create_genesis_block()]
    while len(blocks) < length:
        blocks.append(
            create_successor_block(
                blocks[-1],
                {"tag": tag, "n": len(blocks)},
                1,
                timestamp=1_700_000_200_000 + len(blocks) * 1000,
            )
        )
    return [block.to_dict() for block in blocks]


class FakeNetwork:
    def __init__(self, responses: dict[str, object]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, float]] = []

    def __call__(self, peer: str, timeout: float):
        self.calls.append((peer, timeout))
        response = self.responses[peer]
        if isinstance(response, Exception):
            raise response
        return response


class ResolverTest(unittest.TestCase):
    def _ledger(self, extra_blocks: int = 0) -> Ledger:
        ledger = Ledger(MemoryChainStore(), config=FAST_CONFIG)
        for position in range(extra_blocks):
            ledger.append(f"local-{position}")
        return ledger

    def test_no_peers_is_a_noop(self) -> None:
        ledger = self._ledger(1)
        outcome = Resolver(ledger, FakeNetwork({})).resolve([])
        self.assertFalse(outcome.replaced)
        self.assertEqual(outcome.length, 2)
        self.assertEqual(outcome.checked, 0)

    def test_longest_valid_chain_wins(self) -> None:
        ledger = self._ledger(1)
        network = FakeNetwork(
            {
                "http://a:1": _chain_rows(3, "a"),
                "http://b:1": _chain_rows(5, "b"),
            }
        )
        outcome = Resolver(ledger, network, timeout=2.5).resolve(["http://b:1", "http://a:1"])
        self.assertTrue(outcome.replaced)
        self.assertEqual(outcome.source_peer, "http://b:1")
        self.assertEqual(outcome.length, 5)
        self.assertEqual(ledger.tip().payload["tag"], "b")
        self.assertEqual(sorted(network.calls), [("http://a:1", 2.5), ("http://b:1", 2.5)])

    def test_failures_are_recorded_and_do_not_abort(self) -> None:
        ledger = self._ledger(1)
        forged = _chain_rows(6, "forged")
        forged[3]["payload"] = "tampered"
        network = FakeNetwork(
            {
                "http://down:1": ConnectionError("refused"),
                "http://garbage:1": [{"index": "zero"}],
                "http://forged:1": forged,
                "http://good:1": _chain_rows(4, "good"),
            }
        )
        outcome = Resolver(ledger, network).resolve(list(network.responses))
        self.assertTrue(outcome.replaced)
        self.assertEqual(outcome.source_peer, "http://good:1")
        self.assertEqual(outcome.checked, 4)
        self.assertTrue(outcome.failures["http://down:1"].startswith("fetch-failed"))
        self.assertTrue(outcome.failures["http://garbage:1"].startswith("malformed"))
        self.assertEqual(outcome.failures["http://forged:1"], "rejected: bad-hash")
        self.assertNotIn("http://good:1", outcome.failures)

    def test_foreign_genesis_does_not_mask_valid_candidate(self) -> None:
        ledger = self._ledger(0)
        foreign_genesis = create_genesis_block(replace(CONFIG, genesis_timestamp=42))
        network = FakeNetwork(
            {
                "http://a:1": _chain_rows(8, "foreign", genesis=foreign_genesis),
                "http://b:1": _chain_rows(3, "ours"),
            }
        )
        outcome = Resolver(ledger, network).resolve(list(network.responses))
        self.assertTrue(outcome.replaced)
        self.assertEqual(outcome.source_peer, "http://b:1")
        self.assertEqual(outcome.failures["http://a:1"], "rejected: genesis-mismatch")

    def test_shorter_chains_keep_local(self) -> None:
        ledger = self._ledger(3)
        before = ledger.blocks()
        network = FakeNetwork({"http://a:1": _chain_rows(2, "a"), "http://b:1": _chain_rows(4, "b")})
        outcome = Resolver(ledger, network).resolve(list(network.responses))
        self.assertFalse(outcome.replaced)
        self.assertEqual(ledger.blocks(), before)
        self.assertEqual(outcome.failures, {})

    def test_equal_length_tie_goes_to_first_peer_in_sorted_order(self) -> None:
        for order in (["http://z:1", "http://m:1"], ["http://m:1", "http://z:1"]):
            with self.subTest(order=order):
                ledger = self._ledger(0)
                network = FakeNetwork({"http://m:1": _chain_rows(4, "m"), "http://z:1": _chain_rows(4, "z")})
                outcome = Resolver(ledger, network, workers=2).resolve(order)
                self.assertEqual(outcome.source_peer, "http://m:1")
                self.assertEqual(ledger.tip().payload["tag"], "m")

    def test_outcome_serializes(self) -> None:
        ledger = self._ledger(0)
        outcome = Resolver(ledger, FakeNetwork({"http://a:1": _chain_rows(2, "a")})).resolve(["http://a:1"])
        self.assertEqual(
            outcome.to_dict(),
            {"replaced": True, "length": 2, "source_peer": "http://a:1", "checked": 1, "failures": {}},
        )


if __name__ == "__main__":
    unittest.main()
