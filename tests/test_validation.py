from __future__ import annotations

import unittest
from dataclasses import replace

from powchain.config import CONFIG
from powchain.models import HASH_HEX_LENGTH, Block, ByHash, ByIndex, blocks_from_dicts, parse_block_key
from powchain.pow_hash import compute_hash, create_genesis_block, create_successor_block, mine_block
from powchain.validation import (
    RejectReason,
    check_chain,
    check_self_consistent,
    check_successor,
    is_valid_chain,
    is_valid_successor,
)


def _build_chain(length: int, difficulty: int = 1) -> list[Block]:
    blocks = [create_genesis_block()]
    for position in range(1, length):
        blocks.append(
            create_successor_block(
                blocks[-1],
                {"n": position},
                difficulty,
                timestamp=1_700_000_000_000 + position * 1000,
            )
        )
    return blocks


class SuccessorValidationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = _build_chain(3, difficulty=2)
        self.parent = self.chain[1]
        self.block = self.chain[2]

    def test_valid_successor_accepted(self) -> None:
        self.assertTrue(is_valid_successor(self.block, self.parent))
        self.assertTrue(check_successor(self.block, self.parent).ok)

    def test_single_field_mutations_are_rejected(self) -> None:
        cases = {
            "index": (replace(self.block, index=self.block.index + 1), RejectReason.BAD_INDEX),
            "prev_hash": (replace(self.block, prev_hash="f" * 64), RejectReason.BAD_LINK),
            "payload": (replace(self.block, payload={"n": 999}), RejectReason.BAD_HASH),
            "timestamp": (replace(self.block, timestamp=self.block.timestamp + 1), RejectReason.BAD_HASH),
            "nonce": (replace(self.block, nonce=self.block.nonce + 1), RejectReason.BAD_HASH),
            "difficulty": (replace(self.block, difficulty=self.block.difficulty + 1), RejectReason.BAD_HASH),
            "hash": (replace(self.block, hash="0" * 64), RejectReason.BAD_HASH),
        }
        for name, (mutated, reason) in cases.items():
            with self.subTest(field=name):
                verdict = check_successor(mutated, self.parent)
                self.assertFalse(verdict)
                self.assertEqual(verdict.reason, reason)

    def test_hash_that_misses_its_target_is_rejected(self) -> None:
        # A correctly computed hash that does not satisfy a high difficulty.
        digest = compute_hash(2, 1, "x", self.parent.hash, 0, 12)
        block = Block(index=2, timestamp=1, payload="x", prev_hash=self.parent.hash, nonce=0, difficulty=12, hash=digest)
        verdict = check_successor(block, self.parent)
        self.assertEqual(verdict.reason, RejectReason.INSUFFICIENT_DIFFICULTY)

    def test_zero_difficulty_successor_is_rejected(self) -> None:
        block = mine_block(3, 1, "free", self.block.hash, 0)
        self.assertTrue(check_self_consistent(block))
        verdict = check_successor(block, self.block)
        self.assertFalse(verdict)
        self.assertEqual(verdict.reason, RejectReason.INSUFFICIENT_DIFFICULTY)

    def test_negative_difficulty_is_rejected(self) -> None:
        digest = compute_hash(2, 1, "x", self.parent.hash, 0, -1)
        block = Block(index=2, timestamp=1, payload="x", prev_hash=self.parent.hash, nonce=0, difficulty=-1, hash=digest)
        self.assertEqual(check_self_consistent(block).reason, RejectReason.INSUFFICIENT_DIFFICULTY)

    def test_unhashable_payload_is_malformed(self) -> None:
        for payload in (float("nan"), {1, 2}):
            with self.subTest(payload=repr(payload)):
                block = replace(self.block, payload=payload)
                self.assertEqual(check_self_consistent(block).reason, RejectReason.MALFORMED)


class ChainValidationTest(unittest.TestCase):
    def test_empty_chain_is_invalid(self) -> None:
        verdict = check_chain([])
        self.assertFalse(verdict)
        self.assertEqual(verdict.reason, RejectReason.EMPTY_CHAIN)

    def test_genesis_only_chain_is_valid(self) -> None:
        self.assertTrue(is_valid_chain([create_genesis_block()]))

    def test_chain_reports_first_failing_position(self) -> None:
        chain = _build_chain(5)
        chain[3] = replace(chain[3], payload="tampered")
        verdict = check_chain(chain)
        self.assertFalse(verdict)
        self.assertEqual(verdict.reason, RejectReason.BAD_HASH)
        self.assertEqual(verdict.index, 3)
        self.assertEqual(verdict.to_dict(), {"ok": False, "reason": "bad-hash", "index": 3})

    def test_zero_difficulty_genesis_is_taken_as_given(self) -> None:
        genesis = create_genesis_block(replace(CONFIG, genesis_difficulty=0))
        chain = [genesis, create_successor_block(genesis, "work", 1, timestamp=1_700_000_000_500)]
        self.assertTrue(is_valid_chain(chain))

    def test_zero_difficulty_block_inside_chain_is_rejected(self) -> None:
        chain = _build_chain(2)
        chain.append(mine_block(2, 1_700_000_009_000, "free", chain[-1].hash, 0))
        verdict = check_chain(chain)
        self.assertEqual(verdict.reason, RejectReason.INSUFFICIENT_DIFFICULTY)
        self.assertEqual(verdict.index, 2)

    def test_reordered_chain_is_invalid(self) -> None:
        chain = _build_chain(4)
        chain[1], chain[2] = chain[2], chain[1]
        self.assertEqual(check_chain(chain).reason, RejectReason.BAD_INDEX)

    def test_round_tripped_chain_stays_valid(self) -> None:
        chain = _build_chain(4)
        restored = blocks_from_dicts([block.to_dict() for block in chain])
        self.assertEqual(restored, chain)
        self.assertTrue(is_valid_chain(restored))


class BlockShapeTest(unittest.TestCase):
    def test_from_dict_rejects_wrong_types(self) -> None:
        good = create_genesis_block().to_dict()
        for field_name, value in (("index", "0"), ("nonce", True), ("hash", 5), ("timestamp", 1.5)):
            with self.subTest(field=field_name):
                with self.assertRaises(TypeError):
                    Block.from_dict({**good, field_name: value})
        missing = dict(good)
        missing.pop("prevHash")
        with self.assertRaises(KeyError):
            Block.from_dict(missing)
        with self.assertRaises(TypeError):
            blocks_from_dicts({"chain": []})

    def test_from_dict_accepts_data_alias(self) -> None:
        good = create_genesis_block().to_dict()
        aliased = dict(good)
        aliased["data"] = aliased.pop("payload")
        self.assertEqual(Block.from_dict(aliased), create_genesis_block())

    def test_parse_block_key(self) -> None:
        self.assertEqual(parse_block_key("12"), ByIndex(12))
        self.assertEqual(parse_block_key(" ABCdef "), ByHash("abcdef"))
        self.assertEqual(parse_block_key("١٢"), ByHash("١٢"))
        all_digit_hash = "1" * HASH_HEX_LENGTH
        self.assertEqual(parse_block_key(all_digit_hash), ByHash(all_digit_hash))
        with self.assertRaises(ValueError):
            parse_block_key("  ")


if __name__ == "__main__":
    unittest.main()
