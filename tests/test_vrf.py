import hashlib
from dataclasses import replace
import hmac
import unittest
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.vrf import (
    EmptyParticipantSet,
    derive_session_seed,
    raffle,
    validate_identifier,
    verify_raffle,
)
from services.ledger_client import Ledger, LedgerCallError


class FakeLedger(Ledger):
    def __init__(self, block=None, fail: bool = False):
        self.block = block
        self.fail = fail
        self.views = []

    async def execute(self, call):
        return {}

    async def view(self, query):
        self.views.append(query)
        if self.fail:
            raise LedgerCallError("rpc down")
        return self.block


class TestRaffle(unittest.TestCase):
    def test_same_inputs_pick_same_winner(self) -> None:
        first = raffle("deadbeef", "s1_0", ["a", "b"])
        second = raffle("deadbeef", "s1_0", ["a", "b"])

        self.assertEqual(first.winner, second.winner)
        self.assertEqual(first.proof.digest, second.proof.digest)

    def test_single_participant_always_wins(self) -> None:
        for seed in ["00", "deadbeef", "ff" * 32, "not-even-hex"]:
            result = raffle(seed, "s1_7", ["only"], timestamp_ms=123)
            self.assertEqual(result.winner, "only")
            self.assertEqual(result.proof.winner_index, 0)

    def test_empty_participants_rejected(self) -> None:
        with self.assertRaises(EmptyParticipantSet):
            raffle("deadbeef", "s1_0", [])

    def test_duplicate_participants_rejected(self) -> None:
        with self.assertRaises(ValueError):
            raffle("deadbeef", "s1_0", ["a", "a"])

    def test_winner_index_is_plain_modulo_of_digest_prefix(self) -> None:
        # Known limitation: the index is the 32-bit big-endian prefix modulo
        # the participant count, with no rejection sampling. For counts that
        # are not powers of two, low indices are very slightly favoured.
        participants = ["a", "b", "c"]
        result = raffle("deadbeef", "s1_0", participants, timestamp_ms=60000)

        mac = hmac.new(b"deadbeef", digestmod=hashlib.sha256)
        mac.update(b"s1_0")
        mac.update(b"a|b|c")
        mac.update(b"60000")
        digest = mac.digest()

        expected_value = int.from_bytes(digest[:4], "big")
        self.assertEqual(result.proof.digest, digest.hex())
        self.assertEqual(result.proof.random_value, expected_value)
        self.assertEqual(result.proof.winner_index, expected_value % 3)
        self.assertEqual(result.winner, participants[expected_value % 3])

    def test_timestamp_changes_digest(self) -> None:
        a = raffle("deadbeef", "s1_0", ["a", "b", "c"], timestamp_ms=1)
        b = raffle("deadbeef", "s1_0", ["a", "b", "c"], timestamp_ms=2)
        self.assertNotEqual(a.proof.digest, b.proof.digest)

    def test_proof_round_trip_verifies(self) -> None:
        result = raffle("cafe", "s9_3", ["x", "y", "z", "w"], timestamp_ms=180000)
        self.assertTrue(verify_raffle(result.proof))

    def test_tampered_proof_fails_verification(self) -> None:
        result = raffle("cafe", "s9_3", ["x", "y", "z", "w"], timestamp_ms=180000)
        others = [p for p in result.proof.participants if p != result.winner]

        forged = replace(result.proof, winner=others[0])
        self.assertFalse(verify_raffle(forged))

        other_seed = replace(result.proof, seed="beef")
        self.assertFalse(verify_raffle(other_seed))


class TestIdentifiers(unittest.TestCase):
    def test_rejects_delimiter_and_blank(self) -> None:
        with self.assertRaises(ValueError):
            validate_identifier("a|b", "session_id")
        with self.assertRaises(ValueError):
            validate_identifier("   ", "session_id")
        self.assertEqual(validate_identifier(" s1 ", "session_id"), "s1")


class TestSessionSeed(unittest.IsolatedAsyncioTestCase):
    async def test_seed_uses_chain_anchor(self) -> None:
        ledger = FakeLedger(block={"header": {"hash": "blockhash", "height": 42}})

        seed = await derive_session_seed("s1", "worker-1", ledger, clock=lambda: 1000)

        self.assertFalse(seed.degraded)
        self.assertIsNone(seed.degraded_reason)
        self.assertEqual(seed.anchor.block_hash, "blockhash")
        self.assertEqual(seed.anchor.height, 42)
        self.assertEqual(len(seed.value), 64)
        self.assertEqual(seed.derived_at_ms, 1000)
        self.assertEqual(len(ledger.views), 1)

    async def test_fallback_is_flagged_and_logged(self) -> None:
        ledger = FakeLedger(fail=True)

        with self.assertLogs("pipeline.vrf", level="WARNING") as logs:
            seed = await derive_session_seed("s1", "worker-1", ledger, clock=lambda: 1000)

        self.assertTrue(seed.degraded)
        self.assertIn("rpc down", seed.degraded_reason or "")
        self.assertTrue(seed.anchor.fallback)
        self.assertEqual(len(seed.anchor.block_hash), 64)
        self.assertEqual(len(seed.value), 64)
        self.assertTrue(any("degraded" in line for line in logs.output))

    async def test_malformed_block_counts_as_unavailable(self) -> None:
        ledger = FakeLedger(block={"header": {"height": 5}})

        with self.assertLogs("pipeline.vrf", level="WARNING"):
            seed = await derive_session_seed("s1", "worker-1", ledger)

        self.assertTrue(seed.degraded)

    async def test_distinct_sessions_get_distinct_seeds(self) -> None:
        ledger = FakeLedger(block={"hash": "h", "height": 1})

        seeds = {
            (await derive_session_seed(f"s{i}", "worker-1", ledger, clock=lambda: 5)).value
            for i in range(20)
        }
        again = await derive_session_seed("s0", "worker-1", ledger, clock=lambda: 5)

        self.assertEqual(len(seeds), 20)
        self.assertNotIn(again.value, seeds)


if __name__ == "__main__":
    unittest.main()
