import os
import tempfile
import unittest
from pathlib import Path
import sys

import numpy as np

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.chunk_lifecycle import ChunkLifecycle
from pipeline.models import ChainAnchor, ChunkState, SessionSeed
from pipeline.vrf import raffle
from sources.audio_chunk import AudioWindow
from storage.chunk_store import ChunkStore


class TestChunkStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = ChunkStore(
            db_path=os.path.join(self._tmp.name, "metadata.db"),
            payload_dir=os.path.join(self._tmp.name, "chunks"),
        )
        self.store.init_db()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _seed(self, value: str = "ab" * 32) -> SessionSeed:
        return SessionSeed(
            value=value,
            session_id="s1",
            derived_at_ms=1000,
            anchor=ChainAnchor(block_hash="blockhash", height=77),
        )

    def test_session_round_trip_and_finalize(self) -> None:
        self.store.save_session("s1", 1000, 60000, self._seed())

        session = self.store.get_session("s1")
        assert session is not None
        self.assertEqual(session["vrf_seed"], "ab" * 32)
        self.assertEqual(session["anchor_height"], 77)
        self.assertFalse(session["seed_degraded"])
        self.assertIsNone(session["finalized_at_ms"])

        self.store.mark_session_finalized("s1", 200000, 4)
        session = self.store.get_session("s1")
        assert session is not None
        self.assertEqual(session["finalized_at_ms"], 200000)
        self.assertEqual(session["total_chunks"], 4)

        self.assertIsNone(self.store.get_session("missing"))

    def test_record_upserts_keep_latest_state(self) -> None:
        lifecycle = ChunkLifecycle(on_change=self.store.save_record)
        record = lifecycle.open_chunk("s1", 0, 0, 60000)
        lifecycle.begin_raffle(record, ("alice", "bob"))
        lifecycle.complete_raffle(record, raffle("seed", record.chunk_id, ["alice", "bob"], 60000))

        stored = self.store.get_record("s1_0")
        assert stored is not None
        self.assertIs(stored.state, ChunkState.RAFFLED)
        self.assertEqual(stored.owner, record.owner)
        self.assertEqual(stored.participants, ("alice", "bob"))
        self.assertEqual(stored.proof, record.proof)

    def test_list_orders_trailing_chunk_last(self) -> None:
        lifecycle = ChunkLifecycle(on_change=self.store.save_record)
        lifecycle.open_chunk("s1", 2, 120000, 143000, is_final=True)
        lifecycle.open_chunk("s1", 1, 60000, 120000)
        lifecycle.open_chunk("s1", 0, 0, 60000)
        lifecycle.open_chunk("other", 0, 0, 60000)

        records = self.store.list_session_records("s1", limit=10, offset=0)
        self.assertEqual([r.chunk_id for r in records], ["s1_0", "s1_1", "s1_2_final"])

        page = self.store.list_session_records("s1", limit=1, offset=1)
        self.assertEqual([r.chunk_id for r in page], ["s1_1"])

    def test_payload_round_trip(self) -> None:
        samples = (np.arange(16000, dtype=np.int16) % 200).reshape(-1, 2)
        window = AudioWindow(samples=samples, sample_rate=8000, offset_ms=0, duration_ms=1000)

        path = self.store.save_payload("s1_0", window)
        loaded = self.store.load_payload(path, offset_ms=60000)

        self.assertEqual(path, self.store.payload_path("s1_0"))
        self.assertEqual(loaded.sample_rate, 8000)
        self.assertEqual(loaded.channels, 2)
        self.assertEqual(loaded.duration_ms, 1000)
        self.assertEqual(loaded.offset_ms, 60000)
        np.testing.assert_array_equal(loaded.samples, samples)

    def test_missing_payload(self) -> None:
        with self.assertRaises(FileNotFoundError):
            self.store.load_payload(self.store.payload_path("nope"))


if __name__ == "__main__":
    unittest.main()
