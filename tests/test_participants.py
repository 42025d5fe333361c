import unittest
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.participants import ParticipantRegistry, ParticipantSet


class TestParticipantSet(unittest.TestCase):
    def test_join_is_idempotent_and_ordered(self) -> None:
        members = ParticipantSet()

        self.assertEqual(members.add("b"), 1)
        self.assertEqual(members.add("a"), 2)
        self.assertEqual(members.add("b"), 2)

        self.assertEqual(members.snapshot(), ("b", "a"))
        self.assertIn("a", members)
        self.assertEqual(len(members), 2)

    def test_snapshot_is_detached(self) -> None:
        members = ParticipantSet()
        members.add("a")
        snap = members.snapshot()
        members.add("b")

        self.assertEqual(snap, ("a",))

    def test_rejects_bad_ids(self) -> None:
        members = ParticipantSet()
        with self.assertRaises(ValueError):
            members.add("")
        with self.assertRaises(ValueError):
            members.add("x|y")


class TestParticipantRegistry(unittest.TestCase):
    def test_sessions_are_isolated(self) -> None:
        registry = ParticipantRegistry()
        registry.open("s1")
        registry.open("s2")

        registry.join("s1", "a")
        registry.join("s2", "b")

        self.assertEqual(registry.snapshot("s1"), ("a",))
        self.assertEqual(registry.snapshot("s2"), ("b",))

    def test_unknown_session(self) -> None:
        registry = ParticipantRegistry()
        with self.assertRaises(KeyError):
            registry.join("missing", "a")
        self.assertEqual(registry.snapshot("missing"), ())
        self.assertEqual(registry.count("missing"), 0)

    def test_close_drops_members(self) -> None:
        registry = ParticipantRegistry()
        registry.open("s1")
        registry.join("s1", "a")
        registry.close("s1")

        self.assertEqual(registry.count("s1"), 0)


if __name__ == "__main__":
    unittest.main()
