import asyncio
import unittest
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from pipeline.models import ChainAnchor, SessionConfig, SessionSeed
from pipeline.session_registry import Session, SessionRegistry


def _session(session_id: str = "s1") -> Session:
    return Session(
        session_id=session_id,
        config=SessionConfig(),
        started_at_ms=0,
        seed=SessionSeed(
            value="ab" * 32,
            session_id=session_id,
            derived_at_ms=0,
            anchor=ChainAnchor(block_hash="genesis", height=0, fallback=True),
            degraded=True,
        ),
    )


class TestSessionRegistry(unittest.IsolatedAsyncioTestCase):
    async def test_locked_unknown_id_leaves_no_lock(self) -> None:
        registry = SessionRegistry()

        async with registry.locked("ghost") as session:
            self.assertIsNone(session)
            self.assertEqual(registry.lock_count, 1)

        self.assertEqual(registry.lock_count, 0)

    async def test_lock_kept_while_session_registered(self) -> None:
        registry = SessionRegistry()
        registry.add(_session())

        async with registry.locked("s1") as session:
            self.assertIs(session, registry.get("s1"))

        self.assertEqual(registry.lock_count, 1)
        registry.remove("s1")
        self.assertEqual(registry.lock_count, 0)

    async def test_waiters_share_one_lock(self) -> None:
        registry = SessionRegistry()
        order = []

        async def hold(name: str) -> None:
            async with registry.locked("ghost"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(hold("a"), hold("b"), hold("c"))

        # Holders never interleave, even though no session owns the lock.
        self.assertEqual(order, ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"])
        self.assertEqual(registry.lock_count, 0)

    async def test_remove_while_locked_drops_lock_on_exit(self) -> None:
        registry = SessionRegistry()
        registry.add(_session())

        async with registry.locked("s1"):
            registry.remove("s1")
            self.assertEqual(registry.lock_count, 1)

        self.assertEqual(registry.lock_count, 0)


if __name__ == "__main__":
    unittest.main()
