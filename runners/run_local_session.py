from pathlib import Path
import asyncio
import logging
import sys

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

load_dotenv(ROOT_DIR / ".env")

from backend import config
from backend.main import build_supervisor
from pipeline.models import SessionConfig


async def main() -> None:
    # ---- CONFIG ----
    audio_path = str(config.DATA_DIR / "example.wav")
    session_id = "local-test-session"
    participants = ["alice.testnet", "bob.testnet", "charlie.testnet"]
    run_seconds = 150
    # ----------------

    supervisor = build_supervisor()

    status = await supervisor.start_session(
        session_id,
        SessionConfig(interval_ms=config.CHUNK_INTERVAL_MS, audio_ref=audio_path),
    )
    print(f"Started {session_id}: chunk={status.interval_ms}ms, seed degraded={status.seed_degraded}")

    for participant in participants:
        total = await supervisor.join_participant(session_id, participant)
        print(f"[session] {participant} joined ({total} total)")

    print(f"Streaming for {run_seconds}s. Press Ctrl+C to stop early.")

    try:
        await asyncio.sleep(run_seconds)
    finally:
        summary = await supervisor.finalize_session(session_id, force_trailing_chunk=True)
        print(
            f"[session] finalized: {summary.total_chunks} chunks, "
            f"{summary.raffled_chunks} raffled, {summary.failed_chunks} failed, "
            f"{summary.pending_dispatches} uploads still pending"
        )
        await supervisor.shutdown()

    for record in supervisor.store.list_session_records(session_id, limit=1000, offset=0):
        print(f"  {record.chunk_id}: {record.state.value} owner={record.owner} cid={record.content_id}")


if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user.")
