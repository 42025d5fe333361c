import json
import os
import sqlite3
from datetime import datetime, timezone

import soundfile as sf

from pipeline.models import ChunkRecord, SessionSeed
from sources.audio_chunk import AudioWindow


class ChunkStore:
    def __init__(
        self,
        db_path: str = "metadata.db",
        payload_dir: str = "chunks",
    ):
        self.db_path = db_path
        self.payload_dir = payload_dir

    # ---------- DB INIT ----------
    def init_db(self) -> None:
        os.makedirs(self.payload_dir, exist_ok=True)

        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()

        cur.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                started_at_ms INTEGER NOT NULL,
                interval_ms INTEGER NOT NULL,
                vrf_seed TEXT NOT NULL,
                seed_degraded BOOLEAN DEFAULT FALSE,
                anchor_hash TEXT,
                anchor_height INTEGER,
                finalized_at_ms INTEGER,
                total_chunks INTEGER DEFAULT 0
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                chunk_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                sequence_index INTEGER NOT NULL,
                is_final BOOLEAN DEFAULT FALSE,
                state TEXT NOT NULL,
                owner TEXT,
                content_id TEXT,
                record_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_chunks_session
            ON chunks(session_id, sequence_index)
            """
        )

        conn.commit()
        conn.close()

    # ---------- SESSIONS ----------
    def save_session(self, session_id: str, started_at_ms: int, interval_ms: int, seed: SessionSeed) -> None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO sessions (
                session_id, started_at_ms, interval_ms, vrf_seed,
                seed_degraded, anchor_hash, anchor_height
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                started_at_ms = excluded.started_at_ms,
                interval_ms = excluded.interval_ms,
                vrf_seed = excluded.vrf_seed,
                seed_degraded = excluded.seed_degraded,
                anchor_hash = excluded.anchor_hash,
                anchor_height = excluded.anchor_height,
                finalized_at_ms = NULL,
                total_chunks = 0
            """,
            (
                session_id,
                int(started_at_ms),
                int(interval_ms),
                seed.value,
                bool(seed.degraded),
                seed.anchor.block_hash,
                int(seed.anchor.height),
            ),
        )
        conn.commit()
        conn.close()

    def mark_session_finalized(self, session_id: str, finalized_at_ms: int, total_chunks: int) -> None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            "UPDATE sessions SET finalized_at_ms = ?, total_chunks = ? WHERE session_id = ?",
            (int(finalized_at_ms), int(total_chunks), session_id),
        )
        conn.commit()
        conn.close()

    def get_session(self, session_id: str) -> dict | None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT session_id, started_at_ms, interval_ms, vrf_seed, seed_degraded,
                   anchor_hash, anchor_height, finalized_at_ms, total_chunks
            FROM sessions
            WHERE session_id = ?
            LIMIT 1
            """,
            (session_id,),
        )
        row = cur.fetchone()
        conn.close()

        if row is None:
            return None

        return {
            "session_id": str(row[0]),
            "started_at_ms": int(row[1]),
            "interval_ms": int(row[2]),
            "vrf_seed": str(row[3]),
            "seed_degraded": bool(row[4]),
            "anchor_hash": row[5],
            "anchor_height": None if row[6] is None else int(row[6]),
            "finalized_at_ms": None if row[7] is None else int(row[7]),
            "total_chunks": int(row[8] or 0),
        }

    # ---------- CHUNK RECORDS ----------
    def save_record(self, record: ChunkRecord) -> None:
        updated_at = datetime.now(timezone.utc).isoformat()

        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO chunks (
                chunk_id, session_id, sequence_index, is_final,
                state, owner, content_id, record_json, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(chunk_id) DO UPDATE SET
                state = excluded.state,
                owner = excluded.owner,
                content_id = excluded.content_id,
                record_json = excluded.record_json,
                updated_at = excluded.updated_at
            """,
            (
                record.chunk_id,
                record.session_id,
                int(record.sequence_index),
                bool(record.is_final),
                record.state.value,
                record.owner,
                record.content_id,
                json.dumps(record.to_dict()),
                updated_at,
            ),
        )
        conn.commit()
        conn.close()

    def get_record(self, chunk_id: str) -> ChunkRecord | None:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            "SELECT record_json FROM chunks WHERE chunk_id = ? LIMIT 1",
            (chunk_id,),
        )
        row = cur.fetchone()
        conn.close()

        if row is None:
            return None
        return ChunkRecord.from_dict(json.loads(row[0]))

    def list_session_records(self, session_id: str, limit: int, offset: int) -> list[ChunkRecord]:
        conn = sqlite3.connect(self.db_path)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT record_json
            FROM chunks
            WHERE session_id = ?
            ORDER BY sequence_index ASC, is_final ASC
            LIMIT ? OFFSET ?
            """,
            (session_id, int(limit), int(offset)),
        )
        rows = cur.fetchall()
        conn.close()

        return [ChunkRecord.from_dict(json.loads(r[0])) for r in rows]

    # ---------- PAYLOADS ----------
    def payload_path(self, chunk_id: str) -> str:
        return os.path.join(self.payload_dir, f"{chunk_id}.wav")

    def save_payload(self, chunk_id: str, window: AudioWindow) -> str:
        os.makedirs(self.payload_dir, exist_ok=True)
        path = self.payload_path(chunk_id)
        sf.write(path, window.samples, window.sample_rate, subtype="PCM_16")
        return path

    def load_payload(self, path: str, offset_ms: int = 0) -> AudioWindow:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Chunk payload not found: {path}")

        audio, sr = sf.read(path, dtype="int16", always_2d=True)
        return AudioWindow(
            samples=audio,
            sample_rate=sr,
            offset_ms=offset_ms,
            duration_ms=int(round(len(audio) * 1000 / sr)),
        )
