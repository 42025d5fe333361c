from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any

from sources.audio_chunk import AudioWindow

RECORD_VERSION = 1


def now_ms() -> int:
    return int(time.time() * 1000)


class ChunkState(str, Enum):
    OPEN = "open"
    RAFFLING = "raffling"
    RAFFLED = "raffled"
    DISPATCHING = "dispatching"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass(frozen=True)
class ChainAnchor:
    block_hash: str
    height: int
    fallback: bool = False


@dataclass(frozen=True)
class SessionSeed:
    value: str
    session_id: str
    derived_at_ms: int
    anchor: ChainAnchor
    degraded: bool = False
    degraded_reason: str | None = None


@dataclass(frozen=True)
class RaffleProof:
    seed: str
    chunk_id: str
    participants: tuple[str, ...]
    timestamp_ms: int | None
    digest: str
    random_value: int
    winner_index: int
    winner: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "seed": self.seed,
            "chunk_id": self.chunk_id,
            "participants": list(self.participants),
            "timestamp_ms": self.timestamp_ms,
            "digest": self.digest,
            "random_value": self.random_value,
            "winner_index": self.winner_index,
            "winner": self.winner,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RaffleProof":
        timestamp = data.get("timestamp_ms")
        return cls(
            seed=str(data["seed"]),
            chunk_id=str(data["chunk_id"]),
            participants=tuple(str(p) for p in data["participants"]),
            timestamp_ms=None if timestamp is None else int(timestamp),
            digest=str(data["digest"]),
            random_value=int(data["random_value"]),
            winner_index=int(data["winner_index"]),
            winner=str(data["winner"]),
        )


@dataclass(frozen=True)
class RaffleResult:
    winner: str
    proof: RaffleProof

    @property
    def participant_count(self) -> int:
        return len(self.proof.participants)


@dataclass
class ChunkRecord:
    """
    One fixed-duration segment of a session's stream.

    The record is the unit the lifecycle state machine moves forward and the
    row persisted in the chunk store. `payload` holds the audio window only
    while it is needed for upload; `payload_path` points at the stored copy.
    """

    chunk_id: str
    session_id: str
    sequence_index: int
    start_ms: int
    end_ms: int
    is_final: bool = False
    state: ChunkState = ChunkState.OPEN
    participants: tuple[str, ...] | None = None
    owner: str | None = None
    proof: RaffleProof | None = None
    content_id: str | None = None
    proof_handle: str | None = None
    error: str | None = None
    skipped_reason: str | None = None
    payload_path: str | None = None
    ownership_recorded: bool = False
    upload_recorded: bool = False
    retries: int = 0
    created_at_ms: int = field(default_factory=now_ms)
    updated_at_ms: int = field(default_factory=now_ms)
    version: int = RECORD_VERSION
    payload: AudioWindow | None = field(default=None, repr=False, compare=False)

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    @property
    def participant_count(self) -> int | None:
        if self.participants is None:
            return None
        return len(self.participants)

    @property
    def is_skipped(self) -> bool:
        return self.state is ChunkState.OPEN and self.skipped_reason is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "session_id": self.session_id,
            "sequence_index": self.sequence_index,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "duration_ms": self.duration_ms,
            "is_final": self.is_final,
            "state": self.state.value,
            "participants": None if self.participants is None else list(self.participants),
            "participant_count": self.participant_count,
            "owner": self.owner,
            "proof": None if self.proof is None else self.proof.to_dict(),
            "content_id": self.content_id,
            "proof_handle": self.proof_handle,
            "error": self.error,
            "skipped_reason": self.skipped_reason,
            "payload_path": self.payload_path,
            "ownership_recorded": self.ownership_recorded,
            "upload_recorded": self.upload_recorded,
            "retries": self.retries,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkRecord":
        participants = data.get("participants")
        proof = data.get("proof")
        return cls(
            chunk_id=str(data["chunk_id"]),
            session_id=str(data["session_id"]),
            sequence_index=int(data["sequence_index"]),
            start_ms=int(data["start_ms"]),
            end_ms=int(data["end_ms"]),
            is_final=bool(data.get("is_final", False)),
            state=ChunkState(data.get("state", ChunkState.OPEN.value)),
            participants=None if participants is None else tuple(participants),
            owner=data.get("owner"),
            proof=None if proof is None else RaffleProof.from_dict(proof),
            content_id=data.get("content_id"),
            proof_handle=data.get("proof_handle"),
            error=data.get("error"),
            skipped_reason=data.get("skipped_reason"),
            payload_path=data.get("payload_path"),
            ownership_recorded=bool(data.get("ownership_recorded", False)),
            upload_recorded=bool(data.get("upload_recorded", False)),
            retries=int(data.get("retries", 0)),
            created_at_ms=int(data.get("created_at_ms", 0)),
            updated_at_ms=int(data.get("updated_at_ms", 0)),
            version=int(data.get("version", RECORD_VERSION)),
        )

    def upload_metadata(self) -> dict[str, Any]:
        """Enhanced metadata sent to the storage backend with the payload."""
        meta: dict[str, Any] = {
            "chunk_id": self.chunk_id,
            "session_id": self.session_id,
            "sequence_index": self.sequence_index,
            "is_final": self.is_final,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "duration_ms": self.duration_ms,
            "chunk_owner": self.owner,
            "participant_count": self.participant_count,
            "raffle_proof": None if self.proof is None else self.proof.to_dict(),
            "format": "WAV",
            "version": self.version,
        }
        if self.payload is not None:
            meta["sample_rate"] = self.payload.sample_rate
            meta["channels"] = self.payload.channels
        return meta


@dataclass(frozen=True)
class SessionConfig:
    interval_ms: int = 60_000
    audio_ref: str | None = None


@dataclass
class SessionSummary:
    session_id: str
    total_chunks: int
    raffled_chunks: int
    skipped_chunks: int
    failed_chunks: int
    pending_dispatches: int
    trailing_chunk_id: str | None = None


@dataclass
class SessionStatus:
    session_id: str
    active: bool
    current_chunk_index: int
    next_boundary_in_ms: int
    interval_ms: int
    started_at_ms: int
    participant_count: int
    total_chunks: int
    seed_degraded: bool
    seed_registered: bool
