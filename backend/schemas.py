from typing import Literal

from pydantic import BaseModel, Field

from pipeline.models import ChunkRecord, SessionStatus, SessionSummary

ChunkStateName = Literal["open", "raffling", "raffled", "dispatching", "finalized", "failed"]


class ErrorResponse(BaseModel):
    code: str
    message: str


class SessionStartRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=200)
    interval_ms: int | None = Field(default=None, gt=0)
    audio_ref: str | None = None


class ParticipantJoinRequest(BaseModel):
    participant_id: str = Field(min_length=1, max_length=200)


class ParticipantJoinResponse(BaseModel):
    session_id: str
    participant_id: str
    total_participants: int


class SessionFinalizeRequest(BaseModel):
    force_trailing_chunk: bool = False


class SessionStatusResponse(BaseModel):
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

    @classmethod
    def from_status(cls, status: SessionStatus) -> "SessionStatusResponse":
        return cls(**status.__dict__)


class SessionSummaryResponse(BaseModel):
    session_id: str
    total_chunks: int
    raffled_chunks: int
    skipped_chunks: int
    failed_chunks: int
    pending_dispatches: int
    trailing_chunk_id: str | None = None

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionSummaryResponse":
        return cls(**summary.__dict__)


class RaffleProofResponse(BaseModel):
    seed: str
    chunk_id: str
    participants: list[str]
    timestamp_ms: int | None
    digest: str
    random_value: int
    winner_index: int
    winner: str


class ChunkStatusResponse(BaseModel):
    chunk_id: str
    session_id: str
    sequence_index: int
    is_final: bool
    state: ChunkStateName
    start_ms: int
    end_ms: int
    duration_ms: int
    participant_count: int | None = None
    owner: str | None = None
    proof: RaffleProofResponse | None = None
    content_id: str | None = None
    proof_handle: str | None = None
    error: str | None = None
    skipped_reason: str | None = None
    retries: int = 0

    @classmethod
    def from_record(cls, record: ChunkRecord) -> "ChunkStatusResponse":
        return cls(
            chunk_id=record.chunk_id,
            session_id=record.session_id,
            sequence_index=record.sequence_index,
            is_final=record.is_final,
            state=record.state.value,
            start_ms=record.start_ms,
            end_ms=record.end_ms,
            duration_ms=record.duration_ms,
            participant_count=record.participant_count,
            owner=record.owner,
            proof=None if record.proof is None else RaffleProofResponse(**record.proof.to_dict()),
            content_id=record.content_id,
            proof_handle=record.proof_handle,
            error=record.error,
            skipped_reason=record.skipped_reason,
            retries=record.retries,
        )


class ProofVerificationResponse(BaseModel):
    chunk_id: str
    verified: bool
    owner: str | None = None
    reason: str | None = None
