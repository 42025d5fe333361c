from contextlib import asynccontextmanager
import logging
import os
import sys
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

load_dotenv(Path(ROOT_DIR) / ".env")

from backend import config
from backend.schemas import (
    ChunkStatusResponse,
    ErrorResponse,
    ParticipantJoinRequest,
    ParticipantJoinResponse,
    ProofVerificationResponse,
    SessionFinalizeRequest,
    SessionStartRequest,
    SessionStatusResponse,
    SessionSummaryResponse,
)
from backend.services.chunk_query import ChunkQueryService
from pipeline.chunk_lifecycle import ChunkStateError
from pipeline.models import SessionConfig
from pipeline.session_supervisor import (
    ChunkNotFoundError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
    SessionSupervisor,
)
from services.ledger_client import HttpLedger, Ledger, OfflineLedger
from services.storage_backend import HttpStorageBackend
from sources.wav_file_source import WavFileSource
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


def build_supervisor() -> SessionSupervisor:
    os.makedirs(config.DATA_DIR, exist_ok=True)

    store = ChunkStore(db_path=config.DB_PATH, payload_dir=config.PAYLOAD_DIR)
    store.init_db()

    ledger: Ledger
    if config.LEDGER_RPC_URL:
        ledger = HttpLedger(
            rpc_url=config.LEDGER_RPC_URL,
            contract_id=config.LEDGER_CONTRACT_ID,
            signer_url=config.LEDGER_SIGNER_URL or None,
            request_timeout=config.REQUEST_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("LEDGER_RPC_URL not set, session seeds will use local entropy only")
        ledger = OfflineLedger()

    return SessionSupervisor(
        ledger=ledger,
        storage=HttpStorageBackend(base_url=config.STORAGE_BACKEND_URL),
        audio_source=WavFileSource(),
        store=store,
        worker_id=config.WORKER_ID,
        final_chunk_min_ms=config.FINAL_CHUNK_MIN_MS,
        dispatch_max_attempts=config.DISPATCH_MAX_ATTEMPTS,
        dispatch_retry_seconds=config.DISPATCH_RETRY_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    supervisor = build_supervisor()

    app.state.supervisor = supervisor
    app.state.chunk_query = ChunkQueryService(store=supervisor.store)

    try:
        yield
    finally:
        await supervisor.shutdown()


app = FastAPI(title="Chunk Raffle API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|[0-9]{1,3}(?:\.[0-9]{1,3}){3})(:[0-9]+)?$",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _not_found(code: str, exc: Exception) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": code, "message": str(exc)})


@app.get("/api/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.post(
    "/api/sessions",
    response_model=SessionStatusResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def start_session(payload: SessionStartRequest) -> SessionStatusResponse:
    session_config = SessionConfig(
        interval_ms=payload.interval_ms or config.CHUNK_INTERVAL_MS,
        audio_ref=payload.audio_ref,
    )
    try:
        status = await app.state.supervisor.start_session(payload.session_id, session_config)
    except SessionAlreadyActiveError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "SESSION_ACTIVE", "message": str(exc)},
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_ID", "message": str(exc)},
        ) from exc

    return SessionStatusResponse.from_status(status)


@app.post(
    "/api/sessions/{session_id}/participants",
    response_model=ParticipantJoinResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def join_participant(session_id: str, payload: ParticipantJoinRequest) -> ParticipantJoinResponse:
    try:
        total = await app.state.supervisor.join_participant(session_id, payload.participant_id)
    except SessionNotFoundError as exc:
        raise _not_found("SESSION_NOT_FOUND", exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_ID", "message": str(exc)},
        ) from exc

    return ParticipantJoinResponse(
        session_id=session_id,
        participant_id=payload.participant_id.strip(),
        total_participants=total,
    )


@app.post(
    "/api/sessions/{session_id}/finalize",
    response_model=SessionSummaryResponse,
    responses={404: {"model": ErrorResponse}},
)
async def finalize_session(session_id: str, payload: SessionFinalizeRequest) -> SessionSummaryResponse:
    try:
        summary = await app.state.supervisor.finalize_session(
            session_id,
            force_trailing_chunk=payload.force_trailing_chunk,
        )
    except SessionNotFoundError as exc:
        raise _not_found("SESSION_NOT_FOUND", exc) from exc

    return SessionSummaryResponse.from_summary(summary)


@app.get(
    "/api/sessions/{session_id}",
    response_model=SessionStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_session_status(session_id: str) -> SessionStatusResponse:
    try:
        status = app.state.supervisor.get_session_status(session_id)
    except SessionNotFoundError as exc:
        raise _not_found("SESSION_NOT_FOUND", exc) from exc
    return SessionStatusResponse.from_status(status)


@app.get(
    "/api/sessions/{session_id}/chunks",
    response_model=list[ChunkStatusResponse],
    responses={404: {"model": ErrorResponse}},
)
def list_session_chunks(
    session_id: str,
    limit: int = Query(default=config.CHUNK_LIST_DEFAULT_LIMIT, ge=1, le=config.CHUNK_LIST_MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
) -> list[ChunkStatusResponse]:
    query = app.state.chunk_query
    if not query.session_exists(session_id):
        raise _not_found("SESSION_NOT_FOUND", SessionNotFoundError(f"Session {session_id} not found"))

    records = query.list_session_chunks(session_id, limit=limit, offset=offset)
    return [ChunkStatusResponse.from_record(r) for r in records]


@app.get(
    "/api/chunks/{chunk_id}",
    response_model=ChunkStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_chunk_status(chunk_id: str) -> ChunkStatusResponse:
    try:
        record = app.state.supervisor.get_chunk_status(chunk_id)
    except ChunkNotFoundError as exc:
        raise _not_found("CHUNK_NOT_FOUND", exc) from exc
    return ChunkStatusResponse.from_record(record)


@app.post(
    "/api/chunks/{chunk_id}/retry",
    response_model=ChunkStatusResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_chunk(chunk_id: str) -> ChunkStatusResponse:
    try:
        record = await app.state.supervisor.retry_chunk(chunk_id)
    except ChunkNotFoundError as exc:
        raise _not_found("CHUNK_NOT_FOUND", exc) from exc
    except ChunkStateError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "CHUNK_STATE", "message": str(exc)},
        ) from exc
    return ChunkStatusResponse.from_record(record)


@app.get(
    "/api/chunks/{chunk_id}/proof/verify",
    response_model=ProofVerificationResponse,
    responses={404: {"model": ErrorResponse}},
)
def verify_chunk_proof(chunk_id: str) -> ProofVerificationResponse:
    try:
        record = app.state.supervisor.get_chunk_status(chunk_id)
    except ChunkNotFoundError as exc:
        raise _not_found("CHUNK_NOT_FOUND", exc) from exc

    verified, reason = app.state.chunk_query.verify_chunk(record)
    return ProofVerificationResponse(
        chunk_id=chunk_id,
        verified=verified,
        owner=record.owner,
        reason=reason,
    )
