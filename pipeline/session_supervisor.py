import asyncio
import logging
from typing import Callable

from pipeline.chunk_lifecycle import AlreadyRaffled, ChunkLifecycle, ChunkStateError
from pipeline.chunk_timer import ChunkTimer
from pipeline.dispatch import DispatchCoordinator
from pipeline.models import (
    ChunkRecord,
    ChunkState,
    SessionConfig,
    SessionSeed,
    SessionStatus,
    SessionSummary,
    now_ms,
)
from pipeline.participants import ParticipantRegistry
from pipeline.session_registry import Session, SessionRegistry
from pipeline.vrf import derive_session_seed, raffle, validate_identifier
from services.ledger_client import Ledger, LedgerCall, LedgerCallError
from services.storage_backend import StorageBackend
from sources.audio_source import AudioSource, SourceUnavailable
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    pass


class SessionAlreadyActiveError(Exception):
    pass


class ChunkNotFoundError(Exception):
    pass


class SessionSupervisor:
    def __init__(
        self,
        ledger: Ledger,
        storage: StorageBackend,
        audio_source: AudioSource,
        store: ChunkStore,
        worker_id: str,
        final_chunk_min_ms: int = 1000,
        dispatch_max_attempts: int = 3,
        dispatch_retry_seconds: float = 2.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.ledger = ledger
        self.storage = storage
        self.audio_source = audio_source
        self.store = store
        self.worker_id = worker_id
        self.final_chunk_min_ms = int(final_chunk_min_ms)
        self.clock = clock

        self.sessions = SessionRegistry()
        self.participants = ParticipantRegistry()
        self.lifecycle = ChunkLifecycle(on_change=store.save_record)
        self.timer = ChunkTimer(on_tick=self._on_tick)
        self.dispatcher = DispatchCoordinator(
            storage=storage,
            ledger=ledger,
            lifecycle=self.lifecycle,
            store=store,
            max_attempts=dispatch_max_attempts,
            retry_seconds=dispatch_retry_seconds,
        )

        self._chunks: dict[str, ChunkRecord] = {}

    # --------------------
    # Session lifecycle
    # --------------------

    async def start_session(self, session_id: str, config: SessionConfig | None = None) -> SessionStatus:
        session_id = validate_identifier(session_id, "session_id")
        config = config or SessionConfig()
        if config.interval_ms <= 0:
            raise ValueError("interval_ms must be positive")

        async with self.sessions.locked(session_id) as existing:
            if existing is not None:
                raise SessionAlreadyActiveError(f"Session {session_id} is already active")

            seed = await derive_session_seed(session_id, self.worker_id, self.ledger, clock=self.clock)
            seed_registered = await self._register_seed(session_id, seed)

            # No awaits from here on: chunk 0 starts when the timer is armed.
            session = Session(
                session_id=session_id,
                config=config,
                started_at_ms=int(self.clock()),
                seed=seed,
                seed_registered=seed_registered,
            )
            self.timer.start(session_id, config.interval_ms)
            self.sessions.add(session)
            self.participants.open(session_id)
            self.store.save_session(session_id, session.started_at_ms, config.interval_ms, seed)

        logger.info(
            "Session %s started (interval %dms, seed %s..., degraded=%s)",
            session_id,
            config.interval_ms,
            seed.value[:16],
            seed.degraded,
        )
        return self.get_session_status(session_id)

    async def join_participant(self, session_id: str, participant_id: str) -> int:
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Session {session_id} not found")

        async with self.sessions.locked(session_id) as session:
            if session is None or not session.active:
                raise SessionNotFoundError(f"Session {session_id} not found")
            count = self.participants.join(session_id, participant_id)

        logger.info("Participant %s joined %s (total: %d)", participant_id, session_id, count)
        return count

    async def finalize_session(self, session_id: str, force_trailing_chunk: bool = False) -> SessionSummary:
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Session {session_id} not found")

        async with self.sessions.locked(session_id) as session:
            if session is None or not session.active:
                raise SessionNotFoundError(f"Session {session_id} not found")

            handle = self.timer.get(session_id)
            in_flight = set() if handle is None else set(handle.in_flight)
            self.timer.stop(session_id)

            closing = self._open_due_chunks(session)
            trailing = None
            if force_trailing_chunk:
                trailing = self._open_trailing_chunk(session)
                if trailing is not None:
                    closing.append(trailing)

            session.active = False

        for record in closing:
            await self._process_chunk(session, record)

        # Ticks that opened a chunk before the timer stopped finish their raffle
        # before the summary is taken. Their failures are already logged.
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

        self.sessions.remove(session_id)
        self.participants.close(session_id)
        for record in session.chunks:
            self._chunks.pop(record.chunk_id, None)

        self.store.mark_session_finalized(session_id, int(self.clock()), len(session.chunks))

        summary = SessionSummary(
            session_id=session_id,
            total_chunks=len(session.chunks),
            raffled_chunks=sum(1 for c in session.chunks if c.owner is not None),
            skipped_chunks=sum(1 for c in session.chunks if c.is_skipped),
            failed_chunks=sum(1 for c in session.chunks if c.state is ChunkState.FAILED),
            pending_dispatches=sum(1 for c in session.chunks if self.dispatcher.is_pending(c.chunk_id)),
            trailing_chunk_id=None if trailing is None else trailing.chunk_id,
        )
        logger.info("Session %s finalized with %d chunks", session_id, summary.total_chunks)
        return summary

    async def shutdown(self) -> None:
        self.timer.stop_all()
        for session in self.sessions:
            session.active = False
        await self.dispatcher.drain()
        await self.ledger.aclose()
        await self.storage.aclose()
        await self.audio_source.aclose()

    # --------------------
    # Chunk production
    # --------------------

    async def _on_tick(self, session_id: str, tick: int) -> None:
        await self.advance_chunk(session_id)

    async def advance_chunk(self, session_id: str) -> ChunkRecord | None:
        """
        Close the current interval: open the next chunk, snapshot the
        participants and run it through raffle and dispatch.

        Returns None when the session has already been finalized.
        """
        if session_id not in self.sessions:
            return None

        async with self.sessions.locked(session_id) as session:
            if session is None or not session.active:
                return None

            index = session.next_index
            start_ms = session.started_at_ms + index * session.interval_ms
            record = self._open(session, index, start_ms, start_ms + session.interval_ms)

        return await self._process_chunk(session, record)

    def _open(self, session: Session, index: int, start_ms: int, end_ms: int, is_final: bool = False) -> ChunkRecord:
        record = self.lifecycle.open_chunk(session.session_id, index, start_ms, end_ms, is_final=is_final)
        session.next_index = index + 1
        session.chunks.append(record)
        self._chunks[record.chunk_id] = record
        self.lifecycle.begin_raffle(record, self.participants.snapshot(session.session_id))
        return record

    def _open_due_chunks(self, session: Session) -> list[ChunkRecord]:
        # Boundaries that passed before the timer was stopped but whose tick
        # never produced a chunk.
        elapsed = int(self.clock()) - session.started_at_ms
        full_chunks = elapsed // session.interval_ms

        due = []
        while session.next_index < full_chunks:
            index = session.next_index
            start_ms = session.started_at_ms + index * session.interval_ms
            due.append(self._open(session, index, start_ms, start_ms + session.interval_ms))
        return due

    def _open_trailing_chunk(self, session: Session) -> ChunkRecord | None:
        # Starts where the last opened chunk ends, so it can never overlap one.
        start_ms = session.started_at_ms + session.next_index * session.interval_ms
        remainder = int(self.clock()) - start_ms

        if remainder <= self.final_chunk_min_ms:
            return None

        logger.info("Creating trailing chunk for %s (%dms)", session.session_id, remainder)
        return self._open(session, session.next_index, start_ms, start_ms + remainder, is_final=True)

    async def _process_chunk(self, session: Session, record: ChunkRecord) -> ChunkRecord:
        if record.state is not ChunkState.RAFFLING:
            return record

        if record.payload is None:
            try:
                record.payload = await self.audio_source.read_window(
                    session.config.audio_ref,
                    record.start_ms - session.started_at_ms,
                    record.duration_ms,
                )
            except SourceUnavailable as exc:
                self.lifecycle.fail(record, f"source unavailable: {exc}")
                return record

        if record.participants is None:
            raise ChunkStateError(record, "raffling without a participant snapshot")
        result = raffle(session.seed.value, record.chunk_id, record.participants, timestamp_ms=record.end_ms)
        try:
            self.lifecycle.complete_raffle(record, result)
        except AlreadyRaffled as exc:
            logger.warning("Duplicate raffle rejected: %s", exc)
            return record
        logger.info(
            "Chunk %s raffled: winner=%s (%d/%d)",
            record.chunk_id,
            result.winner,
            result.proof.winner_index + 1,
            result.participant_count,
        )

        try:
            record.payload_path = await asyncio.to_thread(self.store.save_payload, record.chunk_id, record.payload)
        except OSError as exc:
            self.lifecycle.fail(record, f"payload not saved: {exc}")
            return record

        self.dispatcher.forward(record)
        return record

    async def _register_seed(self, session_id: str, seed: SessionSeed) -> bool:
        try:
            await self.ledger.execute(
                LedgerCall(
                    method_name="initialize_vrf",
                    args={"session_id": session_id, "initial_seed": seed.value},
                )
            )
        except LedgerCallError as exc:
            logger.warning("Seed for %s not registered on ledger: %s", session_id, exc)
            return False
        return True

    # --------------------
    # Retry
    # --------------------

    async def retry_chunk(self, chunk_id: str) -> ChunkRecord:
        record = self._chunks.get(chunk_id)

        if record is None:
            record = self.store.get_record(chunk_id)
            if record is None:
                raise ChunkNotFoundError(f"Chunk {chunk_id} not found")
            if record.state is not ChunkState.FAILED or record.owner is None:
                raise ChunkStateError(record, "session is gone, only failed dispatches can be retried")
            self.dispatcher.forward(record)
            return record

        session = self.sessions.get(record.session_id)

        if record.is_skipped:
            if session is None:
                raise ChunkStateError(record, "session is gone, cannot take a participant snapshot")
            async with self.sessions.locked(record.session_id):
                started = self.lifecycle.begin_raffle(record, self.participants.snapshot(record.session_id))
            if started:
                await self._process_chunk(session, record)
            return record

        if record.state is not ChunkState.FAILED:
            raise ChunkStateError(record, "only failed or skipped chunks can be retried")

        if record.owner is not None:
            self.dispatcher.forward(record)
            return record

        if session is None:
            raise ChunkStateError(record, "session is gone, cannot re-run the raffle")
        self.lifecycle.reenter(record)
        return await self._process_chunk(session, record)

    # --------------------
    # Queries
    # --------------------

    def get_chunk_status(self, chunk_id: str) -> ChunkRecord:
        record = self._chunks.get(chunk_id)
        if record is None:
            record = self.store.get_record(chunk_id)
        if record is None:
            raise ChunkNotFoundError(f"Chunk {chunk_id} not found")
        return record

    def get_session_status(self, session_id: str) -> SessionStatus:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        elapsed = max(0, int(self.clock()) - session.started_at_ms)
        next_boundary_in_ms = session.interval_ms - (elapsed % session.interval_ms)

        return SessionStatus(
            session_id=session.session_id,
            active=session.active,
            current_chunk_index=session.next_index,
            next_boundary_in_ms=next_boundary_in_ms,
            interval_ms=session.interval_ms,
            started_at_ms=session.started_at_ms,
            participant_count=self.participants.count(session_id),
            total_chunks=len(session.chunks),
            seed_degraded=session.seed.degraded,
            seed_registered=session.seed_registered,
        )

    def list_session_chunks(self, session_id: str) -> list[ChunkRecord]:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return sorted(session.chunks, key=lambda c: (c.sequence_index, c.is_final))

