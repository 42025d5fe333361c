import logging
from typing import Callable

from pipeline.models import ChunkRecord, ChunkState, RaffleResult, now_ms
from services.storage_backend import StorageReceipt

logger = logging.getLogger(__name__)

NO_PARTICIPANTS = "skipped: no participants"

TRANSITIONS: dict[ChunkState, frozenset[ChunkState]] = {
    ChunkState.OPEN: frozenset({ChunkState.RAFFLING}),
    ChunkState.RAFFLING: frozenset({ChunkState.RAFFLED, ChunkState.FAILED}),
    ChunkState.RAFFLED: frozenset({ChunkState.DISPATCHING, ChunkState.FAILED}),
    ChunkState.DISPATCHING: frozenset({ChunkState.FINALIZED, ChunkState.FAILED}),
    ChunkState.FINALIZED: frozenset(),
    ChunkState.FAILED: frozenset(),
}

RAFFLE_DONE_STATES = frozenset(
    {ChunkState.RAFFLED, ChunkState.DISPATCHING, ChunkState.FINALIZED, ChunkState.FAILED}
)


class ChunkStateError(Exception):
    def __init__(self, record: ChunkRecord, message: str):
        super().__init__(f"{record.chunk_id} ({record.state.value}): {message}")
        self.chunk_id = record.chunk_id
        self.state = record.state


class AlreadyRaffled(ChunkStateError):
    pass


class ChunkLifecycle:
    """
    Moves chunk records through open -> raffling -> raffled -> dispatching ->
    finalized, with failed reachable from raffling, raffled and dispatching.

    Every method is synchronous, so a check and its transition cannot be
    interleaved with another task on the event loop. on_change is called
    with the record after every mutation (the chunk store upserts it).
    """

    def __init__(self, on_change: Callable[[ChunkRecord], None] | None = None):
        self.on_change = on_change

    def _move(self, record: ChunkRecord, target: ChunkState) -> None:
        if target not in TRANSITIONS[record.state]:
            if target in (ChunkState.RAFFLING, ChunkState.RAFFLED) and (
                record.state in RAFFLE_DONE_STATES or record.owner is not None
            ):
                raise AlreadyRaffled(record, "raffle already settled")
            raise ChunkStateError(record, f"cannot move to {target.value}")
        record.state = target
        self._touch(record)

    def _touch(self, record: ChunkRecord) -> None:
        record.updated_at_ms = now_ms()
        if self.on_change is not None:
            self.on_change(record)

    def open_chunk(
        self,
        session_id: str,
        sequence_index: int,
        start_ms: int,
        end_ms: int,
        is_final: bool = False,
    ) -> ChunkRecord:
        if end_ms <= start_ms:
            raise ValueError("chunk end must be after its start")

        suffix = "_final" if is_final else ""
        record = ChunkRecord(
            chunk_id=f"{session_id}_{sequence_index}{suffix}",
            session_id=session_id,
            sequence_index=sequence_index,
            start_ms=start_ms,
            end_ms=end_ms,
            is_final=is_final,
        )
        self._touch(record)
        return record

    def begin_raffle(self, record: ChunkRecord, participants: tuple[str, ...]) -> bool:
        """
        Take the participant snapshot and enter raffling.

        Returns False and parks the chunk in open when the snapshot is empty.
        A snapshot, once taken, is never replaced.
        """
        if record.state is not ChunkState.OPEN:
            raise AlreadyRaffled(record, "raffle already attempted")

        if record.participants is None:
            if not participants:
                record.skipped_reason = NO_PARTICIPANTS
                self._touch(record)
                logger.info("Chunk %s has no participants, skipping raffle", record.chunk_id)
                return False
            record.participants = tuple(participants)

        record.skipped_reason = None
        self._move(record, ChunkState.RAFFLING)
        return True

    def complete_raffle(self, record: ChunkRecord, result: RaffleResult) -> None:
        if record.owner is not None:
            raise AlreadyRaffled(record, f"owner already recorded ({record.owner})")
        if result.proof.chunk_id != record.chunk_id:
            raise ChunkStateError(record, f"raffle result belongs to {result.proof.chunk_id}")
        if record.participants is not None and result.proof.participants != record.participants:
            raise ChunkStateError(record, "raffle ran over a different participant snapshot")

        self._move(record, ChunkState.RAFFLED)
        record.owner = result.winner
        record.proof = result.proof
        self._touch(record)

    def begin_dispatch(self, record: ChunkRecord) -> None:
        self._move(record, ChunkState.DISPATCHING)

    def finalize(self, record: ChunkRecord, receipt: StorageReceipt) -> None:
        self._move(record, ChunkState.FINALIZED)
        record.content_id = receipt.content_id
        record.proof_handle = receipt.proof_handle
        record.error = None
        record.payload = None
        self._touch(record)

    def fail(self, record: ChunkRecord, error: str) -> None:
        self._move(record, ChunkState.FAILED)
        record.error = error
        self._touch(record)
        logger.warning("Chunk %s failed: %s", record.chunk_id, error)

    def reenter(self, record: ChunkRecord) -> ChunkState:
        """
        Explicit retry of a failed chunk.

        Re-enters raffling when no winner was recorded, dispatching when one
        was. The failed state is otherwise terminal.
        """
        if record.state is not ChunkState.FAILED:
            raise ChunkStateError(record, "only failed chunks can be retried")

        record.state = ChunkState.DISPATCHING if record.owner is not None else ChunkState.RAFFLING
        record.error = None
        record.retries += 1
        self._touch(record)
        return record.state
