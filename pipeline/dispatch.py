import asyncio
import json
import logging

import soundfile as sf

from pipeline.chunk_lifecycle import ChunkLifecycle, ChunkStateError
from pipeline.models import ChunkRecord, ChunkState
from services.ledger_client import Ledger, LedgerCall, LedgerCallError
from services.storage_backend import StorageBackend, StorageReceipt, UploadError
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """
    Hands raffled chunks to the storage backend.

    forward() moves the record to dispatching and returns the task doing the
    work. Collaborator failures end in lifecycle.fail(); anything else that
    escapes the task is caught by its done callback and also fails the chunk,
    so no dispatch is left silently stuck.
    """

    def __init__(
        self,
        storage: StorageBackend,
        ledger: Ledger,
        lifecycle: ChunkLifecycle,
        store: ChunkStore,
        max_attempts: int = 3,
        retry_seconds: float = 2.0,
    ):
        self.storage = storage
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.retry_seconds = float(retry_seconds)

        self._pending: dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, chunk_id: str) -> bool:
        return chunk_id in self._pending

    def forward(self, record: ChunkRecord) -> asyncio.Task:
        if record.state is ChunkState.FAILED:
            if record.owner is None:
                raise ChunkStateError(record, "chunk has no owner to dispatch for")
            self.lifecycle.reenter(record)
        else:
            self.lifecycle.begin_dispatch(record)

        task = asyncio.create_task(
            self._dispatch(record),
            name=f"dispatch:{record.chunk_id}",
        )
        self._pending[record.chunk_id] = task
        task.add_done_callback(lambda t: self._dispatch_done(record, t))
        return task

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def _dispatch(self, record: ChunkRecord) -> ChunkRecord:
        if not record.ownership_recorded:
            try:
                await self._record_ownership(record)
            except LedgerCallError as exc:
                self.lifecycle.fail(record, f"ownership record failed: {exc}")
                return record

        try:
            data = await self._payload_bytes(record)
        except (OSError, sf.LibsndfileError) as exc:
            self.lifecycle.fail(record, f"payload unavailable: {exc}")
            return record

        try:
            receipt = await self._upload(record, data)
        except UploadError as exc:
            self.lifecycle.fail(record, str(exc))
            return record

        await self._record_upload(record, receipt)
        self.lifecycle.finalize(record, receipt)
        logger.info(
            "Chunk %s stored as %s (owner %s, proof %s)",
            record.chunk_id,
            receipt.content_id,
            record.owner,
            receipt.proof_handle,
        )
        return record

    def _dispatch_done(self, record: ChunkRecord, task: asyncio.Task) -> None:
        if self._pending.get(record.chunk_id) is task:
            del self._pending[record.chunk_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        logger.error(
            "Dispatch of %s crashed",
            record.chunk_id,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        if record.state is ChunkState.DISPATCHING:
            self.lifecycle.fail(record, f"dispatch crashed: {exc!r}")

    async def _payload_bytes(self, record: ChunkRecord) -> bytes:
        # Disk reads and WAV encoding stay off the event loop.
        if record.payload is None:
            if not record.payload_path:
                raise FileNotFoundError(f"No payload stored for {record.chunk_id}")
            record.payload = await asyncio.to_thread(self.store.load_payload, record.payload_path)
        return await asyncio.to_thread(record.payload.to_wav_bytes)

    async def _upload(self, record: ChunkRecord, data: bytes) -> StorageReceipt:
        metadata = record.upload_metadata()
        attempt = 0

        while True:
            attempt += 1
            try:
                return await self.storage.upload(data, metadata)
            except UploadError as exc:
                logger.warning(
                    "Upload attempt %d/%d for %s failed: %s",
                    attempt,
                    self.max_attempts,
                    record.chunk_id,
                    exc,
                )
                if attempt >= self.max_attempts:
                    raise
            await asyncio.sleep(self.retry_seconds)

    async def _record_ownership(self, record: ChunkRecord) -> None:
        await self.ledger.execute(
            LedgerCall(
                method_name="record_chunk_ownership",
                args={
                    "session_id": record.session_id,
                    "chunk_id": record.chunk_id,
                    "vrf_proof": None if record.proof is None else record.proof.digest,
                    "winner_account": record.owner,
                },
                gas="50000000000000",
            )
        )
        record.ownership_recorded = True
        self.store.save_record(record)

    async def _record_upload(self, record: ChunkRecord, receipt: StorageReceipt) -> None:
        try:
            await self.ledger.execute(
                LedgerCall(
                    method_name="store_upload_record",
                    args={
                        "session_id": record.session_id,
                        "chunk_id": record.chunk_id,
                        "content_id": receipt.content_id,
                        "chunk_owner": record.owner,
                        "metadata": json.dumps(record.upload_metadata()),
                    },
                    gas="300000000000000",
                )
            )
            record.upload_recorded = True
        except LedgerCallError as exc:
            logger.warning("Upload record for %s not written to ledger: %s", record.chunk_id, exc)
