from pipeline.models import ChunkRecord
from pipeline.vrf import verify_raffle
from storage.chunk_store import ChunkStore


class ChunkQueryService:
    def __init__(self, store: ChunkStore):
        self.store = store

    def session_exists(self, session_id: str) -> bool:
        return self.store.get_session(session_id) is not None

    def list_session_chunks(self, session_id: str, limit: int, offset: int) -> list[ChunkRecord]:
        return self.store.list_session_records(session_id, limit=limit, offset=offset)

    def verify_chunk(self, record: ChunkRecord) -> tuple[bool, str]:
        if record.proof is None or record.owner is None:
            return False, "Chunk has not been raffled"
        if record.proof.winner != record.owner:
            return False, "Recorded owner does not match proof winner"
        if record.participants is not None and record.proof.participants != record.participants:
            return False, "Proof participants differ from the chunk snapshot"

        session = self.store.get_session(record.session_id)
        if session is not None and session["vrf_seed"] != record.proof.seed:
            return False, "Proof seed differs from the session seed"

        if not verify_raffle(record.proof):
            return False, "Recomputed raffle does not reproduce the recorded winner"
        return True, "Raffle recomputed to the recorded winner"
