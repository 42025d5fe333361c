"""
Session seed derivation and per-chunk ownership raffle.

The seed mixes a fresh secure random value, the wall clock, a chain anchor
(latest final block hash and height read from the ledger) and the worker
identity. All inputs are joined with SEED_DELIMITER and hashed with SHA-256.
When the ledger cannot supply an anchor, a local random anchor of the same
width is used instead and the seed is marked degraded.

The raffle is an HMAC-SHA256 keyed by the seed over
chunk_id + "|".join(participants) + str(timestamp_ms). The first
WINNER_PREFIX_BYTES of the digest are read big-endian and reduced modulo the
participant count. Non power-of-two participant counts therefore carry a
small modulo bias, which is not corrected with rejection sampling.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Callable, Sequence

from pipeline.models import ChainAnchor, RaffleProof, RaffleResult, SessionSeed, now_ms
from services.ledger_client import Ledger, LedgerCallError, LedgerQuery

logger = logging.getLogger(__name__)

SEED_DELIMITER = "|"
SEED_RANDOM_BYTES = 32
WINNER_PREFIX_BYTES = 4

CHAIN_ANCHOR_QUERY = LedgerQuery(method_name="block", args={"finality": "final"})


class EmptyParticipantSet(ValueError):
    pass


def validate_identifier(value: str, kind: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{kind} is required")
    if SEED_DELIMITER in value:
        raise ValueError(f"{kind} must not contain {SEED_DELIMITER!r}")
    return value


def _anchor_from_block(block: object) -> ChainAnchor:
    if not isinstance(block, dict):
        raise LedgerCallError("Chain anchor query returned no block")
    header = block.get("header", block)
    block_hash = str(header.get("hash") or "").strip()
    height = header.get("height")
    if not block_hash or height is None:
        raise LedgerCallError("Chain anchor block is missing hash or height")
    return ChainAnchor(block_hash=block_hash, height=int(height))


def _fallback_anchor(timestamp_ms: int) -> ChainAnchor:
    return ChainAnchor(
        block_hash=secrets.token_hex(SEED_RANDOM_BYTES),
        height=timestamp_ms,
        fallback=True,
    )


async def fetch_chain_anchor(ledger: Ledger) -> ChainAnchor:
    block = await ledger.view(CHAIN_ANCHOR_QUERY)
    return _anchor_from_block(block)


async def derive_session_seed(
    session_id: str,
    worker_id: str,
    ledger: Ledger,
    clock: Callable[[], int] = now_ms,
) -> SessionSeed:
    timestamp_ms = int(clock())
    degraded_reason = None

    try:
        anchor = await fetch_chain_anchor(ledger)
    except LedgerCallError as exc:
        degraded_reason = f"chain anchor unavailable: {exc}"
        anchor = _fallback_anchor(timestamp_ms)
        logger.warning(
            "Seed derivation degraded for session %s, using local random anchor (%s)",
            session_id,
            exc,
        )

    seed_input = SEED_DELIMITER.join(
        [
            session_id,
            str(timestamp_ms),
            secrets.token_hex(SEED_RANDOM_BYTES),
            anchor.block_hash,
            str(anchor.height),
            worker_id,
        ]
    )
    value = hashlib.sha256(seed_input.encode("utf-8")).hexdigest()

    return SessionSeed(
        value=value,
        session_id=session_id,
        derived_at_ms=timestamp_ms,
        anchor=anchor,
        degraded=degraded_reason is not None,
        degraded_reason=degraded_reason,
    )


def _raffle_digest(seed: str, chunk_id: str, participants: Sequence[str], timestamp_ms: int | None) -> bytes:
    mac = hmac.new(seed.encode("utf-8"), digestmod=hashlib.sha256)
    mac.update(chunk_id.encode("utf-8"))
    mac.update(SEED_DELIMITER.join(participants).encode("utf-8"))
    if timestamp_ms is not None:
        mac.update(str(int(timestamp_ms)).encode("utf-8"))
    return mac.digest()


def raffle(
    seed: str,
    chunk_id: str,
    participants: Sequence[str],
    timestamp_ms: int | None = None,
) -> RaffleResult:
    """
    Select the owner of chunk_id among participants.

    The result is a pure function of its inputs, so any holder of the seed
    can recompute it from the returned proof.
    """
    members = tuple(participants)
    if not members:
        raise EmptyParticipantSet(f"No participants to raffle chunk {chunk_id}")
    if len(set(members)) != len(members):
        raise ValueError("participants must be unique")

    digest = _raffle_digest(seed, chunk_id, members, timestamp_ms)
    random_value = int.from_bytes(digest[:WINNER_PREFIX_BYTES], "big")
    winner_index = random_value % len(members)
    winner = members[winner_index]

    proof = RaffleProof(
        seed=seed,
        chunk_id=chunk_id,
        participants=members,
        timestamp_ms=timestamp_ms,
        digest=digest.hex(),
        random_value=random_value,
        winner_index=winner_index,
        winner=winner,
    )
    return RaffleResult(winner=winner, proof=proof)


def verify_raffle(proof: RaffleProof) -> bool:
    if not proof.participants:
        return False
    try:
        recomputed = raffle(proof.seed, proof.chunk_id, proof.participants, proof.timestamp_ms)
    except ValueError:
        return False
    return hmac.compare_digest(recomputed.proof.digest, proof.digest) and recomputed.winner == proof.winner
