"""Scheduled cleanup of time-boxed records past their ``expiresAt``.

That covers presences, pending offers and matches left in ``pending``
beyond their deadline.

Each run handles at most ``batch_size`` records per kind, one small
transaction per record, so it is safe to run concurrently with itself and
with user traffic: a record another run already removed, or a presence that
was renewed in the meantime, is simply skipped.
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Optional, Tuple
import asyncio
import logging

from buddymatch.config import SWEEP_BATCH_SIZE, SWEEP_INTERVAL_SECONDS
from buddymatch.constants import (
    PRESENCE,
    OFFERS,
    MATCHES,
    PRESENCE_MATCHED,
    OFFER_PENDING,
    MATCH_PENDING,
    MATCH_TIMEOUT_PENDING,
    SYSTEM_ACTOR,
    SYSTEM_PRESENCE_EXPIRED,
)
from buddymatch.schemas import Presence
from buddymatch.services.matches import cancel_match_in_transaction, load_match
from buddymatch.services.offers import expire_offer
from buddymatch.store.base import DocumentStore, Transaction, where

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    presences_deleted: int = 0
    offers_expired: int = 0
    matches_cancelled: int = 0
    matches_timed_out: int = 0

    @property
    def removed(self) -> int:
        return self.presences_deleted + self.offers_expired


async def _sweep_presence(txn: Transaction, user_id: str, now: datetime) -> Tuple[bool, bool]:
    data = await txn.get(PRESENCE, user_id)
    if data is None:
        return False, False
    presence = Presence.from_document(data)
    if not presence.is_expired(now):
        return False, False
    cancelled = False
    if presence.status == PRESENCE_MATCHED and presence.match_id:
        match = await load_match(txn, presence.match_id)
        if match is not None and match.is_active:
            await cancel_match_in_transaction(txn, match.match_id, SYSTEM_ACTOR, SYSTEM_PRESENCE_EXPIRED, now)
            cancelled = True
    txn.delete(PRESENCE, user_id)
    return True, cancelled


async def _sweep_pending_match(txn: Transaction, match_id: str, now: datetime) -> bool:
    match = await load_match(txn, match_id)
    if match is None or not match.is_stale_pending(now):
        return False
    await cancel_match_in_transaction(txn, match_id, SYSTEM_ACTOR, MATCH_TIMEOUT_PENDING, now)
    return True


async def sweep_expired(
    store: DocumentStore,
    now: Optional[datetime] = None,
    batch_size: int = SWEEP_BATCH_SIZE,
) -> SweepResult:
    """Delete expired presences, expire stale pending offers and cancel matches stuck in pending."""
    now = now or datetime.now(UTC)
    result = SweepResult()

    presences = await store.query(PRESENCE, where("expiresAt", "<=", now), limit=batch_size)
    for snapshot in presences:
        try:
            deleted, cancelled = await store.run_transaction(
                lambda txn, user_id=snapshot.id: _sweep_presence(txn, user_id, now)
            )
        except Exception:
            logger.exception(f"[sweep_expired] Failed to remove presence of {snapshot.id}")
            continue
        result.presences_deleted += int(deleted)
        result.matches_cancelled += int(cancelled)

    offers = await store.query(
        OFFERS,
        where("status", "==", OFFER_PENDING),
        where("expiresAt", "<=", now),
        limit=batch_size,
    )
    for snapshot in offers:
        try:
            expired = await expire_offer(store, snapshot.id, now)
        except Exception:
            logger.exception(f"[sweep_expired] Failed to expire offer {snapshot.id}")
            continue
        result.offers_expired += int(expired)

    matches = await store.query(
        MATCHES,
        where("status", "==", MATCH_PENDING),
        where("expiresAt", "<=", now),
        limit=batch_size,
    )
    for snapshot in matches:
        try:
            timed_out = await store.run_transaction(
                lambda txn, match_id=snapshot.id: _sweep_pending_match(txn, match_id, now)
            )
        except Exception:
            logger.exception(f"[sweep_expired] Failed to cancel stale pending match {snapshot.id}")
            continue
        result.matches_timed_out += int(timed_out)

    logger.info(
        f"[sweep_expired] presences_deleted={result.presences_deleted} offers_expired={result.offers_expired} "
        f"matches_cancelled={result.matches_cancelled} matches_timed_out={result.matches_timed_out}"
    )
    return result


async def run_sweeper(
    store: DocumentStore,
    interval: float = SWEEP_INTERVAL_SECONDS,
    iterations: Optional[int] = None,
) -> None:
    """Run ``sweep_expired`` every ``interval`` seconds, forever unless ``iterations`` is given."""
    done = 0
    while iterations is None or done < iterations:
        try:
            await sweep_expired(store)
        except Exception:
            logger.exception("[run_sweeper] Sweep failed, will retry on next tick")
        done += 1
        if iterations is None or done < iterations:
            await asyncio.sleep(interval)
