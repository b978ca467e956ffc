from typing import Any, Dict, Optional
from datetime import datetime, UTC
import logging

from buddymatch.constants import OFFERS, OFFER_PAIRS, OFFER_PENDING, OFFER_CANCELLED, CANCEL_MATCHED_ELSEWHERE
from buddymatch.schemas import Offer
from buddymatch.store.base import DocumentStore, Transaction, where
from buddymatch.utils.pair_key import canonicalize

logger = logging.getLogger(__name__)


async def close_offer_in_transaction(
    txn: Transaction,
    offer: Offer,
    status: str,
    now: datetime,
    fields: Optional[Dict[str, Any]] = None,
) -> None:
    """Move a pending offer to a terminal status and drop it from its pair document."""
    txn.update(OFFERS, offer.offer_id, {"status": status, "updatedAt": now, **(fields or {})})
    pair_key = canonicalize(offer.from_user_id, offer.to_user_id)
    pair = await txn.get(OFFER_PAIRS, pair_key)
    if pair and pair.get("pending", {}).get(offer.from_user_id) == offer.offer_id:
        pending = {uid: oid for uid, oid in pair["pending"].items() if uid != offer.from_user_id}
        if pending:
            txn.update(OFFER_PAIRS, pair_key, {"pending": pending})
        else:
            txn.delete(OFFER_PAIRS, pair_key)


async def _cancel_if_pending(txn: Transaction, offer_id: str, reason: str) -> bool:
    data = await txn.get(OFFERS, offer_id)
    if data is None or data.get("status") != OFFER_PENDING:
        return False
    offer = Offer.from_document(data)
    await close_offer_in_transaction(txn, offer, OFFER_CANCELLED, datetime.now(UTC), {"cancelReason": reason})
    return True


async def cleanup_pending_offers(
    store: DocumentStore,
    user_id: str,
    exclude_offer_id: Optional[str] = None,
    reason: str = CANCEL_MATCHED_ELSEWHERE,
) -> int:
    """Cancel every other pending offer sent by or to the user.

    Best-effort: each offer is cancelled in its own small transaction and a
    failure is logged and skipped. A survivor is harmless because ``respond``
    re-validates both presences before forming a match.
    Returns the number of offers cancelled.
    """
    outgoing = await store.query(OFFERS, where("fromUserId", "==", user_id), where("status", "==", OFFER_PENDING))
    incoming = await store.query(OFFERS, where("toUserId", "==", user_id), where("status", "==", OFFER_PENDING))
    cancelled = 0
    for snapshot in outgoing + incoming:
        if snapshot.id == exclude_offer_id:
            continue
        try:
            done = await store.run_transaction(
                lambda txn, offer_id=snapshot.id: _cancel_if_pending(txn, offer_id, reason)
            )
        except Exception:
            logger.exception(f"[cleanup_pending_offers] Failed to cancel offer {snapshot.id} for user {user_id}")
            continue
        if done:
            cancelled += 1
    if cancelled:
        logger.info(f"[cleanup_pending_offers] Cancelled {cancelled} offers for user {user_id}, reason={reason}")
    return cancelled
