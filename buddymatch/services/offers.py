"""Offer lifecycle: pending -> accepted | declined | cancelled | expired.

Every transition re-reads the offer inside a transaction and only moves it
out of ``pending``, so an offer changes status at most once. Creation is
serialized per pair through ``offerPairs/{pairKey}``, which records the
pending offer (if any) each side of the pair has sent; a reciprocal offer is
turned straight into a match instead of a second pending offer.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional
import logging

from buddymatch.config import OFFER_TTL_MINUTES, MAX_ACTIVE_OFFERS
from buddymatch.constants import (
    OFFERS,
    OFFER_PAIRS,
    PRESENCE,
    MATCH_GUARDS,
    PRESENCE_MATCHED,
    OFFER_PENDING,
    OFFER_ACCEPTED,
    OFFER_DECLINED,
    OFFER_CANCELLED,
    OFFER_EXPIRED,
    CANCEL_BY_SENDER,
)
from buddymatch.errors import (
    AlreadyResolved,
    InvalidInput,
    NotFound,
    OfferLimitReached,
    PermissionDenied,
    StalePresence,
)
from buddymatch.schemas import Offer, Presence
from buddymatch.services.cleanup import close_offer_in_transaction
from buddymatch.services.matches import MatchContext, form_match_in_transaction, load_match, reap_after_match
from buddymatch.store.base import DocumentStore, Transaction, new_id, where
from buddymatch.utils.pair_key import canonicalize

logger = logging.getLogger(__name__)

ACCEPT = "accept"
DECLINE = "decline"


@dataclass
class OfferResult:
    offer_id: Optional[str]
    match_created: bool = False
    match_id: Optional[str] = None


@dataclass
class RespondResult:
    status: str
    match_created: bool = False
    match_id: Optional[str] = None


async def _load_offer(txn: Transaction, offer_id: str) -> Optional[Offer]:
    data = await txn.get(OFFERS, offer_id)
    return Offer.from_document(data) if data else None


async def _live_presence(txn: Transaction, user_id: str, now: datetime, message: str) -> Presence:
    data = await txn.get(PRESENCE, user_id)
    if data is None:
        raise StalePresence(user_id, message)
    presence = Presence.from_document(data)
    if presence.is_expired(now):
        raise StalePresence(user_id, message)
    if presence.status == PRESENCE_MATCHED and presence.match_id:
        match = await load_match(txn, presence.match_id)
        if match is not None and match.is_active:
            raise StalePresence(user_id, f"User {user_id} is already in an active match")
    return presence


async def _is_live_pending(txn: Transaction, offer_id: str, now: datetime) -> Optional[Offer]:
    """Return the offer if it is pending and unexpired; expire it if it is pending but stale."""
    offer = await _load_offer(txn, offer_id)
    if offer is None or offer.status != OFFER_PENDING:
        return None
    if offer.is_expired(now):
        txn.update(OFFERS, offer_id, {"status": OFFER_EXPIRED, "updatedAt": now})
        return None
    return offer


def _write_pair(txn: Transaction, pair_key: str, pending: Dict[str, str], existed: bool) -> None:
    if pending:
        txn.set(OFFER_PAIRS, pair_key, {"pairKey": pair_key, "pending": pending})
    elif existed:
        txn.delete(OFFER_PAIRS, pair_key)


async def create_offer(
    store: DocumentStore,
    from_user_id: str,
    to_user_id: str,
    activity_tag: Optional[str] = None,
    explanation: Optional[str] = None,
    match_score: Optional[float] = None,
    distance_meters: Optional[float] = None,
) -> OfferResult:
    """Send an offer, or form the match right away if the target already offered back."""
    pair_key = canonicalize(from_user_id, to_user_id)

    async def body(txn: Transaction) -> OfferResult:
        now = datetime.now(UTC)

        guard = await txn.get(MATCH_GUARDS, pair_key)
        if guard is not None:
            match = await load_match(txn, guard["matchId"])
            if match is not None and match.is_active:
                logger.info(f"[create_offer] pair={pair_key} already has active match {match.match_id}")
                return OfferResult(offer_id=match.triggering_offer_id, match_id=match.match_id)

        sender = await _live_presence(txn, from_user_id, now, "You must set your availability first")
        recipient = await _live_presence(txn, to_user_id, now, "This person is no longer available")

        pair = await txn.get(OFFER_PAIRS, pair_key)
        pending = dict(pair.get("pending", {})) if pair else {}

        own_id = pending.pop(from_user_id, None)
        if own_id:
            own = await _is_live_pending(txn, own_id, now)
            if own is not None:
                logger.info(f"[create_offer] {from_user_id} already has pending offer {own_id} to {to_user_id}")
                return OfferResult(offer_id=own_id)

        reverse_id = pending.pop(to_user_id, None)
        if reverse_id:
            reverse = await _is_live_pending(txn, reverse_id, now)
            if reverse is not None:
                context = MatchContext(triggering_offer_id=reverse_id, activity_tag=reverse.activity_tag)
                result = await form_match_in_transaction(txn, to_user_id, from_user_id, context, now)
                txn.update(OFFERS, reverse_id, {
                    "status": OFFER_ACCEPTED,
                    "matchId": result.match_id,
                    "respondedAt": now,
                    "updatedAt": now,
                })
                _write_pair(txn, pair_key, pending, pair is not None)
                logger.info(f"[create_offer] Mutual interest on pair={pair_key}, offer {reverse_id} -> match {result.match_id}")
                return OfferResult(offer_id=reverse_id, match_created=result.is_new_match, match_id=result.match_id)

        outgoing = await txn.query(
            OFFERS,
            where("fromUserId", "==", from_user_id),
            where("status", "==", OFFER_PENDING),
            where("expiresAt", ">", now),
        )
        if len(outgoing) >= MAX_ACTIVE_OFFERS:
            raise OfferLimitReached(f"Maximum {MAX_ACTIVE_OFFERS} active offers allowed")

        offer = Offer(
            offer_id=new_id(),
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            activity_tag=activity_tag or sender.activity_tag,
            explanation=explanation,
            match_score=match_score,
            distance_meters=distance_meters,
            status=OFFER_PENDING,
            expires_at=min(now + timedelta(minutes=OFFER_TTL_MINUTES), sender.expires_at, recipient.expires_at),
            created_at=now,
            updated_at=now,
        )
        txn.create(OFFERS, offer.offer_id, offer.to_document())
        pending[from_user_id] = offer.offer_id
        _write_pair(txn, pair_key, pending, pair is not None)
        return OfferResult(offer_id=offer.offer_id)

    result = await store.run_transaction(body)
    if result.match_created:
        await reap_after_match(store, (from_user_id, to_user_id), exclude_offer_id=result.offer_id)
    logger.info(f"[create_offer] {from_user_id} -> {to_user_id}: offer={result.offer_id}, match={result.match_id}")
    return result


async def respond_offer(store: DocumentStore, offer_id: str, user_id: str, action: str) -> RespondResult:
    """Accept or decline an offer addressed to ``user_id``.

    Accepting forms the match in the same transaction that marks the offer
    accepted. If the sender is no longer available the offer is marked
    expired and StalePresence is raised once that is committed.
    """
    if action not in (ACCEPT, DECLINE):
        raise InvalidInput(f"Invalid action: {action}")

    participants: List[str] = []

    async def body(txn: Transaction):
        now = datetime.now(UTC)
        offer = await _load_offer(txn, offer_id)
        if offer is None:
            raise NotFound(f"Offer {offer_id} not found")
        if offer.to_user_id != user_id:
            raise PermissionDenied("This offer is not addressed to you")
        participants[:] = [offer.to_user_id, offer.from_user_id]
        if offer.status != OFFER_PENDING:
            raise AlreadyResolved(f"Offer {offer_id} is already {offer.status}")

        if offer.is_expired(now):
            await close_offer_in_transaction(txn, offer, OFFER_EXPIRED, now)
            return RespondResult(status=OFFER_EXPIRED), InvalidInput("This offer has expired")

        if action == DECLINE:
            await close_offer_in_transaction(txn, offer, OFFER_DECLINED, now, {"respondedAt": now})
            return RespondResult(status=OFFER_DECLINED), None

        context = MatchContext(triggering_offer_id=offer_id, activity_tag=offer.activity_tag)
        try:
            result = await form_match_in_transaction(txn, offer.to_user_id, offer.from_user_id, context, now)
        except StalePresence as e:
            if e.user_id != offer.from_user_id:
                raise
            await close_offer_in_transaction(txn, offer, OFFER_EXPIRED, now)
            return RespondResult(status=OFFER_EXPIRED), e

        await close_offer_in_transaction(
            txn, offer, OFFER_ACCEPTED, now, {"matchId": result.match_id, "respondedAt": now}
        )
        return RespondResult(status=OFFER_ACCEPTED, match_created=result.is_new_match, match_id=result.match_id), None

    outcome, error = await store.run_transaction(body)
    logger.info(f"[respond_offer] offer={offer_id} by {user_id}: {action} -> {outcome.status}")
    if error is not None:
        raise error
    if outcome.match_created:
        await reap_after_match(store, participants, exclude_offer_id=offer_id)
    return outcome


async def cancel_offer(store: DocumentStore, offer_id: str, user_id: str) -> Offer:
    """Withdraw a pending offer. Only the sender may cancel."""

    async def body(txn: Transaction) -> Offer:
        now = datetime.now(UTC)
        offer = await _load_offer(txn, offer_id)
        if offer is None:
            raise NotFound(f"Offer {offer_id} not found")
        if offer.from_user_id != user_id:
            raise PermissionDenied("Only the sender can cancel an offer")
        if offer.status != OFFER_PENDING:
            raise AlreadyResolved(f"Offer {offer_id} is already {offer.status}")
        await close_offer_in_transaction(txn, offer, OFFER_CANCELLED, now, {"cancelReason": CANCEL_BY_SENDER})
        return offer.model_copy(update={"status": OFFER_CANCELLED, "cancel_reason": CANCEL_BY_SENDER, "updated_at": now})

    offer = await store.run_transaction(body)
    logger.info(f"[cancel_offer] offer={offer_id} cancelled by {user_id}")
    return offer


async def expire_offer(store: DocumentStore, offer_id: str, now: Optional[datetime] = None) -> bool:
    """Expire a pending offer past its deadline. Returns False if there was nothing to do."""

    async def body(txn: Transaction) -> bool:
        current = now or datetime.now(UTC)
        offer = await _load_offer(txn, offer_id)
        if offer is None or offer.status != OFFER_PENDING or not offer.is_expired(current):
            return False
        await close_offer_in_transaction(txn, offer, OFFER_EXPIRED, current)
        return True

    return await store.run_transaction(body)


async def _list_pending(store: DocumentStore, field: str, user_id: str, now: Optional[datetime]) -> List[Offer]:
    now = now or datetime.now(UTC)
    snapshots = await store.query(
        OFFERS,
        where(field, "==", user_id),
        where("status", "==", OFFER_PENDING),
        where("expiresAt", ">", now),
    )
    offers = [Offer.from_document(s.data) for s in snapshots]
    offers.sort(key=lambda o: o.created_at, reverse=True)
    return offers


async def list_inbox(store: DocumentStore, user_id: str, now: Optional[datetime] = None) -> List[Offer]:
    return await _list_pending(store, "toUserId", user_id, now)


async def list_outgoing(store: DocumentStore, user_id: str, now: Optional[datetime] = None) -> List[Offer]:
    return await _list_pending(store, "fromUserId", user_id, now)
