"""Match formation and the rest of a match's lifecycle.

A match between two users is guarded by one document per canonical pair key
(``activeMatchesByPair/{pairKey}``). Formation reads the guard inside a
transaction and only creates a match when the guard is absent, so two
concurrent formations for the same pair collide on the guard write: the store
retries the loser, which then sees the guard and returns the winner's match.
The guard lives exactly as long as the match is active and is removed in the
same transaction that completes or cancels it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional, Tuple
import logging

from buddymatch.config import PENDING_MATCH_TIMEOUT_MINUTES
from buddymatch.constants import (
    MATCHES,
    MATCH_GUARDS,
    PRESENCE,
    PRESENCE_AVAILABLE,
    PRESENCE_MATCHED,
    MATCH_PENDING,
    MATCH_PLACE_CONFIRMED,
    MATCH_ACTIVE,
    MATCH_COMPLETED,
    MATCH_CANCELLED,
    MATCH_CANCELLED_BY_PARTICIPANT,
    USER_PENDING,
    USER_COMPLETED,
    USER_PROGRESS_STATUSES,
    USER_PROGRESS_ORDER,
    SYSTEM_ACTOR,
)
from buddymatch.errors import AlreadyResolved, InvalidInput, NotFound, PermissionDenied, StalePresence
from buddymatch.schemas import Match, MatchGuard, Presence
from buddymatch.services.cleanup import cleanup_pending_offers
from buddymatch.store.base import DocumentStore, Transaction, new_id
from buddymatch.utils.pair_key import canonicalize

logger = logging.getLogger(__name__)


@dataclass
class MatchContext:
    """Denormalized extras for a new match. Never used for correctness."""
    triggering_offer_id: Optional[str] = None
    activity_tag: Optional[str] = None
    coords: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class MatchResult:
    match_id: str
    is_new_match: bool


async def load_match(txn: Transaction, match_id: str) -> Optional[Match]:
    data = await txn.get(MATCHES, match_id)
    return Match.from_document(data) if data else None


async def require_match(txn: Transaction, match_id: str, user_id: Optional[str] = None) -> Match:
    """Load a match, checking the caller is a participant when ``user_id`` is given."""
    match = await load_match(txn, match_id)
    if match is None:
        raise NotFound(f"Match {match_id} not found")
    if user_id is not None and not match.is_participant(user_id):
        raise PermissionDenied("You are not part of this match")
    return match


async def _eligible_presence(txn: Transaction, user_id: str, now: datetime) -> Presence:
    data = await txn.get(PRESENCE, user_id)
    if data is None:
        raise StalePresence(user_id, f"User {user_id} is not available")
    presence = Presence.from_document(data)
    if presence.is_expired(now):
        raise StalePresence(user_id, f"Availability of user {user_id} has expired")
    if presence.status == PRESENCE_MATCHED and presence.match_id:
        current = await load_match(txn, presence.match_id)
        if current is not None and current.is_active:
            raise StalePresence(user_id, f"User {user_id} is already in an active match")
        logger.warning(f"[form_match] Presence of {user_id} still points to closed match {presence.match_id}")
    return presence


async def form_match_in_transaction(
    txn: Transaction,
    user_a: str,
    user_b: str,
    context: Optional[MatchContext] = None,
    now: Optional[datetime] = None,
) -> MatchResult:
    """Create-or-return the active match of a pair inside the caller's transaction.

    Raises StalePresence (an InvalidInput) when either user has no live
    presence or is already in another active match.
    """
    context = context or MatchContext()
    now = now or datetime.now(UTC)
    pair_key = canonicalize(user_a, user_b)

    guard_data = await txn.get(MATCH_GUARDS, pair_key)
    if guard_data is not None:
        guard = MatchGuard.from_document(guard_data)
        existing = await load_match(txn, guard.match_id)
        if existing is not None and existing.is_active:
            logger.info(f"[form_match] pair={pair_key} already matched: {guard.match_id}")
            return MatchResult(match_id=guard.match_id, is_new_match=False)
        # Guard left behind by a closed match; take it over
        logger.warning(f"[form_match] pair={pair_key} guard points to closed match {guard.match_id}, replacing")

    presence_a = await _eligible_presence(txn, user_a, now)
    presence_b = await _eligible_presence(txn, user_b, now)

    match = Match(
        match_id=new_id(),
        user1_id=user_a,
        user2_id=user_b,
        status=MATCH_PENDING,
        activity_tag=context.activity_tag or presence_a.activity_tag,
        triggering_offer_id=context.triggering_offer_id,
        user1_coords=context.coords.get(user_a, presence_a.coords),
        user2_coords=context.coords.get(user_b, presence_b.coords),
        status_by_user={user_a: USER_PENDING, user_b: USER_PENDING},
        expires_at=now + timedelta(minutes=PENDING_MATCH_TIMEOUT_MINUTES),
        created_at=now,
        updated_at=now,
    )
    guard = MatchGuard(pair_key=pair_key, match_id=match.match_id, created_at=now)

    txn.create(MATCHES, match.match_id, match.to_document())
    if guard_data is None:
        txn.create(MATCH_GUARDS, pair_key, guard.to_document())
    else:
        txn.set(MATCH_GUARDS, pair_key, guard.to_document())
    for user_id in (user_a, user_b):
        txn.update(PRESENCE, user_id, {"status": PRESENCE_MATCHED, "matchId": match.match_id, "updatedAt": now})

    logger.info(f"[form_match] pair={pair_key} new match {match.match_id}")
    return MatchResult(match_id=match.match_id, is_new_match=True)


async def reap_after_match(store: DocumentStore, user_ids, exclude_offer_id: Optional[str] = None) -> int:
    """Cancel the other pending offers of users who just entered a match."""
    cancelled = 0
    for user_id in user_ids:
        cancelled += await cleanup_pending_offers(store, user_id, exclude_offer_id=exclude_offer_id)
    return cancelled


async def form_match(
    store: DocumentStore,
    user_a: str,
    user_b: str,
    context: Optional[MatchContext] = None,
) -> MatchResult:
    """Atomically form (or find) the single active match between two users."""
    context = context or MatchContext()
    result = await store.run_transaction(
        lambda txn: form_match_in_transaction(txn, user_a, user_b, context)
    )
    if result.is_new_match:
        await reap_after_match(store, (user_a, user_b), context.triggering_offer_id)
    return result


async def release_guard_in_transaction(txn: Transaction, match: Match) -> bool:
    """Delete the pair's guard if it still points at this match."""
    pair_key = canonicalize(match.user1_id, match.user2_id)
    data = await txn.get(MATCH_GUARDS, pair_key)
    if data is None or data.get("matchId") != match.match_id:
        return False
    txn.delete(MATCH_GUARDS, pair_key)
    return True


async def close_match_in_transaction(
    txn: Transaction,
    match: Match,
    status: str,
    now: datetime,
    fields: Optional[Dict[str, Any]] = None,
) -> None:
    """Move an active match to ``completed`` or ``cancelled``.

    Releases the guard and detaches both presences from the match. On
    completion the presences are deleted; on cancellation unexpired ones go
    back to ``available`` and expired ones are deleted.
    """
    txn.update(MATCHES, match.match_id, {"status": status, "expiresAt": None, "updatedAt": now, **(fields or {})})
    released = await release_guard_in_transaction(txn, match)
    if not released:
        logger.warning(f"[close_match] No guard held by match {match.match_id}")
    for user_id in match.participants:
        data = await txn.get(PRESENCE, user_id)
        if data is None or data.get("matchId") != match.match_id:
            continue
        presence = Presence.from_document(data)
        if status == MATCH_COMPLETED or presence.is_expired(now):
            txn.delete(PRESENCE, user_id)
        else:
            txn.update(PRESENCE, user_id, {"status": PRESENCE_AVAILABLE, "matchId": None, "updatedAt": now})


async def get_match(store: DocumentStore, match_id: str, user_id: str) -> Match:
    data = await store.get(MATCHES, match_id)
    if data is None:
        raise NotFound(f"Match {match_id} not found")
    match = Match.from_document(data)
    if not match.is_participant(user_id):
        raise PermissionDenied("You are not part of this match")
    return match


async def cancel_match_in_transaction(
    txn: Transaction,
    match_id: str,
    by_user_id: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Match:
    now = now or datetime.now(UTC)
    match = await require_match(txn, match_id, None if by_user_id == SYSTEM_ACTOR else by_user_id)
    if not match.is_active:
        raise AlreadyResolved(f"Match {match_id} is already {match.status}")
    fields = {
        "cancelledBy": by_user_id,
        "cancellationReason": reason or MATCH_CANCELLED_BY_PARTICIPANT,
    }
    await close_match_in_transaction(txn, match, MATCH_CANCELLED, now, fields)
    return match.model_copy(update={"status": MATCH_CANCELLED, "updated_at": now, "expires_at": None,
                                    "cancelled_by": fields["cancelledBy"],
                                    "cancellation_reason": fields["cancellationReason"]})


async def cancel_match(store: DocumentStore, match_id: str, by_user_id: str, reason: Optional[str] = None) -> Match:
    """Cancel an active match; the pair may match again afterwards."""
    match = await store.run_transaction(
        lambda txn: cancel_match_in_transaction(txn, match_id, by_user_id, reason)
    )
    logger.info(f"[cancel_match] match={match_id} cancelled by {by_user_id}, reason={match.cancellation_reason}")
    return match


def _overall_status(match: Match, status_by_user: Dict[str, str]) -> Tuple[str, List[str]]:
    statuses = [status_by_user.get(uid, USER_PENDING) for uid in match.participants]
    if all(s == USER_COMPLETED for s in statuses):
        return MATCH_COMPLETED, []
    pending_confirmation = []
    if any(s == USER_COMPLETED for s in statuses):
        pending_confirmation = [uid for uid, s in zip(match.participants, statuses) if s != USER_COMPLETED]
    if match.status in (MATCH_PENDING, MATCH_PLACE_CONFIRMED) and any(s != USER_PENDING for s in statuses):
        return MATCH_ACTIVE, pending_confirmation
    return match.status, pending_confirmation


async def update_match_status(store: DocumentStore, match_id: str, user_id: str, status: str) -> Match:
    """Record a participant's progress (heading_there, arrived, completed)."""
    if status not in USER_PROGRESS_STATUSES:
        raise InvalidInput(f"Invalid status: {status}")

    async def body(txn: Transaction) -> Match:
        now = datetime.now(UTC)
        match = await require_match(txn, match_id, user_id)
        if not match.is_active:
            raise AlreadyResolved(f"Match {match_id} is already {match.status}")
        current = match.status_by_user.get(user_id, USER_PENDING)
        if current == status:
            return match
        if USER_PROGRESS_ORDER.index(status) < USER_PROGRESS_ORDER.index(current):
            raise InvalidInput(f"Cannot go back from {current} to {status}")

        status_by_user = {**match.status_by_user, user_id: status}
        overall, pending_confirmation = _overall_status(match, status_by_user)
        fields = {"statusByUser": status_by_user, "pendingConfirmationUids": pending_confirmation}
        if overall == MATCH_COMPLETED:
            await close_match_in_transaction(txn, match, MATCH_COMPLETED, now, fields)
        else:
            txn.update(MATCHES, match_id, {**fields, "status": overall, "expiresAt": None, "updatedAt": now})
        return match.model_copy(update={
            "status": overall,
            "status_by_user": status_by_user,
            "pending_confirmation_uids": pending_confirmation,
            "expires_at": None,
            "updated_at": now,
        })

    match = await store.run_transaction(body)
    logger.info(f"[update_match_status] match={match_id} user={user_id} -> {status}, overall={match.status}")
    return match
