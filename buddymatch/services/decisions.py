"""First-confirm-wins decisions on an existing match.

A decision is a single-assignment field on the match document. The first
transaction to commit a value wins; any other confirmation re-reads the match
inside its own transaction, finds the field populated and fails with
AlreadyDecided instead of overwriting it.
"""
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, Optional, Tuple
import logging

from buddymatch.constants import MATCHES, ACTIVE_MATCH_STATUSES, MATCH_PENDING, MATCH_PLACE_CONFIRMED
from buddymatch.errors import AlreadyDecided, AlreadyResolved, NotFound, PermissionDenied
from buddymatch.schemas import Match
from buddymatch.services.places import get_place
from buddymatch.store.base import DocumentStore, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Describes one single-slot decision stored on the match document."""
    name: str
    value_field: str
    decided_by_field: str
    decided_at_field: Optional[str] = None
    eligible_statuses: Tuple[str, ...] = ACTIVE_MATCH_STATUSES
    advance: Dict[str, str] = field(default_factory=dict)


PLACE_DECISION = Decision(
    name="place",
    value_field="confirmedPlaceId",
    decided_by_field="placeConfirmedBy",
    decided_at_field="placeConfirmedAt",
    advance={MATCH_PENDING: MATCH_PLACE_CONFIRMED},
)


def _check_eligible(decision: Decision, match_id: str, data: Dict[str, Any], by_user_id: str) -> None:
    if by_user_id not in (data.get("user1Id"), data.get("user2Id")):
        raise PermissionDenied("You are not part of this match")
    if data.get("status") not in decision.eligible_statuses:
        raise AlreadyResolved(f"Match {match_id} is already {data.get('status')}")
    if data.get(decision.value_field) is not None:
        raise AlreadyDecided(f"The {decision.name} for match {match_id} was already decided")


async def confirm_first(
    store: DocumentStore,
    decision: Decision,
    match_id: str,
    value: Any,
    by_user_id: str,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> Match:
    """Persist ``value`` for ``decision`` unless someone already decided it."""
    data = await store.get(MATCHES, match_id)
    if data is None:
        raise NotFound(f"Match {match_id} not found")
    _check_eligible(decision, match_id, data, by_user_id)

    async def body(txn: Transaction) -> Match:
        now = datetime.now(UTC)
        current = await txn.get(MATCHES, match_id)
        if current is None:
            raise NotFound(f"Match {match_id} not found")
        _check_eligible(decision, match_id, current, by_user_id)
        updates = {
            decision.value_field: value,
            decision.decided_by_field: by_user_id,
            "updatedAt": now,
            **(extra_fields or {}),
        }
        if decision.decided_at_field:
            updates[decision.decided_at_field] = now
        next_status = decision.advance.get(current["status"])
        if next_status:
            updates["status"] = next_status
            updates["expiresAt"] = None
        txn.update(MATCHES, match_id, updates)
        return Match.from_document({**current, **updates})

    match = await store.run_transaction(body)
    logger.info(f"[confirm_first] match={match_id} {decision.name}={value} decided by {by_user_id}")
    return match


async def confirm_place(store: DocumentStore, match_id: str, place_id: str, by_user_id: str) -> Dict[str, Optional[str]]:
    place = await get_place(store, place_id)
    match = await confirm_first(
        store,
        PLACE_DECISION,
        match_id,
        place.place_id,
        by_user_id,
        {"confirmedPlaceName": place.name, "confirmedPlaceAddress": place.address},
    )
    return {"placeName": match.confirmed_place_name, "placeAddress": match.confirmed_place_address}
