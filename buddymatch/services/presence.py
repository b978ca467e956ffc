from datetime import datetime, timedelta, UTC
from typing import Optional
import logging

from buddymatch.config import PRESENCE_GRACE_MINUTES, MIN_DURATION_MINUTES, MAX_DURATION_MINUTES, MAX_SESSIONS_PER_HOUR
from buddymatch.constants import (
    PRESENCE,
    SESSION_HISTORY,
    PRESENCE_AVAILABLE,
    PRESENCE_MATCHED,
    CANCEL_PRESENCE_ENDED,
)
from buddymatch.errors import InvalidInput, RateLimited
from buddymatch.schemas import Presence, SessionHistory
from buddymatch.services.cleanup import cleanup_pending_offers
from buddymatch.services.matches import load_match
from buddymatch.store.base import DocumentStore, Transaction, new_id

logger = logging.getLogger(__name__)


def _validate(activity_tag: str, duration_minutes: int, lat: float, lng: float) -> None:
    if not activity_tag or not isinstance(activity_tag, str):
        raise InvalidInput("Activity is required")
    if not isinstance(duration_minutes, int) or not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
        raise InvalidInput(f"Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes")
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise InvalidInput("Valid coordinates are required")
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise InvalidInput("Coordinates are out of range")


async def _in_active_match(txn: Transaction, data: Optional[dict]) -> bool:
    if not data or data.get("status") != PRESENCE_MATCHED or not data.get("matchId"):
        return False
    match = await load_match(txn, data["matchId"])
    return match is not None and match.is_active


async def _record_session(txn: Transaction, user_id: str, now: datetime) -> None:
    """Keep the last hour of session starts and refuse once the hourly limit is used up."""
    if not MAX_SESSIONS_PER_HOUR:
        return
    data = await txn.get(SESSION_HISTORY, user_id)
    history = SessionHistory.from_document(data) if data else SessionHistory(user_id=user_id)
    recent = [t for t in history.started_at if t > now - timedelta(hours=1)]
    if len(recent) >= MAX_SESSIONS_PER_HOUR:
        raise RateLimited(f"Maximum {MAX_SESSIONS_PER_HOUR} sessions per hour, please try again later")
    history.started_at = recent + [now]
    txn.set(SESSION_HISTORY, user_id, history.to_document())


async def start_presence(
    store: DocumentStore,
    user_id: str,
    activity_tag: str,
    duration_minutes: int,
    lat: float,
    lng: float,
) -> Presence:
    """Start a fresh availability lease, replacing any previous one.

    The lease lasts ``duration_minutes`` plus a grace period and is never
    extended implicitly; calling this again is the only way to renew it.
    """
    _validate(activity_tag, duration_minutes, lat, lng)

    async def body(txn: Transaction) -> Presence:
        now = datetime.now(UTC)
        if await _in_active_match(txn, await txn.get(PRESENCE, user_id)):
            raise InvalidInput("You are already in an active match")
        await _record_session(txn, user_id, now)
        presence = Presence(
            user_id=user_id,
            activity_tag=activity_tag,
            duration_minutes=duration_minutes,
            lat=lat,
            lng=lng,
            session_id=new_id(),
            status=PRESENCE_AVAILABLE,
            expires_at=now + timedelta(minutes=duration_minutes + PRESENCE_GRACE_MINUTES),
            created_at=now,
            updated_at=now,
        )
        txn.set(PRESENCE, user_id, presence.to_document())
        return presence

    presence = await store.run_transaction(body)
    logger.info(f"[start_presence] user={user_id} session={presence.session_id} until {presence.expires_at.isoformat()}")
    return presence


async def end_presence(store: DocumentStore, user_id: str) -> bool:
    """End the user's availability. Returns False if there was nothing to end."""
    if await store.get(PRESENCE, user_id) is None:
        return False

    async def check(txn: Transaction) -> None:
        if await _in_active_match(txn, await txn.get(PRESENCE, user_id)):
            raise InvalidInput("Cannot end availability during an active match, cancel the match first")

    await store.run_transaction(check)
    await cleanup_pending_offers(store, user_id, reason=CANCEL_PRESENCE_ENDED)

    async def body(txn: Transaction) -> bool:
        data = await txn.get(PRESENCE, user_id)
        if data is None:
            return False
        if await _in_active_match(txn, data):
            raise InvalidInput("Cannot end availability during an active match, cancel the match first")
        txn.delete(PRESENCE, user_id)
        return True

    ended = await store.run_transaction(body)
    logger.info(f"[end_presence] user={user_id} ended={ended}")
    return ended


async def get_presence(store: DocumentStore, user_id: str, now: Optional[datetime] = None) -> Optional[Presence]:
    """The user's presence, or None if absent or past its expiry."""
    data = await store.get(PRESENCE, user_id)
    if data is None:
        return None
    presence = Presence.from_document(data)
    if presence.is_expired(now or datetime.now(UTC)):
        return None
    return presence
