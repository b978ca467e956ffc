import asyncio
import pytest
from datetime import datetime, timedelta, UTC

from conftest import put_presence
from buddymatch.constants import (
    MATCHES,
    OFFERS,
    OFFER_PAIRS,
    PRESENCE,
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
from buddymatch.services.matches import form_match
from buddymatch.services.offers import (
    create_offer,
    respond_offer,
    cancel_offer,
    expire_offer,
    list_inbox,
    list_outgoing,
)
from buddymatch.utils.pair_key import canonicalize

pytestmark = pytest.mark.asyncio


async def make_users(factory, *user_ids):
    for uid in user_ids:
        await factory(uid)


async def test_create_offer_is_pending_and_bounded_by_ttl(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    before = datetime.now(UTC)

    result = await create_offer(store, "alice", "bob", explanation="likes coffee", match_score=0.9)

    assert result.match_created is False
    offer = await store.get(OFFERS, result.offer_id)
    assert offer["status"] == OFFER_PENDING
    assert offer["fromUserId"] == "alice" and offer["toUserId"] == "bob"
    assert offer["activityTag"] == "coffee"
    assert offer["explanation"] == "likes coffee"
    assert offer["expiresAt"] <= before + timedelta(minutes=11)
    pair = await store.get(OFFER_PAIRS, canonicalize("alice", "bob"))
    assert pair["pending"] == {"alice": result.offer_id}


async def test_offer_expiry_is_capped_by_presence_expiry(store, presence_factory):
    await presence_factory("alice")
    bob = await presence_factory("bob", expires_in=timedelta(minutes=3))

    result = await create_offer(store, "alice", "bob")

    offer = await store.get(OFFERS, result.offer_id)
    assert offer["expiresAt"] == bob["expiresAt"]


async def test_duplicate_offer_returns_existing(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    first = await create_offer(store, "alice", "bob")
    second = await create_offer(store, "alice", "bob")
    assert second.offer_id == first.offer_id
    assert store.count(OFFERS) == 1


async def test_outstanding_offer_limit(store, presence_factory):
    await make_users(presence_factory, "alice", "b1", "b2", "b3", "b4")
    for target in ("b1", "b2", "b3"):
        await create_offer(store, "alice", target)
    with pytest.raises(OfferLimitReached):
        await create_offer(store, "alice", "b4")


async def test_sender_without_presence_cannot_offer(store, presence_factory):
    await presence_factory("bob")
    with pytest.raises(InvalidInput):
        await create_offer(store, "alice", "bob")


async def test_offer_to_user_in_another_match_is_rejected(store, presence_factory):
    await make_users(presence_factory, "alice", "bob", "carol")
    await form_match(store, "bob", "carol")
    with pytest.raises(StalePresence):
        await create_offer(store, "alice", "bob")


async def test_offer_to_current_match_partner_returns_that_match(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    match = await form_match(store, "alice", "bob")
    result = await create_offer(store, "alice", "bob")
    assert result.match_id == match.match_id
    assert result.match_created is False


async def test_reciprocal_offer_forms_match(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    first = await create_offer(store, "alice", "bob")

    second = await create_offer(store, "bob", "alice")

    assert second.match_created is True
    assert second.offer_id == first.offer_id
    offer = await store.get(OFFERS, first.offer_id)
    assert offer["status"] == OFFER_ACCEPTED
    assert offer["matchId"] == second.match_id
    assert store.count(OFFERS) == 1
    assert await store.get(OFFER_PAIRS, canonicalize("alice", "bob")) is None


async def test_simultaneous_reciprocal_offers_create_one_match(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")

    results = await asyncio.gather(create_offer(store, "alice", "bob"), create_offer(store, "bob", "alice"))

    assert store.count(MATCHES) == 1
    assert sum(r.match_created for r in results) == 1
    match_id = next(r.match_id for r in results if r.match_created)
    for uid in ("alice", "bob"):
        presence = await store.get(PRESENCE, uid)
        assert presence["status"] == PRESENCE_MATCHED
        assert presence["matchId"] == match_id
    offers = await store.query(OFFERS)
    assert offers
    assert all(s.data["status"] != OFFER_PENDING for s in offers)


async def test_accept_forms_match(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")

    result = await respond_offer(store, offer.offer_id, "bob", "accept")

    assert result.status == OFFER_ACCEPTED
    assert result.match_created is True
    stored = await store.get(OFFERS, offer.offer_id)
    assert stored["status"] == OFFER_ACCEPTED
    assert stored["matchId"] == result.match_id
    assert stored["respondedAt"] is not None
    match = await store.get(MATCHES, result.match_id)
    assert match["triggeringOfferId"] == offer.offer_id


async def test_decline(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")

    result = await respond_offer(store, offer.offer_id, "bob", "decline")

    assert result.status == OFFER_DECLINED
    assert result.match_id is None
    assert store.count(MATCHES) == 0
    assert await store.get(OFFER_PAIRS, canonicalize("alice", "bob")) is None


async def test_concurrent_accepts_resolve_once(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")

    outcomes = await asyncio.gather(
        respond_offer(store, offer.offer_id, "bob", "accept"),
        respond_offer(store, offer.offer_id, "bob", "accept"),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], AlreadyResolved)
    assert store.count(MATCHES) == 1


async def test_terminal_offer_never_changes_again(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")
    accepted = await respond_offer(store, offer.offer_id, "bob", "accept")
    before = await store.get(OFFERS, offer.offer_id)

    with pytest.raises(AlreadyResolved):
        await respond_offer(store, offer.offer_id, "bob", "decline")
    with pytest.raises(AlreadyResolved):
        await cancel_offer(store, offer.offer_id, "alice")
    assert await expire_offer(store, offer.offer_id, datetime.now(UTC) + timedelta(days=1)) is False

    after = await store.get(OFFERS, offer.offer_id)
    assert after == before
    assert after["matchId"] == accepted.match_id


async def test_only_recipient_can_respond(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")
    with pytest.raises(PermissionDenied):
        await respond_offer(store, offer.offer_id, "alice", "accept")


async def test_invalid_action_and_unknown_offer(store, presence_factory):
    with pytest.raises(InvalidInput):
        await respond_offer(store, "whatever", "bob", "maybe")
    with pytest.raises(NotFound):
        await respond_offer(store, "missing", "bob", "accept")


async def test_accept_with_expired_own_presence_fails_without_match(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "bob", "alice")
    await put_presence(store, "alice", expires_in=timedelta(minutes=-1))

    with pytest.raises(InvalidInput) as exc:
        await respond_offer(store, offer.offer_id, "alice", "accept")

    assert exc.value.code == "stale_presence"
    assert store.count(MATCHES) == 0


async def test_accept_after_sender_left_expires_offer(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")
    await store.delete(PRESENCE, "alice")

    with pytest.raises(StalePresence):
        await respond_offer(store, offer.offer_id, "bob", "accept")

    assert (await store.get(OFFERS, offer.offer_id))["status"] == OFFER_EXPIRED
    assert store.count(MATCHES) == 0


async def test_respond_to_expired_offer(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")

    async def backdate(txn):
        txn.update(OFFERS, offer.offer_id, {"expiresAt": datetime.now(UTC) - timedelta(seconds=1)})
    await store.run_transaction(backdate)

    with pytest.raises(InvalidInput):
        await respond_offer(store, offer.offer_id, "bob", "accept")
    assert (await store.get(OFFERS, offer.offer_id))["status"] == OFFER_EXPIRED


async def test_cancel_by_sender_only(store, presence_factory):
    await make_users(presence_factory, "alice", "bob")
    offer = await create_offer(store, "alice", "bob")

    with pytest.raises(PermissionDenied):
        await cancel_offer(store, offer.offer_id, "bob")
    cancelled = await cancel_offer(store, offer.offer_id, "alice")

    assert cancelled.status == OFFER_CANCELLED
    stored = await store.get(OFFERS, offer.offer_id)
    assert stored["status"] == OFFER_CANCELLED
    assert stored["cancelReason"] == CANCEL_BY_SENDER
    again = await create_offer(store, "alice", "bob")
    assert again.offer_id != offer.offer_id


async def test_inbox_and_outgoing(store, presence_factory):
    await make_users(presence_factory, "alice", "bob", "carol")
    to_bob = await create_offer(store, "alice", "bob")
    carol_to_bob = await create_offer(store, "carol", "bob")
    await cancel_offer(store, carol_to_bob.offer_id, "carol")

    inbox = await list_inbox(store, "bob")
    outgoing = await list_outgoing(store, "alice")

    assert [o.offer_id for o in inbox] == [to_bob.offer_id]
    assert [o.offer_id for o in outgoing] == [to_bob.offer_id]
    assert await list_outgoing(store, "carol") == []
