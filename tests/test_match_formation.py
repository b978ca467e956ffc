import asyncio
import pytest
from datetime import timedelta

from buddymatch.constants import (
    MATCHES,
    OFFERS,
    MATCH_GUARDS,
    PRESENCE,
    PRESENCE_MATCHED,
    MATCH_PENDING,
    MATCH_CANCELLED,
    OFFER_PENDING,
    OFFER_CANCELLED,
    CANCEL_MATCHED_ELSEWHERE,
)
from buddymatch.errors import InvalidInput, StalePresence
from buddymatch.services.matches import MatchContext, form_match, cancel_match
from buddymatch.services.cleanup import cleanup_pending_offers
from buddymatch.services.offers import create_offer
from buddymatch.utils.pair_key import canonicalize

pytestmark = pytest.mark.asyncio


async def test_form_match_creates_match_guard_and_updates_presences(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")

    result = await form_match(store, "alice", "bob", MatchContext(activity_tag="coffee"))

    assert result.is_new_match is True
    match = await store.get(MATCHES, result.match_id)
    assert match["status"] == MATCH_PENDING
    assert {match["user1Id"], match["user2Id"]} == {"alice", "bob"}
    assert match["statusByUser"] == {"alice": "pending", "bob": "pending"}
    assert match["pendingConfirmationUids"] == []
    guard = await store.get(MATCH_GUARDS, canonicalize("alice", "bob"))
    assert guard["matchId"] == result.match_id
    for uid in ("alice", "bob"):
        presence = await store.get(PRESENCE, uid)
        assert presence["status"] == PRESENCE_MATCHED
        assert presence["matchId"] == result.match_id


async def test_second_call_returns_existing_match_without_writes(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")
    first = await form_match(store, "alice", "bob")
    snapshot = dict(store._docs)

    second = await form_match(store, "bob", "alice")

    assert second.is_new_match is False
    assert second.match_id == first.match_id
    assert store._docs == snapshot


async def test_concurrent_formation_yields_exactly_one_new_match(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")

    results = await asyncio.gather(*[form_match(store, "alice", "bob") for _ in range(10)])

    assert sum(r.is_new_match for r in results) == 1
    assert len({r.match_id for r in results}) == 1
    assert store.count(MATCHES) == 1
    assert store.count(MATCH_GUARDS) == 1


async def test_concurrent_formation_is_symmetric(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")

    calls = [form_match(store, "alice", "bob") if i % 2 else form_match(store, "bob", "alice") for i in range(8)]
    results = await asyncio.gather(*calls)

    assert sum(r.is_new_match for r in results) == 1
    assert len({r.match_id for r in results}) == 1
    assert store.count(MATCHES) == 1


async def test_matched_presences_point_to_matches_that_include_them(store, presence_factory):
    users = ["u1", "u2", "u3", "u4"]
    for uid in users:
        await presence_factory(uid)
    pairs = [("u1", "u2"), ("u1", "u3"), ("u2", "u4"), ("u3", "u4"), ("u2", "u1")]

    outcomes = await asyncio.gather(*[form_match(store, a, b) for a, b in pairs], return_exceptions=True)

    for outcome in outcomes:
        assert not isinstance(outcome, Exception) or isinstance(outcome, StalePresence)
    for uid in users:
        presence = await store.get(PRESENCE, uid)
        if presence["status"] == PRESENCE_MATCHED:
            match = await store.get(MATCHES, presence["matchId"])
            assert uid in (match["user1Id"], match["user2Id"])
    assert store.count(MATCH_GUARDS) == store.count(MATCHES)


async def test_missing_presence_is_stale(store, presence_factory):
    await presence_factory("alice")
    with pytest.raises(StalePresence) as exc:
        await form_match(store, "alice", "bob")
    assert exc.value.user_id == "bob"
    assert store.count(MATCHES) == 0


async def test_expired_presence_is_stale(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob", expires_in=timedelta(minutes=-1))
    with pytest.raises(InvalidInput):
        await form_match(store, "alice", "bob")
    assert store.count(MATCH_GUARDS) == 0


async def test_user_matched_to_third_party_is_stale(store, presence_factory):
    for uid in ("alice", "bob", "carol"):
        await presence_factory(uid)
    await form_match(store, "alice", "bob")

    with pytest.raises(StalePresence) as exc:
        await form_match(store, "carol", "alice")
    assert exc.value.user_id == "alice"


async def test_self_pairing_is_rejected(store, presence_factory):
    await presence_factory("alice")
    with pytest.raises(InvalidInput):
        await form_match(store, "alice", "alice")


async def test_guard_of_closed_match_is_replaced(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")
    first = await form_match(store, "alice", "bob")
    # Leave the guard behind as if its release had been lost
    await store.run_transaction(lambda txn: _mark_cancelled(txn, first.match_id))

    second = await form_match(store, "alice", "bob")

    assert second.is_new_match is True
    assert second.match_id != first.match_id
    guard = await store.get(MATCH_GUARDS, canonicalize("alice", "bob"))
    assert guard["matchId"] == second.match_id


async def _mark_cancelled(txn, match_id):
    txn.update(MATCHES, match_id, {"status": MATCH_CANCELLED})


async def test_new_match_reaps_other_pending_offers_but_not_the_trigger(store, presence_factory):
    for uid in ("alice", "bob", "carol", "dave"):
        await presence_factory(uid)
    trigger = await create_offer(store, "alice", "bob")
    to_carol = await create_offer(store, "alice", "carol")
    from_dave = await create_offer(store, "dave", "bob")

    await form_match(store, "bob", "alice", MatchContext(triggering_offer_id=trigger.offer_id))

    assert (await store.get(OFFERS, trigger.offer_id))["status"] == OFFER_PENDING
    for offer_id in (to_carol.offer_id, from_dave.offer_id):
        offer = await store.get(OFFERS, offer_id)
        assert offer["status"] == OFFER_CANCELLED
        assert offer["cancelReason"] == CANCEL_MATCHED_ELSEWHERE


async def test_cleanup_skips_failed_offer(store, presence_factory, monkeypatch, caplog):
    for uid in ("alice", "bob", "carol"):
        await presence_factory(uid)
    await create_offer(store, "alice", "bob")
    await create_offer(store, "alice", "carol")

    original = store.run_transaction
    calls = []

    async def flaky(fn, max_attempts=None):
        calls.append(fn)
        if len(calls) == 1:
            raise RuntimeError("store unavailable")
        return await original(fn, max_attempts)

    monkeypatch.setattr(store, "run_transaction", flaky)
    cancelled = await cleanup_pending_offers(store, "alice")

    assert cancelled == 1
    assert len(calls) == 2
    statuses = sorted(s.data["status"] for s in await store.query(OFFERS))
    assert statuses == [OFFER_CANCELLED, OFFER_PENDING]
    assert "Failed to cancel offer" in caplog.text


async def test_pair_can_match_again_after_cancellation(store, presence_factory):
    await presence_factory("alice")
    await presence_factory("bob")
    first = await form_match(store, "alice", "bob")
    await cancel_match(store, first.match_id, "alice")

    second = await form_match(store, "alice", "bob")

    assert second.is_new_match is True
    assert second.match_id != first.match_id
