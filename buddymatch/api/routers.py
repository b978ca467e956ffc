from fastapi import FastAPI, APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from typing import List, Optional
import logging

from buddymatch.db import get_default_store
from buddymatch.errors import MatchingError
from buddymatch.store.base import DocumentStore
from buddymatch.services import presence as presence_service
from buddymatch.services import offers as offer_service
from buddymatch.services import matches as match_service
from buddymatch.services.decisions import confirm_place
from buddymatch.services.sweeper import sweep_expired
from buddymatch.utils import idempotency
from .schemas import (
    PresenceStartRequest,
    PresenceStartResponse,
    PresenceView,
    PresenceEndResponse,
    OfferCreateRequest,
    OfferCreateResponse,
    OfferRespondRequest,
    OfferRespondResponse,
    OfferView,
    MatchView,
    ConfirmPlaceRequest,
    ConfirmPlaceResponse,
    MatchStatusRequest,
    MatchCancelRequest,
    SweepResponse,
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Buddymatch API",
    description="Presence, offers and match formation for nearby users",
    version="1.0.0"
)

presence_router = APIRouter()
offers_router = APIRouter()
matches_router = APIRouter()
admin_router = APIRouter()


def get_store() -> DocumentStore:
    """FastAPI dependency for the document store"""
    return get_default_store()


def get_idempotency_client():
    return idempotency.redis


async def get_caller(x_user_id: Optional[str] = Header(None)) -> str:
    """Trusted caller identity set by the upstream identity provider"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return x_user_id


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    if exc.status_code >= 500:
        logger.warning(f"[{request.url.path}] {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})


@presence_router.post("/start", response_model=PresenceStartResponse)
async def start_presence(
    body: PresenceStartRequest,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> PresenceStartResponse:
    """Start a new availability lease"""
    presence = await presence_service.start_presence(
        store, caller, body.activity_tag, body.duration_minutes, body.lat, body.lng
    )
    return PresenceStartResponse(session_id=presence.session_id, expires_at=presence.expires_at)


@presence_router.post("/end", response_model=PresenceEndResponse)
async def end_presence(
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> PresenceEndResponse:
    ended = await presence_service.end_presence(store, caller)
    return PresenceEndResponse(ended=ended)


@presence_router.get("", response_model=Optional[PresenceView])
async def get_presence(
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
):
    presence = await presence_service.get_presence(store, caller)
    if presence is None:
        return None
    return PresenceView.model_validate(presence, from_attributes=True)


@offers_router.post("", response_model=OfferCreateResponse)
async def create_offer(
    body: OfferCreateRequest,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
    cache=Depends(get_idempotency_client),
    idempotency_key: Optional[str] = Header(None)
):
    """Send an offer; a reciprocal offer forms the match immediately"""
    cached = await idempotency.get_cached_result(caller, "offer.create", idempotency_key, cache)
    if cached is not None:
        return cached
    result = await offer_service.create_offer(
        store,
        caller,
        body.target_user_id,
        activity_tag=body.activity_tag,
        explanation=body.explanation,
        match_score=body.match_score,
        distance_meters=body.distance_meters,
    )
    response = OfferCreateResponse(
        offer_id=result.offer_id, match_created=result.match_created, match_id=result.match_id
    )
    await idempotency.cache_result(caller, "offer.create", idempotency_key, response.model_dump(by_alias=True), cache)
    return response


@offers_router.post("/{offer_id}/respond", response_model=OfferRespondResponse)
async def respond_offer(
    offer_id: str,
    body: OfferRespondRequest,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store),
    cache=Depends(get_idempotency_client),
    idempotency_key: Optional[str] = Header(None)
):
    cached = await idempotency.get_cached_result(caller, f"offer.respond:{offer_id}", idempotency_key, cache)
    if cached is not None:
        return cached
    result = await offer_service.respond_offer(store, offer_id, caller, body.action)
    response = OfferRespondResponse(
        status=result.status, match_created=result.match_created, match_id=result.match_id
    )
    await idempotency.cache_result(
        caller, f"offer.respond:{offer_id}", idempotency_key, response.model_dump(by_alias=True), cache
    )
    return response


@offers_router.post("/{offer_id}/cancel", response_model=OfferView)
async def cancel_offer(
    offer_id: str,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> OfferView:
    offer = await offer_service.cancel_offer(store, offer_id, caller)
    return OfferView.model_validate(offer, from_attributes=True)


@offers_router.get("/inbox", response_model=List[OfferView])
async def list_inbox(
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> List[OfferView]:
    """Pending offers addressed to the caller"""
    offers = await offer_service.list_inbox(store, caller)
    return [OfferView.model_validate(o, from_attributes=True) for o in offers]


@offers_router.get("/outgoing", response_model=List[OfferView])
async def list_outgoing(
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> List[OfferView]:
    offers = await offer_service.list_outgoing(store, caller)
    return [OfferView.model_validate(o, from_attributes=True) for o in offers]


@matches_router.get("/{match_id}", response_model=MatchView)
async def get_match(
    match_id: str,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> MatchView:
    match = await match_service.get_match(store, match_id, caller)
    return MatchView.model_validate(match, from_attributes=True)


@matches_router.post("/{match_id}/confirm-place", response_model=ConfirmPlaceResponse)
async def confirm_match_place(
    match_id: str,
    body: ConfirmPlaceRequest,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> ConfirmPlaceResponse:
    """Pick the meeting place; only the first confirmation wins"""
    result = await confirm_place(store, match_id, body.place_id, caller)
    return ConfirmPlaceResponse(place_name=result["placeName"], place_address=result["placeAddress"])


@matches_router.post("/{match_id}/status", response_model=MatchView)
async def update_match_status(
    match_id: str,
    body: MatchStatusRequest,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> MatchView:
    match = await match_service.update_match_status(store, match_id, caller, body.status)
    return MatchView.model_validate(match, from_attributes=True)


@matches_router.post("/{match_id}/cancel", response_model=MatchView)
async def cancel_match(
    match_id: str,
    body: Optional[MatchCancelRequest] = None,
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> MatchView:
    match = await match_service.cancel_match(store, match_id, caller, body.reason if body else None)
    return MatchView.model_validate(match, from_attributes=True)


@admin_router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    caller: str = Depends(get_caller),
    store: DocumentStore = Depends(get_store)
) -> SweepResponse:
    """Run one expiry sweep now (normally triggered by the scheduler)"""
    logger.info(f"[run_sweep] Manual sweep requested by {caller}")
    result = await sweep_expired(store)
    return SweepResponse(
        removed=result.removed,
        presences_deleted=result.presences_deleted,
        offers_expired=result.offers_expired,
        matches_cancelled=result.matches_cancelled,
        matches_timed_out=result.matches_timed_out,
    )


# Include routers in the app
app.include_router(presence_router, prefix="/presence", tags=["presence"])
app.include_router(offers_router, prefix="/offers", tags=["offers"])
app.include_router(matches_router, prefix="/matches", tags=["matches"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])


@app.get("/health")
async def health_check(store: DocumentStore = Depends(get_store)):
    """Health check with store connectivity"""
    try:
        await store.get("health", "ping")
        store_status = "connected"
    except Exception as e:
        store_status = f"error: {str(e)[:100]}"
    return {
        "message": "Buddymatch API",
        "status": "running",
        "store": store_status,
        "store_backend": type(store).__name__,
    }
