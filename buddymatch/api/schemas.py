from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional
from datetime import datetime


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PresenceStartRequest(ApiModel):
    """Start availability"""
    activity_tag: str
    duration_minutes: int
    lat: float
    lng: float


class PresenceStartResponse(ApiModel):
    session_id: str
    expires_at: datetime


class PresenceView(ApiModel):
    """Caller's current availability"""
    user_id: str
    activity_tag: str
    duration_minutes: int
    lat: float
    lng: float
    session_id: str
    status: str
    match_id: Optional[str] = None
    expires_at: datetime


class PresenceEndResponse(ApiModel):
    ended: bool


class OfferCreateRequest(ApiModel):
    """Directed proposal to meet a user picked by the candidate selector"""
    target_user_id: str
    activity_tag: Optional[str] = None
    explanation: Optional[str] = None
    match_score: Optional[float] = None
    distance_meters: Optional[float] = None


class OfferCreateResponse(ApiModel):
    offer_id: Optional[str] = None
    match_created: bool
    match_id: Optional[str] = None


class OfferRespondRequest(ApiModel):
    action: str


class OfferRespondResponse(ApiModel):
    status: str
    match_created: bool
    match_id: Optional[str] = None


class OfferView(ApiModel):
    offer_id: str
    from_user_id: str
    to_user_id: str
    activity_tag: Optional[str] = None
    explanation: Optional[str] = None
    match_score: Optional[float] = None
    distance_meters: Optional[float] = None
    status: str
    cancel_reason: Optional[str] = None
    match_id: Optional[str] = None
    expires_at: datetime
    created_at: datetime


class MatchView(ApiModel):
    match_id: str
    user1_id: str
    user2_id: str
    status: str
    activity_tag: Optional[str] = None
    status_by_user: Dict[str, str]
    pending_confirmation_uids: List[str]
    confirmed_place_id: Optional[str] = None
    confirmed_place_name: Optional[str] = None
    confirmed_place_address: Optional[str] = None
    place_confirmed_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConfirmPlaceRequest(ApiModel):
    place_id: str


class ConfirmPlaceResponse(ApiModel):
    place_name: str
    place_address: Optional[str] = None


class MatchStatusRequest(ApiModel):
    status: str


class MatchCancelRequest(ApiModel):
    reason: Optional[str] = None


class SweepResponse(ApiModel):
    """Result of one expiry sweep"""
    removed: int
    presences_deleted: int
    offers_expired: int
    matches_cancelled: int
    matches_timed_out: int


class ErrorResponse(BaseModel):
    code: str
    message: str
