from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from buddymatch.constants import (
    ACTIVE_MATCH_STATUSES,
    MATCH_PENDING,
    OFFER_PENDING,
    PRESENCE_AVAILABLE,
)


class StoredDocument(BaseModel):
    """Base for persisted documents; field names are stored in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_document(cls, data: Dict):
        return cls.model_validate(data)

    def to_document(self) -> Dict:
        return self.model_dump(by_alias=True)


class Presence(StoredDocument):
    """Time-boxed availability of one user. Keyed by user id."""
    user_id: str
    activity_tag: str
    duration_minutes: int
    lat: float
    lng: float
    session_id: str
    status: str = PRESENCE_AVAILABLE
    match_id: Optional[str] = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def coords(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


class Offer(StoredDocument):
    offer_id: str
    from_user_id: str
    to_user_id: str
    activity_tag: Optional[str] = None
    explanation: Optional[str] = None
    match_score: Optional[float] = None
    distance_meters: Optional[float] = None
    status: str = OFFER_PENDING
    cancel_reason: Optional[str] = None
    match_id: Optional[str] = None
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class MatchGuard(StoredDocument):
    """Lock document for one canonical pair key while its match is active."""
    pair_key: str
    match_id: str
    created_at: datetime


class Match(StoredDocument):
    match_id: str
    user1_id: str
    user2_id: str
    status: str = MATCH_PENDING
    activity_tag: Optional[str] = None
    triggering_offer_id: Optional[str] = None
    user1_coords: Optional[Dict[str, float]] = None
    user2_coords: Optional[Dict[str, float]] = None
    status_by_user: Dict[str, str] = Field(default_factory=dict)
    pending_confirmation_uids: List[str] = Field(default_factory=list)
    confirmed_place_id: Optional[str] = None
    confirmed_place_name: Optional[str] = None
    confirmed_place_address: Optional[str] = None
    place_confirmed_by: Optional[str] = None
    place_confirmed_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    # Deadline to leave pending; None once the match moved on
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def participants(self) -> Tuple[str, str]:
        return self.user1_id, self.user2_id

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MATCH_STATUSES

    def is_stale_pending(self, now: datetime) -> bool:
        return self.status == MATCH_PENDING and self.expires_at is not None and self.expires_at <= now


class Place(StoredDocument):
    place_id: str
    name: str
    address: Optional[str] = None
    active: bool = True


class SessionHistory(StoredDocument):
    """Start times of a user's recent presence sessions. Keyed by user id."""
    user_id: str
    started_at: List[datetime] = Field(default_factory=list)
