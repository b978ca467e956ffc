# Collections in the document store
PRESENCE = "presence"
OFFERS = "offers"
OFFER_PAIRS = "offerPairs"
MATCHES = "matches"
MATCH_GUARDS = "activeMatchesByPair"
PLACES = "places"
SESSION_HISTORY = "sessionHistory"

# Presence statuses
PRESENCE_AVAILABLE = "available"
PRESENCE_MATCHED = "matched"

# Offer statuses
OFFER_PENDING = "pending"
OFFER_ACCEPTED = "accepted"
OFFER_DECLINED = "declined"
OFFER_CANCELLED = "cancelled"
OFFER_EXPIRED = "expired"

# Offer cancel reasons
CANCEL_MATCHED_ELSEWHERE = "matched_elsewhere"
CANCEL_PRESENCE_ENDED = "presence_ended"
CANCEL_BY_SENDER = "sender_cancelled"

# Match statuses
MATCH_PENDING = "pending"
MATCH_PLACE_CONFIRMED = "place_confirmed"
MATCH_ACTIVE = "active"
MATCH_COMPLETED = "completed"
MATCH_CANCELLED = "cancelled"
ACTIVE_MATCH_STATUSES = (MATCH_PENDING, MATCH_PLACE_CONFIRMED, MATCH_ACTIVE)

# Per-participant progress inside a match
USER_PENDING = "pending"
USER_HEADING_THERE = "heading_there"
USER_ARRIVED = "arrived"
USER_COMPLETED = "completed"
USER_PROGRESS_STATUSES = (USER_HEADING_THERE, USER_ARRIVED, USER_COMPLETED)
USER_PROGRESS_ORDER = (USER_PENDING, USER_HEADING_THERE, USER_ARRIVED, USER_COMPLETED)

SYSTEM_ACTOR = "system"
SYSTEM_PRESENCE_EXPIRED = "system_presence_expired"

# Match cancellation reasons
MATCH_CANCELLED_BY_PARTICIPANT = "participant_cancelled"
MATCH_TIMEOUT_PENDING = "timeout_pending"
