"""Error taxonomy shared by every matching operation.

Each error carries a stable ``code`` so callers can tell "someone else got
there first" apart from a generic failure, plus the HTTP status the API layer
answers with.
"""


class MatchingError(Exception):
    """Base class for all errors surfaced to callers."""
    code = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code


class InvalidInput(MatchingError):
    """Malformed or self-referential arguments, or a stale precondition."""
    code = "invalid_input"
    status_code = 400


class StalePresence(InvalidInput):
    """A participant's presence is missing, expired or matched elsewhere."""
    code = "stale_presence"

    def __init__(self, user_id: str, message: str = ""):
        super().__init__(message or f"Presence of {user_id} is no longer available")
        self.user_id = user_id


class OfferLimitReached(InvalidInput):
    """Sender already has the maximum number of pending offers."""
    code = "offer_limit_reached"


class PermissionDenied(MatchingError):
    """Caller is not a participant of the resource."""
    code = "permission_denied"
    status_code = 403


class NotFound(MatchingError):
    """Referenced offer, match or place does not exist."""
    code = "not_found"
    status_code = 404


class AlreadyResolved(MatchingError):
    """The offer (or match) already reached a terminal state."""
    code = "already_resolved"
    status_code = 409


class AlreadyDecided(MatchingError):
    """A single-slot decision on the match was already made by someone else."""
    code = "already_decided"
    status_code = 409


class RateLimited(MatchingError):
    """Too many requests of one kind from the same user."""
    code = "rate_limited"
    status_code = 429


class TransactionAborted(MatchingError):
    """The store could not commit within its retry budget. Safe to retry."""
    code = "transaction_aborted"
    status_code = 503


class TransactionConflict(Exception):
    """Raised by a store when a concurrent writer invalidated the transaction.

    Never leaves ``run_transaction``: it is retried and eventually turned into
    ``TransactionAborted``.
    """
    pass
