"""
errors.py -- Exception taxonomy for the feed, executor and controller seams.

FeedConnectionError also subclasses the builtin ConnectionError so callers
can catch either name.
"""

from __future__ import annotations


class FeedError(Exception):
    """Base class for everything raised while talking to the broker."""

    def __init__(self, message: str = "", *, code: str = "", payload: dict | None = None):
        super().__init__(message or code or self.__class__.__name__)
        self.code = code
        self.payload = dict(payload or {})


class FeedConnectionError(FeedError, ConnectionError):
    """Transport unreachable, closed, or timed out."""


class AuthError(FeedError):
    """Token rejected or an authorized call attempted without one."""


class RateLimitError(FeedError):
    """Request refused because a cooldown or broker rate limit is active."""


class DataError(FeedError):
    """Malformed or missing tick / history payload."""


class TradeError(FeedError):
    """Proposal or buy rejected, or settlement ambiguous."""


_AUTH_CODES = {
    "InvalidToken",
    "AuthorizationRequired",
    "InvalidAppID",
    "PermissionDenied",
    "DisabledClient",
}
_RATE_CODES = {"RateLimit", "TooManyRequests"}
_TRADE_CODES = {
    "ContractBuyValidationError",
    "ContractCreationFailure",
    "InvalidContractProposal",
    "InsufficientBalance",
    "InvalidPrice",
    "PriceMoved",
    "ContractValidationError",
    "OfferingsValidationError",
}


def from_broker_error(error: dict, msg_type: str = "") -> FeedError:
    """
    Map a broker ``{"error": {"code", "message"}}`` payload to the taxonomy.

    Unknown codes on proposal/buy requests become TradeError, on anything
    else DataError.
    """
    error = error if isinstance(error, dict) else {"message": str(error)}
    code = str(error.get("code") or "")
    message = str(error.get("message") or code or "broker error")
    if code in _AUTH_CODES:
        return AuthError(message, code=code, payload=error)
    if code in _RATE_CODES:
        return RateLimitError(message, code=code, payload=error)
    if code in _TRADE_CODES or msg_type in ("proposal", "buy", "proposal_open_contract"):
        return TradeError(message, code=code, payload=error)
    return DataError(message, code=code, payload=error)
