"""Token handling and request throttling."""

from .rate_limit import FixedWindowRateLimiter, RateLimitExceeded
from .tokens import TokenError, create_access_token, decode_access_token

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitExceeded",
    "TokenError",
    "create_access_token",
    "decode_access_token",
]
