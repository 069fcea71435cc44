"""HTTP transport, authentication and rate limiting."""

from .transport import Transport, TransportResponse, NetworkError, RequestsTransport
from .rate_limiter import RateLimiter, compute_backoff
from .auth import BearerToken, TokenManager
from .client import RateLimitedTransport, GraphClient, parse_retry_after

__all__ = [
    "Transport",
    "TransportResponse",
    "NetworkError",
    "RequestsTransport",
    "RateLimiter",
    "compute_backoff",
    "BearerToken",
    "TokenManager",
    "RateLimitedTransport",
    "GraphClient",
    "parse_retry_after",
]
