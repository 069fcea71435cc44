"""Retrying, rate-limited HTTP client for the Graph API."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional
import math
import structlog

from ..errors import HttpError, RetryExhausted
from ..utils.logging import SyncLogger
from .auth import TokenManager
from .rate_limiter import RateLimiter
from .transport import NetworkError, Transport, TransportResponse

logger = structlog.get_logger(__name__)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` header.

    Accepts delta-seconds or an HTTP-date. Returns ``None`` when the header
    is absent, unreadable or not finite, and never a negative delay.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return None
        return max(0.0, seconds)

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


class RateLimitedTransport:
    """
    Admission control plus retry/backoff around a ``Transport``.

    Every attempt, retries included, takes a slot from the shared limiter.
    """

    def __init__(
        self,
        transport: Transport,
        limiter: RateLimiter,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sync_logger: Optional[SyncLogger] = None
    ):
        self.transport = transport
        self.limiter = limiter
        self.max_attempts = limiter.config.max_attempts
        self.timeout = limiter.config.request_timeout_seconds
        self._wall_clock = wall_clock
        self.logger = sync_logger or SyncLogger(logger)

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None
    ) -> TransportResponse:
        """
        Send a request, retrying throttled and transient failures.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Request headers
            body: Request body

        Returns:
            The first 2xx response

        Raises:
            HttpError: On a non-retryable status
            RetryExhausted: When the attempt budget is consumed
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            self.limiter.acquire()
            try:
                response = self.transport.send(method, url, headers, body, self.timeout)
            except NetworkError as e:
                last_error = e
                reason = "network_error"
                delay = self.limiter.backoff_delay(attempt)
            else:
                if response.ok:
                    self.limiter.record_success()
                    return response

                error = HttpError(
                    f"HTTP {response.status_code} from {url}",
                    status_code=response.status_code,
                    url=url,
                    body=response.text[:500],
                )
                if response.status_code == 429:
                    last_error = error
                    reason = "throttled"
                    delay = parse_retry_after(response.headers.get("Retry-After"), self._wall_clock())
                    if delay is None:
                        delay = self.limiter.backoff_delay(attempt)
                elif response.status_code >= 500:
                    last_error = error
                    reason = "server_error"
                    delay = self.limiter.backoff_delay(attempt)
                else:
                    raise error

            self.limiter.record_failure(delay)
            if attempt == self.max_attempts:
                break
            self.logger.log_backoff(url=url, attempt=attempt, delay_seconds=delay, reason=reason)
            self.limiter.sleep(delay)

        raise RetryExhausted(
            f"Request to {url} failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_error=last_error,
        ) from last_error


class GraphClient:
    """Authenticated JSON GETs against the Graph API."""

    def __init__(self, transport: RateLimitedTransport, tokens: TokenManager):
        self.transport = transport
        self.tokens = tokens

    def get_json(self, url: str) -> Any:
        """
        Fetch and decode one JSON document.

        A 401 invalidates the cached token and the request is retried once
        with a fresh one.

        Raises:
            AuthError: If no token can be obtained
            HttpError: On a non-retryable status or malformed JSON
            RetryExhausted: When retries are exhausted
        """
        for attempt in (1, 2):
            token = self.tokens.get_token()
            headers = {
                "Authorization": token.authorization_header,
                "Accept": "application/json",
            }
            try:
                response = self.transport.request("GET", url, headers=headers)
            except HttpError as e:
                if e.status_code == 401 and attempt == 1:
                    logger.warning("Request unauthorized, refreshing token", url=url)
                    self.tokens.invalidate(token)
                    continue
                raise
            return response.json(url)
