"""OAuth2 client-credentials token acquisition and caching."""

from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import threading
import structlog

from ..config.models import AuthConfig
from ..errors import AuthError, HttpError
from .transport import NetworkError, Transport

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BearerToken:
    """Access token and its absolute expiry."""

    access_token: str = field(repr=False)
    expires_at: datetime
    token_type: str = "Bearer"

    def is_valid(self, now: datetime, margin: timedelta) -> bool:
        return now < self.expires_at - margin

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


class TokenManager:
    """
    Caches a bearer token and refreshes it before expiry.

    Callers arriving while a refresh is in flight wait on the same
    ``Future`` instead of issuing their own grant request. A failed
    exchange is delivered to every waiter and the next call starts over.
    """

    def __init__(
        self,
        config: AuthConfig,
        transport: Transport,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config
        self.transport = transport
        self.margin = timedelta(seconds=config.refresh_margin_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[BearerToken] = None
        self._inflight: Optional[Future] = None
        self.exchange_count = 0

    def get_token(self) -> BearerToken:
        """
        Return a token valid for at least the safety margin.

        Returns:
            Cached or freshly exchanged token

        Raises:
            AuthError: If the grant is rejected or the identity endpoint is unreachable
        """
        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock(), self.margin):
                return token

            future = self._inflight
            owner = future is None
            if owner:
                future = Future()
                self._inflight = future

        if not owner:
            return future.result()

        try:
            token = self._exchange()
        except Exception as e:
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            raise

        with self._lock:
            self._token = token
            self._inflight = None
        future.set_result(token)
        return token

    def invalidate(self, token: Optional[BearerToken] = None) -> None:
        """
        Drop the cached token.

        When ``token`` is given the cache is only cleared if it still holds
        that token, so a refresh made by another thread survives.
        """
        with self._lock:
            if token is None or self._token is token:
                self._token = None
        logger.info("Cached token invalidated")

    def _exchange(self) -> BearerToken:
        token_url = self.config.get_token_url()
        form = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret.get_secret_value(),
            "scope": self.config.scope,
        }
        self.exchange_count += 1
        logger.debug("Requesting access token", token_url=token_url, client_id=self.config.client_id)

        try:
            response = self.transport.send(
                "POST",
                token_url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                body=form,
                timeout=self.config.timeout_seconds,
            )
        except NetworkError as e:
            raise AuthError(f"Identity endpoint unreachable: {e}") from e

        if not response.ok:
            detail = response.text[:300]
            try:
                payload = response.json(token_url)
                if isinstance(payload, dict):
                    detail = payload.get("error_description") or payload.get("error") or detail
            except HttpError:
                pass
            raise AuthError(f"Token request rejected with HTTP {response.status_code}: {detail}")

        try:
            payload = response.json(token_url)
        except HttpError as e:
            raise AuthError(f"Malformed token response: {e}") from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthError("Token response did not include an access_token")

        try:
            expires_in = int(payload.get("expires_in", DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError) as e:
            raise AuthError(f"Invalid expires_in in token response: {payload.get('expires_in')!r}") from e

        token = BearerToken(
            access_token=payload["access_token"],
            expires_at=self._clock() + timedelta(seconds=expires_in),
            token_type=payload.get("token_type") or "Bearer",
        )
        logger.info("Access token acquired", expires_at=token.expires_at.isoformat())
        return token
