"""Transport abstraction shared by the real HTTP client and test doubles."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
import json
import requests
from requests.structures import CaseInsensitiveDict
import structlog

from ..errors import HttpError

logger = structlog.get_logger(__name__)


class NetworkError(Exception):
    """Connection failure or timeout before a response was received."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


@dataclass
class TransportResponse:
    """Status, headers and raw body of one HTTP exchange."""

    status_code: int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: bytes = b""

    def __post_init__(self):
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers or {})
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self, url: Optional[str] = None) -> Any:
        """Decode the body as JSON, raising ``HttpError`` on malformed content."""
        try:
            return json.loads(self.body or b"null")
        except ValueError as e:
            raise HttpError(
                f"Malformed JSON response: {e}",
                status_code=self.status_code,
                url=url,
                body=self.text[:500],
            ) from e


class Transport(ABC):
    """One outbound HTTP exchange without retries or authentication."""

    @abstractmethod
    def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Union[bytes, Dict[str, str]]] = None,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        """
        Perform a single request.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Request headers
            body: Raw bytes, or a mapping sent form-encoded
            timeout: Per-call timeout in seconds

        Returns:
            The response, whatever its status code

        Raises:
            NetworkError: If no response was received
        """

    def close(self) -> None:
        pass


class RequestsTransport(Transport):
    """Transport backed by a pooled ``requests.Session``."""

    def __init__(self, default_timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.default_timeout = default_timeout
        self.session = session or requests.Session()

    def send(self, method, url, headers=None, body=None, timeout=None) -> TransportResponse:
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                data=body,
                timeout=timeout or self.default_timeout,
            )
        except requests.RequestException as e:
            logger.debug("HTTP request failed without response", method=method, url=url, error=str(e))
            raise NetworkError(str(e), url=url) from e

        return TransportResponse(
            status_code=response.status_code,
            headers=CaseInsensitiveDict(response.headers),
            body=response.content,
        )

    def close(self) -> None:
        self.session.close()
