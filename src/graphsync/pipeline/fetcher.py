"""Paginated retrieval of one endpoint's records."""

from dataclasses import dataclass
from typing import Any, Dict, Generator, Iterator, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
import structlog

from ..config.models import EndpointConfig
from ..http.client import GraphClient
from ..utils.logging import SyncLogger
from .filters import OsFilter

logger = structlog.get_logger(__name__)

NEXT_LINK = "@odata.nextLink"


@dataclass
class Page:
    """One fetched page after filtering and field mapping."""

    number: int
    url: str
    records: List[Dict[str, Any]]
    fetched: int
    filtered_out: int
    next_link: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_link is not None


@dataclass
class FetchStats:
    pages: int = 0
    fetched: int = 0
    filtered_out: int = 0
    capped: bool = False

    @property
    def kept(self) -> int:
        return self.fetched - self.filtered_out


def build_initial_url(endpoint: EndpointConfig) -> str:
    """Endpoint URL with query parameters, ``$select``, ``$filter`` and ``$top`` applied."""
    parts = urlsplit(endpoint.endpoint_url)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update(endpoint.query_params)
    if endpoint.select_fields:
        params["$select"] = ",".join(endpoint.select_fields)
    if endpoint.filter:
        params["$filter"] = endpoint.filter
    if endpoint.page_size:
        params["$top"] = str(endpoint.page_size)

    query = urlencode(params, safe="$,'()/:")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class EndpointFetcher:
    """
    Lazily pages through one endpoint.

    Each call to ``pages()`` starts again from the first URL, so a fetcher
    can be reused across sync cycles.
    """

    def __init__(
        self,
        endpoint: EndpointConfig,
        client: GraphClient,
        os_filter: Optional[OsFilter] = None,
        sync_logger: Optional[SyncLogger] = None
    ):
        self.endpoint = endpoint
        self.client = client
        self.os_filter = os_filter or OsFilter()
        self.logger = (sync_logger or SyncLogger(logger)).bind(endpoint=endpoint.name)
        self.stats = FetchStats()

    def pages(self) -> Generator[Page, None, None]:
        """
        Yield pages until the source reports no continuation or the object cap is hit.

        Raises:
            AuthError, HttpError, RetryExhausted: Propagated from the client;
                pages already yielded remain valid
        """
        self.stats = FetchStats()
        url: Optional[str] = build_initial_url(self.endpoint)
        cap = self.endpoint.max_objects
        number = 0

        while url:
            number += 1
            body = self.client.get_json(url)
            items = self._extract_items(body)
            next_link = body.get(NEXT_LINK) if isinstance(body, dict) else None

            if cap is not None:
                remaining = cap - self.stats.fetched
                if len(items) >= remaining:
                    if len(items) > remaining or next_link:
                        self.stats.capped = True
                    items = items[:remaining]
                    next_link = None

            records = []
            for item in items:
                if not self.os_filter.matches(item):
                    continue
                records.append(self._shape(item))

            filtered_out = len(items) - len(records)
            self.stats.pages += 1
            self.stats.fetched += len(items)
            self.stats.filtered_out += filtered_out
            self.logger.log_page(
                page_number=number,
                items=len(items),
                kept=len(records),
                has_more=next_link is not None,
            )

            yield Page(
                number=number,
                url=url,
                records=records,
                fetched=len(items),
                filtered_out=filtered_out,
                next_link=next_link,
            )
            url = next_link

        if self.stats.capped:
            self.logger.info("Object cap reached", max_objects=cap)

    def records(self) -> Iterator[Dict[str, Any]]:
        """Flatten ``pages()`` into individual records."""
        for page in self.pages():
            yield from page.records

    @staticmethod
    def _extract_items(body: Any) -> List[Dict[str, Any]]:
        if isinstance(body, dict) and isinstance(body.get("value"), list):
            items = body["value"]
        elif body is None:
            items = []
        else:
            items = [body]
        return [item if isinstance(item, dict) else {"value": item} for item in items]

    def _shape(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Project to the selected fields, then apply renames."""
        record = dict(item)
        if self.endpoint.select_fields:
            selected = set(self.endpoint.select_fields)
            record = {key: value for key, value in record.items() if key in selected}
        for source, target in self.endpoint.field_mappings.items():
            if source in record:
                record[target] = record.pop(source)
        return record
