"""Test configuration and fixtures."""

import json
import shutil
import tempfile
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from graphsync.config.models import (
    AuthConfig, RateLimitConfig, DatabaseConfig, EndpointConfig, SyncConfig
)
from graphsync.http.auth import TokenManager
from graphsync.http.client import GraphClient, RateLimitedTransport
from graphsync.http.rate_limiter import RateLimiter
from graphsync.http.transport import Transport, TransportResponse
from graphsync.storage import SQLiteBackend
from graphsync.pipeline.schema import SchemaManager

GRAPH_URL = "https://graph.test/v1.0/deviceManagement/managedDevices"
TOKEN_URL = "https://login.test/tenant/oauth2/v2.0/token"
OS_CYCLE = ["Windows", "macOS", "Android"]


class FakeClock:
    """Monotonic and wall clock whose sleep advances time instantly."""

    def __init__(self, start=None):
        self.now = 0.0
        self.start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.sleeps = []
        self._lock = threading.Lock()

    def monotonic(self):
        with self._lock:
            return self.now

    def utcnow(self):
        with self._lock:
            return self.start + timedelta(seconds=self.now)

    def sleep(self, seconds):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def advance(self, seconds):
        with self._lock:
            self.now += seconds


def json_response(status_code, payload, headers=None):
    return TransportResponse(
        status_code=status_code,
        headers={"Content-Type": "application/json", **(headers or {})},
        body=json.dumps(payload).encode("utf-8"),
    )


class FakeGraphTransport(Transport):
    """
    Synthetic Graph API.

    Serves a token endpoint and a paginated collection using
    ``$skiptoken`` continuation links. Responses queued with ``enqueue``
    are returned, or raised, before the synthetic feed.
    """

    def __init__(self, records=None, page_size=100, base_url=GRAPH_URL, token_url=TOKEN_URL,
                 expires_in=3600):
        self.records = list(records or [])
        self.page_size = page_size
        self.base_url = base_url
        self.token_url = token_url
        self.expires_in = expires_in
        self.calls = []
        self.token_calls = 0
        self.queued = deque()
        self.token_delay = None
        self._lock = threading.Lock()

    def enqueue(self, *responses):
        self.queued.extend(responses)

    def data_calls(self):
        return [call for call in self.calls if not call[1].startswith(self.token_url)]

    def send(self, method, url, headers=None, body=None, timeout=None):
        with self._lock:
            self.calls.append((method, url, dict(headers or {})))
            if url.startswith(self.token_url):
                self.token_calls += 1
                number = self.token_calls
            else:
                number = None
                queued = self.queued.popleft() if self.queued else None

        if number is not None:
            if self.token_delay is not None:
                self.token_delay.wait(5)
            return json_response(200, {
                "access_token": f"token-{number}",
                "token_type": "Bearer",
                "expires_in": self.expires_in,
            })

        if isinstance(queued, Exception):
            raise queued
        if queued is not None:
            return queued
        return self._page(url)

    def _page(self, url):
        query = parse_qs(urlsplit(url).query)
        offset = int(query.get("$skiptoken", ["0"])[0])
        top = int(query.get("$top", [str(self.page_size)])[0])
        items = self.records[offset:offset + top]
        payload = {"@odata.context": f"{self.base_url}/$metadata", "value": items}
        if offset + top < len(self.records):
            payload["@odata.nextLink"] = f"{self.base_url}?$top={top}&$skiptoken={offset + top}"
        return json_response(200, payload)


def make_devices(count, os_values=None):
    """Managed-device shaped records cycling through operating systems."""
    os_values = os_values or OS_CYCLE
    devices = []
    for index in range(count):
        devices.append({
            "id": f"device-{index:04d}",
            "deviceName": f"DEVICE-{index:04d}",
            "operatingSystem": os_values[index % len(os_values)],
            "osVersion": f"10.0.{19000 + index}",
            "serialNumber": f"SN{index:08d}",
            "imei": f"0{index:014d}",
            "isEncrypted": index % 2 == 0,
            "totalStorageSpaceInBytes": 256000000000 + index,
            "enrolledDateTime": "2023-06-01T08:30:00Z",
            "lastSyncDateTime": "2024-01-01T12:00:00.1234567Z",
            "hardwareInformation": {"manufacturer": "Contoso", "model": "X1"},
        })
    return devices


@pytest.fixture
def temp_directory():
    """Create a temporary directory for tests."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def device_factory():
    return make_devices


@pytest.fixture
def fake_transport():
    return FakeGraphTransport(make_devices(250))


@pytest.fixture
def auth_config():
    """Create a test auth configuration."""
    return AuthConfig(
        tenant_id="tenant",
        client_id="client-id",
        client_secret="client-secret",
        token_url=TOKEN_URL,
    )


@pytest.fixture
def rate_limit_config():
    """Create a test rate limit configuration without jitter."""
    return RateLimitConfig(
        max_requests_per_minute=60,
        max_attempts=4,
        initial_retry_delay_seconds=1.0,
        backoff_multiplier=2.0,
        max_retry_delay_seconds=30.0,
        jitter=False,
    )


@pytest.fixture
def rate_limiter(rate_limit_config, fake_clock):
    """Shared limiter on the fake clock."""
    return RateLimiter(rate_limit_config, clock=fake_clock.monotonic, sleep=fake_clock.sleep)


@pytest.fixture
def graph_client(fake_transport, rate_limiter, auth_config, fake_clock):
    """Graph client talking to the synthetic API."""
    tokens = TokenManager(auth_config, fake_transport, clock=fake_clock.utcnow)
    return GraphClient(RateLimitedTransport(fake_transport, rate_limiter, wall_clock=fake_clock.utcnow), tokens)


@pytest.fixture
def devices_endpoint():
    return EndpointConfig(name="devices", endpoint_url=GRAPH_URL, table_name="devices")


@pytest.fixture
def sqlite_backend(temp_directory):
    """SQLite backend in a temporary directory."""
    backend = SQLiteBackend(temp_directory / "sync.db")
    yield backend
    backend.dispose()


@pytest.fixture
def schema_manager(sqlite_backend):
    return SchemaManager(sqlite_backend)


@pytest.fixture
def sync_config(temp_directory, auth_config, rate_limit_config, devices_endpoint):
    """Create a test service configuration on SQLite."""
    return SyncConfig(
        auth=auth_config,
        rate_limit=rate_limit_config,
        database=DatabaseConfig(backend="sqlite", sqlite_path=temp_directory / "sync.db"),
        endpoints=[devices_endpoint],
        device_os_filter=["Windows", "iOS"],
        log_level="DEBUG",
        enable_structured_logging=False,
    )


# Test markers for different test types
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as an integration test (requires database)"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )


# Skip integration tests by default unless --integration flag is provided
def pytest_collection_modifyitems(config, items):
    """Modify test collection based on command line options."""
    if not config.getoption("--integration"):
        skip_integration = pytest.mark.skip(reason="need --integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser):
    """Add command line options."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests that require database connectivity"
    )

    parser.addoption(
        "--db-url",
        action="store",
        default=None,
        help="PostgreSQL or SQL Server SQLAlchemy URL for integration tests"
    )
