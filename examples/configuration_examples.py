"""Configuration examples for different deployments."""

import os
from pathlib import Path
from typing import Dict, Any
from graphsync.config import load_config
from graphsync.config.models import (
    SyncConfig, AuthConfig, RateLimitConfig, DatabaseConfig, EndpointConfig,
    predefined_endpoints
)


def _auth_from_environment() -> AuthConfig:
    return AuthConfig(
        tenant_id=os.environ["GRAPH_TENANT_ID"],
        client_id=os.environ["GRAPH_CLIENT_ID"],
        client_secret=os.environ["GRAPH_CLIENT_SECRET"],
    )


def production_config() -> SyncConfig:
    """SQL Server destination with every predefined endpoint enabled."""

    database_config = DatabaseConfig(
        backend="mssql",
        server=os.getenv("PROD_SQL_SERVER", "prod-sql.company.com"),
        database=os.getenv("PROD_DATABASE", "Inventory"),
        username=os.getenv("PROD_SQL_USER"),
        password=os.getenv("PROD_SQL_PASSWORD"),
        integrated_security=False,
        trust_server_certificate=False,
        connection_timeout=30,
    )

    # Conservative budget shared by all endpoints
    rate_limit_config = RateLimitConfig(
        max_requests_per_minute=120,
        max_attempts=8,
        initial_retry_delay_seconds=2.0,
        max_retry_delay_seconds=120.0,
        request_timeout_seconds=60.0,
    )

    endpoints = [
        endpoint.model_copy(update={"enabled": True}) for endpoint in predefined_endpoints()
    ]

    return SyncConfig(
        auth=_auth_from_environment(),
        rate_limit=rate_limit_config,
        database=database_config,
        endpoints=endpoints,
        cron_schedule="0 */4 * * *",
        device_os_filter=["*"],
        log_level="INFO",
        enable_structured_logging=True,
        log_file=Path("/var/log/graph-db-sync/sync.log"),
    )


def development_config() -> SyncConfig:
    """Local SQLite file, Windows devices only, frequent polling."""

    return SyncConfig(
        auth=_auth_from_environment(),
        database=DatabaseConfig(backend="sqlite", sqlite_path=Path("./output/dev.db")),
        poll_interval="5m",
        device_os_filter=["Windows"],
        log_level="DEBUG",
        enable_structured_logging=False,
    )


def postgres_config() -> SyncConfig:
    """PostgreSQL destination with a capped, renamed users endpoint."""

    return SyncConfig(
        auth=_auth_from_environment(),
        database=DatabaseConfig(backend="postgres", postgres_url=os.environ["DATABASE_URL"]),
        endpoints=[
            EndpointConfig(
                name="users",
                endpoint_url="https://graph.microsoft.com/v1.0/users",
                table_name="directory_users",
                select_fields=["id", "userPrincipalName", "displayName", "department"],
                filter="accountEnabled eq true",
                field_mappings={"userPrincipalName": "upn", "displayName": "name"},
                max_objects=5000,
                page_size=999,
                sync_interval="30m",
            ),
        ],
    )


def config_from_file() -> SyncConfig:
    """Load a YAML or JSON file; GRAPH_SYNC_* variables fill in missing values."""

    return load_config(Path(__file__).parent / "config.example.yaml")


def create_config_template() -> Dict[str, Any]:
    """Configuration document suitable for a JSON config file."""

    config = development_config()
    template = config.model_dump(mode="json", by_alias=True, exclude={"auth"})
    template["auth"] = {"tenantId": "<tenant>", "clientId": "<client>", "clientSecret": "<secret>"}
    return template


if __name__ == "__main__":
    import json
    print(json.dumps(create_config_template(), indent=2))
