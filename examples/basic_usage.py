"""Basic usage example for the Graph API to SQL synchronization service."""

import os
from pathlib import Path
from graphsync.config.models import (
    SyncConfig, AuthConfig, RateLimitConfig, DatabaseConfig, EndpointConfig,
    managed_devices_endpoint
)
from graphsync.pipeline.events import CollectingEventSink, LoggingEventSink
from graphsync import build_orchestrator


def main():
    """Run one sync cycle of every enabled endpoint."""

    # App registration with DeviceManagementManagedDevices.Read.All and User.Read.All
    auth_config = AuthConfig(
        tenant_id=os.environ["GRAPH_TENANT_ID"],
        client_id=os.environ["GRAPH_CLIENT_ID"],
        client_secret=os.environ["GRAPH_CLIENT_SECRET"],
    )

    # Stay well under the Graph throttling thresholds
    rate_limit_config = RateLimitConfig(
        max_requests_per_minute=60,
        max_attempts=5,
        initial_retry_delay_seconds=1.0,
        max_retry_delay_seconds=60.0,
    )

    database_config = DatabaseConfig(
        backend="sqlite",
        sqlite_path=Path("./output/devices.db"),
    )

    endpoints = [
        managed_devices_endpoint(),
        EndpointConfig(
            name="users",
            endpoint_url="https://graph.microsoft.com/v1.0/users",
            table_name="users",
            select_fields=["id", "userPrincipalName", "displayName", "accountEnabled"],
            field_mappings={"userPrincipalName": "upn"},
            page_size=999,
        ),
    ]

    config = SyncConfig(
        auth=auth_config,
        rate_limit=rate_limit_config,
        database=database_config,
        endpoints=endpoints,
        device_os_filter=["Windows", "iOS"],
        log_level="INFO",
        enable_structured_logging=False,
    )

    collector = CollectingEventSink()
    orchestrator = build_orchestrator(config, sinks=[LoggingEventSink(), collector])

    print("Starting sync...")
    try:
        results = orchestrator.run_once()
    finally:
        orchestrator.close()

    for result in results:
        status = "✓" if result.success else "✗"
        print(f"  {status} {result.endpoint} -> {result.table_name}: "
              f"fetched={result.fetched} filtered={result.filtered_out} "
              f"inserted={result.inserted} updated={result.updated} skipped={result.skipped} "
              f"in {result.duration_seconds:.1f}s")
        if not result.success:
            print(f"    Error ({result.error_type}): {result.error}")

    print(f"\nEvents emitted: {len(collector.events)}")


def run_specific_endpoints():
    """Example of syncing only some endpoints."""

    config = get_sample_config()
    orchestrator = build_orchestrator(config)

    try:
        results = orchestrator.run_once(["devices"])
    finally:
        orchestrator.close()

    print(f"Devices changed: {sum(result.changed for result in results)}")


def run_as_service():
    """Example of running every endpoint on its own schedule until interrupted."""

    config = get_sample_config()
    orchestrator = build_orchestrator(config)

    try:
        orchestrator.run_forever(run_on_start=True)
    finally:
        orchestrator.close()


def get_sample_config() -> SyncConfig:
    """Get sample configuration for examples."""

    return SyncConfig(
        auth=AuthConfig(
            tenant_id=os.environ["GRAPH_TENANT_ID"],
            client_id=os.environ["GRAPH_CLIENT_ID"],
            client_secret=os.environ["GRAPH_CLIENT_SECRET"],
        ),
        database=DatabaseConfig(backend="sqlite", sqlite_path=Path("./output/devices.db")),
        poll_interval="15m",
    )


if __name__ == "__main__":
    main()
