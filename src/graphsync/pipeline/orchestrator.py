"""Per-endpoint sync cycles, scheduling and result reporting."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import concurrent.futures
import threading
import time
import uuid
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from ..config.models import EndpointConfig, SyncConfig
from ..errors import AuthError, HttpError, SchemaError, SyncError, WriteError
from ..http.auth import TokenManager
from ..http.client import GraphClient, RateLimitedTransport
from ..http.rate_limiter import RateLimiter
from ..http.transport import RequestsTransport, Transport
from ..storage import StorageBackend, create_backend
from ..utils.logging import SyncLogger, create_sync_logger
from ..utils.validation import parse_duration, validate_cron_expression
from .events import EventSink, EventType, LoggingEventSink, SyncEvent, dispatch
from .fetcher import EndpointFetcher
from .filters import OsFilter
from .schema import SchemaManager
from .writer import RecordWriter

logger = structlog.get_logger(__name__)


class EndpointState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    REPORTING = "reporting"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Aggregate outcome of one endpoint cycle."""

    endpoint: str
    table_name: str
    cycle_id: str
    success: bool = True
    fetched: int = 0
    filtered_out: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    pages: int = 0
    duration_seconds: float = 0.0
    error_type: Optional[str] = None
    error: Optional[str] = None
    schema_changes: List[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return self.inserted + self.updated

    def counts(self) -> Dict[str, Any]:
        return {
            "fetched": self.fetched,
            "filtered_out": self.filtered_out,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EndpointSchedule:
    """Fixed interval or cron trigger; cron wins when both are set."""

    def __init__(self, interval: timedelta, cron: Optional[CronTrigger] = None):
        self.interval = interval
        self.cron = cron

    @classmethod
    def for_endpoint(cls, endpoint: EndpointConfig, config: SyncConfig) -> "EndpointSchedule":
        """Endpoint overrides, falling back to the global schedule."""
        cron_expression = endpoint.cron_schedule or config.cron_schedule
        interval = parse_duration(endpoint.sync_interval or config.poll_interval)
        cron = validate_cron_expression(cron_expression) if cron_expression else None
        return cls(interval, cron)

    def trigger(self) -> BaseTrigger:
        """APScheduler trigger for this schedule."""
        if self.cron is not None:
            return self.cron
        return IntervalTrigger(seconds=self.interval.total_seconds(), timezone="UTC")

    def describe(self) -> str:
        return f"cron {self.cron}" if self.cron else f"every {self.interval}"


class EndpointRunner:
    """
    Drives fetch, schema evolution and writes for one endpoint.

    State moves IDLE -> FETCHING -> RECONCILING -> REPORTING -> IDLE, or to
    FAILED, which is cleared at the start of the next cycle. ``run_cycle``
    never raises; every failure is returned as a typed result.
    """

    def __init__(
        self,
        endpoint: EndpointConfig,
        client: GraphClient,
        backend: StorageBackend,
        schema: SchemaManager,
        os_filter_rules: Optional[List[str]] = None,
        sinks: Optional[List[EventSink]] = None,
        touch_on_skip: bool = True,
        sync_logger: Optional[SyncLogger] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.endpoint = endpoint
        self.schema = schema
        self.sinks = sinks if sinks is not None else []
        self.logger = (sync_logger or SyncLogger(logger)).bind(endpoint=endpoint.name)
        self.fetcher = EndpointFetcher(endpoint, client, OsFilter(os_filter_rules), self.logger)
        self.writer = RecordWriter(backend, schema, id_field=endpoint.id_field, touch_on_skip=touch_on_skip)
        self.state = EndpointState.IDLE
        self.last_result: Optional[SyncResult] = None
        self._clock = clock
        self._cycle_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.endpoint.name

    def _set_state(self, state: EndpointState) -> None:
        self.state = state

    def _emit(self, event_type: EventType, result: SyncResult, **data) -> None:
        dispatch(
            self.sinks,
            SyncEvent(
                event_type=event_type,
                endpoint=self.endpoint.name,
                data={"table_name": result.table_name, "cycle_id": result.cycle_id, **data},
                error=result.error,
            ),
        )

    def run_cycle(self) -> SyncResult:
        """Run one complete cycle and report it."""
        with self._cycle_lock:
            self._set_state(EndpointState.IDLE)
            table = self.endpoint.table_name
            result = SyncResult(endpoint=self.endpoint.name, table_name=table, cycle_id=uuid.uuid4().hex[:12])
            self.logger.log_cycle_start(endpoint=self.endpoint.name, table_name=table, cycle_id=result.cycle_id)
            self._emit(EventType.SYNC_STARTED, result)

            start = self._clock()
            failure: Optional[Exception] = None
            self.writer.begin_cycle()
            try:
                self._set_state(EndpointState.FETCHING)
                for page in self.fetcher.pages():
                    result.pages += 1
                    result.fetched += page.fetched
                    result.filtered_out += page.filtered_out
                    if not page.records:
                        continue

                    self._set_state(EndpointState.RECONCILING)
                    prepared = [self.writer.prepare(record) for record in page.records]
                    diff = self.schema.ensure_schema(table, [p.fields for p in prepared])
                    result.schema_changes.extend(column.name for column in diff.added_columns)

                    batch = self.writer.write_batch(table, prepared)
                    result.inserted += batch.inserted
                    result.updated += batch.updated
                    result.skipped += batch.skipped
                    if batch.error is not None and failure is None:
                        failure = batch.error
                    self._set_state(EndpointState.FETCHING)
            except SyncError as e:
                failure = e
            except Exception as e:
                self.logger.exception("Unexpected error during sync cycle", error=str(e))
                failure = e
            finally:
                result.duration_seconds = self._clock() - start

            if failure is not None:
                self._fail(result, failure)
            self._report(result, failure)
            self.last_result = result
            return result

    def _fail(self, result: SyncResult, error: Exception) -> None:
        result.success = False
        result.error_type = getattr(error, "error_type", "internal")
        result.error = str(error)
        self._set_state(EndpointState.FAILED)

    def _report(self, result: SyncResult, failure: Optional[Exception] = None) -> None:
        if result.success:
            self._set_state(EndpointState.REPORTING)
            self.logger.log_cycle_end(
                endpoint=result.endpoint,
                fetched=result.fetched,
                inserted=result.inserted,
                updated=result.updated,
                skipped=result.skipped,
                filtered_out=result.filtered_out,
                duration_seconds=result.duration_seconds,
            )
            self._emit(EventType.SYNC_COMPLETED, result, **result.counts())
            if result.changed:
                self._emit(EventType.DEVICES_UPDATED, result, inserted=result.inserted, updated=result.updated)
            self._set_state(EndpointState.IDLE)
            return

        self.logger.error(
            "Endpoint sync failed",
            error_type=result.error_type,
            error=result.error,
            **result.counts()
        )
        self._emit(EventType.SYNC_FAILED, result, error_type=result.error_type, **result.counts())
        if isinstance(failure, AuthError) or (isinstance(failure, HttpError) and failure.status_code == 401):
            self._emit(EventType.AUTHENTICATION_FAILED, result)
        if isinstance(failure, (SchemaError, WriteError)):
            self._emit(EventType.DATABASE_ERROR, result, error_type=result.error_type)


class SyncOrchestrator:
    """
    Runs every enabled endpoint on its own schedule.

    The rate limiter and token manager behind ``client`` are shared by all
    runners; a failure in one endpoint never affects another.
    """

    def __init__(
        self,
        config: SyncConfig,
        client: GraphClient,
        backend: StorageBackend,
        sinks: Optional[List[EventSink]] = None,
        sync_logger: Optional[SyncLogger] = None
    ):
        self.config = config
        self.client = client
        self.backend = backend
        self.sinks = sinks if sinks is not None else [LoggingEventSink()]
        self.logger = sync_logger or SyncLogger(logger)
        self.schema = SchemaManager(backend, self.logger)
        self.runners: Dict[str, EndpointRunner] = {
            endpoint.name: EndpointRunner(
                endpoint,
                client,
                backend,
                self.schema,
                os_filter_rules=config.os_filter_for(endpoint),
                sinks=self.sinks,
                touch_on_skip=config.touch_on_skip,
                sync_logger=self.logger,
            )
            for endpoint in config.get_enabled_endpoints()
        }
        self._stopped = threading.Event()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._initialized = False

        self.logger.info(
            "Orchestrator initialized",
            backend=backend.name,
            endpoints=list(self.runners),
        )

    def initialize(self) -> None:
        """Check the database and preload known table schemas."""
        if self._initialized:
            return
        if not self.backend.health_check():
            self.logger.warning("Database health check failed, continuing", backend=self.backend.name)
        tables = [runner.endpoint.table_name for runner in self.runners.values()]
        loaded = self.schema.preload(tables)
        self.logger.info("Schema cache ready", tables_found=loaded, tables_configured=len(tables))
        self._initialized = True

    def _select(self, endpoint_names: Optional[List[str]]) -> List[EndpointRunner]:
        if not endpoint_names:
            return list(self.runners.values())
        unknown = [name for name in endpoint_names if name not in self.runners]
        if unknown:
            raise ValueError(f"Unknown or disabled endpoints: {', '.join(unknown)}")
        return [self.runners[name] for name in endpoint_names]

    def run_once(self, endpoint_names: Optional[List[str]] = None) -> List[SyncResult]:
        """
        Run one cycle of each selected endpoint concurrently.

        Args:
            endpoint_names: Optional subset of enabled endpoints

        Returns:
            One result per endpoint, in completion order
        """
        self.initialize()
        runners = self._select(endpoint_names)
        results = []
        max_workers = min(len(runners), self.config.max_workers)

        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_runner = {executor.submit(runner.run_cycle): runner for runner in runners}

            for future in concurrent.futures.as_completed(future_to_runner):
                runner = future_to_runner[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    self.logger.error("Endpoint runner crashed", endpoint=runner.name, error=str(e))
                    results.append(SyncResult(
                        endpoint=runner.name,
                        table_name=runner.endpoint.table_name,
                        cycle_id="",
                        success=False,
                        error_type="internal",
                        error=str(e),
                    ))

        self.logger.info("Sync run completed", **self.summarize(results))
        return results

    def start(self, run_on_start: bool = True) -> None:
        """Schedule one job per endpoint on a background scheduler and return immediately."""
        self.initialize()
        if self._scheduler is not None and self._scheduler.running:
            return
        self._stopped.clear()
        scheduler = BackgroundScheduler(
            timezone="UTC",
            executors={"default": {"type": "threadpool", "max_workers": max(1, len(self.runners))}},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        )
        for runner in self.runners.values():
            schedule = EndpointSchedule.for_endpoint(runner.endpoint, self.config)
            job_options = {}
            if run_on_start:
                job_options["next_run_time"] = datetime.now(timezone.utc)
            scheduler.add_job(
                runner.run_cycle,
                schedule.trigger(),
                id=runner.name,
                name=f"sync-{runner.name}",
                **job_options
            )
            self.logger.info("Scheduling endpoint", endpoint=runner.name, schedule=schedule.describe())
        scheduler.start()
        self._scheduler = scheduler

    def run_forever(self, run_on_start: bool = True) -> None:
        """Run scheduled cycles until ``stop()`` is called or the process is interrupted."""
        self.start(run_on_start)
        try:
            while not self._stopped.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.logger.info("Interrupted, stopping scheduler")
            self.stop()

    def stop(self, wait: bool = True) -> None:
        """Stop scheduling; with ``wait`` cycles already running finish first."""
        self._stopped.set()
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)

    def close(self) -> None:
        self.stop()
        self.backend.dispose()

    def summarize(self, results: List[SyncResult]) -> Dict[str, Any]:
        """Totals across endpoint results."""
        failed = [result for result in results if not result.success]
        return {
            "endpoints": len(results),
            "failed_endpoints": [result.endpoint for result in failed],
            "fetched": sum(result.fetched for result in results),
            "filtered_out": sum(result.filtered_out for result in results),
            "inserted": sum(result.inserted for result in results),
            "updated": sum(result.updated for result in results),
            "skipped": sum(result.skipped for result in results),
        }


def build_orchestrator(
    config: SyncConfig,
    transport: Optional[Transport] = None,
    sinks: Optional[List[EventSink]] = None,
    limiter: Optional[RateLimiter] = None
) -> SyncOrchestrator:
    """
    Wire transport, limiter, token manager and backend from configuration.

    Args:
        config: Service configuration
        transport: Transport override (defaults to a ``requests`` session)
        sinks: Event sinks (defaults to logging)
        limiter: Rate limiter override

    Returns:
        Ready-to-run orchestrator
    """
    sync_logger = create_sync_logger(
        name="graphsync",
        config={
            "log_level": config.log_level,
            "log_file": config.log_file,
            "enable_structured_logging": config.enable_structured_logging,
        },
    )
    transport = transport or RequestsTransport(default_timeout=config.rate_limit.request_timeout_seconds)
    limiter = limiter or RateLimiter(config.rate_limit)
    tokens = TokenManager(config.auth, transport)
    client = GraphClient(RateLimitedTransport(transport, limiter, sync_logger=sync_logger), tokens)
    backend = create_backend(config.database)
    return SyncOrchestrator(config, client, backend, sinks=sinks, sync_logger=sync_logger)
