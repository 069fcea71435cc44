"""Structured logging utilities for the sync service."""

import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import structlog


def setup_logger(
    name: str,
    level: str = "INFO",
    log_file: Optional[Path] = None,
    enable_structured: bool = True,
    enable_colors: bool = True
) -> structlog.BoundLogger:
    """
    Set up structured logging configuration.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        enable_structured: Enable structured JSON logging
        enable_colors: Enable colored console output

    Returns:
        Configured structlog BoundLogger
    """
    numeric_level = getattr(logging, level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if enable_structured:
        processors.extend([
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ])
    else:
        processors.append(structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"))
        processors.append(
            structlog.dev.ConsoleRenderer(colors=enable_colors and sys.stdout.isatty())
        )

    # Route through stdlib logging so the optional file handler receives events too
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(file_handler)

    return structlog.get_logger(name)


class SyncLogger:
    """Context-aware logger for sync operations."""

    def __init__(self, logger: structlog.BoundLogger, context: Optional[Dict[str, Any]] = None):
        """
        Initialize sync logger.

        Args:
            logger: Base structlog logger
            context: Initial context to bind to logger
        """
        self.base_logger = logger
        self.context = context or {}
        self._bound_logger = logger.bind(**self.context)

    def bind(self, **kwargs) -> "SyncLogger":
        """
        Create new logger with additional context.

        Args:
            **kwargs: Additional context to bind

        Returns:
            New SyncLogger with bound context
        """
        new_context = {**self.context, **kwargs}
        return SyncLogger(self.base_logger, new_context)

    def info(self, message: str, **kwargs):
        """Log info message with context."""
        self._bound_logger.info(message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with context."""
        self._bound_logger.debug(message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with context."""
        self._bound_logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with context."""
        self._bound_logger.error(message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log error message with the active exception's traceback."""
        self._bound_logger.exception(message, **kwargs)

    def log_cycle_start(self, endpoint: str, table_name: str, cycle_id: str, **kwargs):
        """Log start of an endpoint sync cycle."""
        self.bind(
            endpoint=endpoint,
            table_name=table_name,
            cycle_id=cycle_id,
            **kwargs
        ).info("Starting endpoint sync")

    def log_cycle_end(self, endpoint: str, fetched: int, inserted: int, updated: int,
                      skipped: int, filtered_out: int, duration_seconds: float, **kwargs):
        """Log end of an endpoint sync cycle."""
        self.bind(
            endpoint=endpoint,
            fetched=fetched,
            inserted=inserted,
            updated=updated,
            skipped=skipped,
            filtered_out=filtered_out,
            duration_seconds=round(duration_seconds, 3),
            records_per_second=round(fetched / max(duration_seconds, 0.001), 1),
            **kwargs
        ).info("Completed endpoint sync")

    def log_page(self, page_number: int, items: int, kept: int, has_more: bool, **kwargs):
        """Log page fetch progress."""
        self.bind(
            page_number=page_number,
            items=items,
            kept=kept,
            filtered_out=items - kept,
            has_more=has_more,
            **kwargs
        ).debug("Fetched page")

    def log_schema_change(self, table_name: str, created_table: bool, added_columns: list, **kwargs):
        """Log additive schema evolution."""
        if not created_table and not added_columns:
            return
        self.bind(
            table_name=table_name,
            created_table=created_table,
            added_columns=added_columns,
            **kwargs
        ).info("Schema evolved")

    def log_backoff(self, url: str, attempt: int, delay_seconds: float, reason: str, **kwargs):
        """Log a retry decision."""
        self.bind(
            url=url,
            attempt=attempt,
            delay_seconds=round(delay_seconds, 3),
            reason=reason,
            **kwargs
        ).warning("Retrying request")


def create_sync_logger(name: str, config: Dict[str, Any]) -> SyncLogger:
    """
    Create a sync logger from configuration.

    Args:
        name: Logger name
        config: Configuration dictionary containing log_level, log_file, etc.

    Returns:
        Configured SyncLogger instance
    """
    base_logger = setup_logger(
        name=name,
        level=config.get("log_level", "INFO"),
        log_file=config.get("log_file"),
        enable_structured=config.get("enable_structured_logging", True),
        enable_colors=True
    )

    return SyncLogger(base_logger)
