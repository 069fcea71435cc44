"""Utility modules for logging and validation."""

from .logging import setup_logger, SyncLogger, create_sync_logger
from .validation import ValidationError, parse_duration, validate_cron_expression

__all__ = [
    "setup_logger",
    "SyncLogger",
    "create_sync_logger",
    "ValidationError",
    "parse_duration",
    "validate_cron_expression"
]
