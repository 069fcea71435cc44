"""Validation utilities for configuration values and destination databases."""

from datetime import timedelta
from urllib.parse import urlparse
import re
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text
from sqlalchemy.engine import Engine
import structlog

logger = structlog.get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")
_DURATION_RE = re.compile(r"^(\d+)\s*([smhd]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class ValidationError(Exception):
    """Custom exception for validation errors."""
    pass


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as ``30s``, ``15m``, ``1h`` or ``2d``.

    A bare number is read as seconds.

    Args:
        value: Duration string

    Returns:
        Parsed duration

    Raises:
        ValidationError: If the string is not a positive duration
    """
    match = _DURATION_RE.match(value.strip().lower()) if value else None
    if not match:
        raise ValidationError(f"Invalid duration: {value!r}")

    seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValidationError(f"Duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def validate_cron_expression(expression: str) -> CronTrigger:
    """
    Validate a five-field crontab expression.

    Args:
        expression: Crontab expression, e.g. ``0 */6 * * *``

    Returns:
        Trigger built from the expression

    Raises:
        ValidationError: If the expression cannot be parsed
    """
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone="UTC")
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid cron expression {expression!r}: {e}")


def validate_endpoint_url(url: str) -> str:
    """Require an absolute http(s) URL."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid endpoint URL: {url!r}")
    return url


def validate_identifier(name: str) -> str:
    """
    Validate a destination table name.

    Table names are interpolated into DDL by every backend, so only plain
    identifiers are accepted.

    Args:
        name: Table name

    Returns:
        The validated name

    Raises:
        ValidationError: If the name is not a plain identifier
    """
    if not _IDENTIFIER_RE.match(name):
        raise ValidationError(
            f"Invalid table name {name!r}: use letters, digits and underscores"
        )
    return name


def validate_database_connectivity(engine: Engine) -> bool:
    """
    Validate database connectivity for an engine.

    Args:
        engine: SQLAlchemy engine

    Returns:
        True if connection successful

    Raises:
        ValidationError: If connection fails
    """
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1")).fetchone()
    except Exception as e:
        raise ValidationError(f"Database connectivity validation failed: {str(e)}")

    if result is None or result[0] != 1:
        raise ValidationError("Unexpected result from database connectivity test")

    logger.info("Database connectivity validation successful", dialect=engine.dialect.name)
    return True
