"""Exception taxonomy for the sync service."""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""

    error_type = "internal"


class ConfigError(SyncError):
    """Invalid or incomplete configuration."""

    error_type = "config"


class AuthError(SyncError):
    """Token grant rejected or identity endpoint unreachable."""

    error_type = "auth"


class HttpError(SyncError):
    """Non-retryable HTTP response from the remote API."""

    error_type = "http"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 url: Optional[str] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = body


class RetryExhausted(SyncError):
    """The retry budget for one request was consumed."""

    error_type = "retry_exhausted"

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class SchemaError(SyncError):
    """DDL failure while creating or evolving a destination table."""

    error_type = "schema"

    def __init__(self, message: str, table: Optional[str] = None, statement: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.statement = statement


class WriteError(SyncError):
    """A single record could not be written."""

    error_type = "write"

    def __init__(self, message: str, table: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.key = key
