"""Configuration models and loading."""

from .models import (
    AuthConfig,
    RateLimitConfig,
    DatabaseConfig,
    EndpointConfig,
    SyncConfig,
    predefined_endpoints
)
from .loader import load_config

__all__ = [
    "AuthConfig",
    "RateLimitConfig",
    "DatabaseConfig",
    "EndpointConfig",
    "SyncConfig",
    "predefined_endpoints",
    "load_config"
]
