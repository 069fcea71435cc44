"""Load service configuration from JSON or YAML files and the environment."""

from typing import Any, Dict, Mapping, Optional, Union
from pathlib import Path
import json
import os
import re
import yaml
import pydantic
import structlog

from ..errors import ConfigError
from .models import SyncConfig

logger = structlog.get_logger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# Variable names used by earlier single-endpoint deployments
LEGACY_AUTH_ENV = {
    "GRAPH_CLIENT_ID": "client_id",
    "GRAPH_CLIENT_SECRET": "client_secret",
    "GRAPH_TENANT_ID": "tenant_id",
}


def _to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a configuration document.

    ``.yaml``/``.yml`` files are parsed as YAML, everything else as JSON.
    Only top-level keys are converted from camelCase; nested sections rely
    on model aliases so that user-supplied keys such as field mappings keep
    their original spelling.

    Args:
        path: Configuration file path

    Returns:
        Configuration dictionary with snake_case top-level keys

    Raises:
        ConfigError: If the file is missing or cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                raw = yaml.safe_load(f) or {}
            else:
                raw = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to parse configuration file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")

    return {_to_snake(key): value for key, value in raw.items()}


def apply_legacy_env(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay the legacy GRAPH_*, POLL_INTERVAL and DEVICE_OS_FILTER variables."""
    data = dict(data)
    auth = dict(data.get("auth") or {})
    for env_name, field in LEGACY_AUTH_ENV.items():
        if environ.get(env_name):
            auth[field] = environ[env_name]
    if auth:
        data["auth"] = auth

    if environ.get("POLL_INTERVAL"):
        data["poll_interval"] = environ["POLL_INTERVAL"]

    if environ.get("DEVICE_OS_FILTER"):
        data["device_os_filter"] = [
            part.strip() for part in environ["DEVICE_OS_FILTER"].split(",") if part.strip()
        ]
    return data


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> SyncConfig:
    """
    Build the service configuration.

    Values come from, in increasing priority: ``GRAPH_SYNC_*`` environment
    variables and ``.env``, the configuration file, then legacy variables.

    Args:
        path: Optional JSON or YAML configuration file
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the configuration is invalid
    """
    environ = os.environ if environ is None else environ
    data = read_config_file(path) if path else {}
    data = apply_legacy_env(data, environ)

    try:
        config = SyncConfig(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.info(
        "Configuration loaded",
        source=str(path) if path else "environment",
        backend=config.database.backend,
        endpoints=[endpoint.name for endpoint in config.get_enabled_endpoints()],
    )
    return config
