"""Gateway configuration.

Configuration is loaded once at startup and never changes afterwards.

Priority for every value:
1. Explicit arguments (highest)
2. Environment variables (a .env file fills in unset ones, see load_env_file)
3. YAML config file (path from argument or SWITCHBOARD_CONFIG)
4. Defaults

Environment Variables:
    UPSTREAM_BASE_URL: Upstream API root (requests go to {url}/v1/chat/completions)
    UPSTREAM_API_KEY: Bearer token for the upstream
    UPSTREAM_MODEL: Model name sent upstream
    GATEWAY_HOST / PORT: Listen address
    LOG_LEVEL: Log level
    GATEWAY_ENV: "development" or "production"
    REQUEST_TIMEOUT: Upstream timeout in seconds
    SWITCHBOARD_DEBUG_DIR: Save request/response payloads under this directory
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_KEY = "SWITCHBOARD_CONFIG"

Environment = Literal["development", "production"]
ENVIRONMENTS = ("development", "production")


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for the gateway server."""

    host: str = "127.0.0.1"
    port: int = 8082

    # Upstream configuration
    upstream_base_url: str = "http://localhost:4000"
    upstream_api_key: str = ""
    upstream_model: str = "gpt-4o"

    # Client configuration
    request_timeout: float = 120.0
    health_timeout: float = 5.0

    # Request limits
    max_body_size: int = 500 * 1024 * 1024  # 500MB

    log_level: str = "INFO"
    environment: Environment = "development"

    # Debug: save raw requests/responses to files
    debug_dir: str | None = None  # e.g., "/tmp/switchboard-debug"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# field name -> (env var, parser)
_FIELDS: dict[str, tuple[str, Any]] = {
    "host": ("GATEWAY_HOST", str),
    "port": ("PORT", int),
    "upstream_base_url": ("UPSTREAM_BASE_URL", str),
    "upstream_api_key": ("UPSTREAM_API_KEY", str),
    "upstream_model": ("UPSTREAM_MODEL", str),
    "request_timeout": ("REQUEST_TIMEOUT", float),
    "health_timeout": ("HEALTH_TIMEOUT", float),
    "max_body_size": ("MAX_BODY_SIZE", int),
    "log_level": ("LOG_LEVEL", str),
    "environment": ("GATEWAY_ENV", str),
    "debug_dir": ("SWITCHBOARD_DEBUG_DIR", str),
}


def load_env_file(env_file: str | Path = ".env") -> bool:
    """Load variables from a dotenv file into the environment.

    Variables already set in the environment are left untouched.

    Returns:
        True if the file existed and was loaded.
    """
    from dotenv import load_dotenv

    path = Path(env_file)
    if not path.is_file():
        return False
    load_dotenv(path)
    logger.debug("Loaded environment from %s", path)
    return True


def load_config_file(config_file: str | Path | None = None) -> dict[str, Any]:
    """Read the YAML config file, if one is configured.

    Args:
        config_file: Path to config file, or None to check SWITCHBOARD_CONFIG.

    Returns:
        Mapping of config keys (empty if no file is configured).

    Raises:
        FileNotFoundError: If a configured file does not exist.
        ValueError: If the file does not contain a mapping.
    """
    config_path = config_file or os.environ.get(CONFIG_ENV_KEY)
    if not config_path:
        return {}

    content = Path(config_path).read_text()
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    unknown = set(data) - set(_FIELDS)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", config_path, sorted(unknown))
    return data


def load_config(config_file: str | Path | None = None, **overrides: Any) -> GatewayConfig:
    """Resolve the gateway configuration.

    Args:
        config_file: Optional YAML config path.
        **overrides: Explicit values; None means "not given".

    Returns:
        Frozen GatewayConfig.

    Raises:
        ValueError: If a value cannot be parsed or is out of range.
    """
    file_config = load_config_file(config_file)
    values: dict[str, Any] = {}

    for name, (env_key, parse) in _FIELDS.items():
        raw = overrides.get(name)
        if raw is None:
            raw = os.environ.get(env_key) or None
        if raw is None:
            raw = file_config.get(name)
        if raw is None:
            continue
        try:
            values[name] = parse(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {name}: {raw!r}") from e

    environment = values.get("environment", "development").lower()
    if environment not in ENVIRONMENTS:
        raise ValueError(f"environment must be one of {ENVIRONMENTS}, got: {environment!r}")
    values["environment"] = environment

    port = values.get("port", GatewayConfig.port)
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")

    if "log_level" in values:
        values["log_level"] = values["log_level"].upper()

    return GatewayConfig(**values)
