"""
Runtime configuration for the rendezvous server and peers.

Precedence (lowest to highest):
    DEFAULT_CONFIG  <  TOML file  <  RDV_* environment variables  <  CLI flags

The TOML file defaults to ~/.rdv/rdv.toml and is optional. Example:

    server_host = "127.0.0.1"
    server_port = 50000
    lookup_timeout = 3.0
    log_level = "INFO"
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

from rdv import (
    DELIVERY_INTERVAL_SECS,
    INBOUND_QUEUE_MAX,
    LOOKUP_TIMEOUT_SECS,
    RDV_DEFAULT_HOST,
    RDV_DEFAULT_PORT,
    REGISTRATION_ATTEMPTS,
    REGISTRATION_BACKOFF_SECS,
    REGISTRATION_TIMEOUT_SECS,
    REGISTRY_CAPACITY,
    REGISTRY_TTL_SECS,
)

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".rdv" / "rdv.toml"

DEFAULT_CONFIG: dict[str, Any] = {
    "server_host": RDV_DEFAULT_HOST,
    "server_port": RDV_DEFAULT_PORT,
    "listen_host": RDV_DEFAULT_HOST,
    "lookup_timeout": LOOKUP_TIMEOUT_SECS,
    "registration_timeout": REGISTRATION_TIMEOUT_SECS,
    "registration_attempts": REGISTRATION_ATTEMPTS,
    "registration_backoff": REGISTRATION_BACKOFF_SECS,
    "delivery_interval": DELIVERY_INTERVAL_SECS,
    "inbound_queue_max": INBOUND_QUEUE_MAX,
    "registry_capacity": REGISTRY_CAPACITY,
    "registry_ttl": REGISTRY_TTL_SECS,
    "log_level": "INFO",
}

# Environment overrides: variable -> config key
ENV_OVERRIDES = {
    "RDV_SERVER_HOST": "server_host",
    "RDV_SERVER_PORT": "server_port",
    "RDV_LOG_LEVEL": "log_level",
}

_POSITIVE_FLOATS = ("lookup_timeout", "registration_timeout", "delivery_interval")
_POSITIVE_INTS = ("registration_attempts", "inbound_queue_max", "registry_capacity")


class ConfigError(ValueError):
    """Configuration value out of range or of the wrong type."""


def validate_port(port: Any, name: str = "port", *, allow_zero: bool = False) -> int:
    """Validate a UDP port (1-65535, or 0 for "any free port")."""
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError(f"{name} must be an integer, got {type(port).__name__}")
    low = 0 if allow_zero else 1
    if not low <= port <= 65535:
        raise ConfigError(f"{name} must be between {low} and 65535, got {port}")
    return port


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib
        except ImportError:
            log.warning("tomllib/tomli not available, ignoring %s", path)
            return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        log.warning("Failed to load config from %s: %s", path, e)
        return {}


def _coerce_env(key: str, raw: str) -> Any:
    if key == "server_port":
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"RDV_SERVER_PORT must be an integer, got {raw!r}") from e
    return raw


def validate_config(config: Mapping[str, Any]) -> None:
    """Check every known key. Raises ConfigError."""
    validate_port(config["server_port"], "server_port", allow_zero=False)
    for key in ("server_host", "listen_host", "log_level"):
        if not isinstance(config[key], str) or not config[key]:
            raise ConfigError(f"{key} must be a non-empty string")
    for key in _POSITIVE_FLOATS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{key} must be a positive number, got {value!r}")
    for key in _POSITIVE_INTS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    backoff = config["registration_backoff"]
    if isinstance(backoff, bool) or not isinstance(backoff, (int, float)) or backoff < 0:
        raise ConfigError(f"registration_backoff must be >= 0, got {backoff!r}")
    ttl = config["registry_ttl"]
    if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0):
        raise ConfigError(f"registry_ttl must be a positive number or unset, got {ttl!r}")


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> dict[str, Any]:
    """Build the effective configuration.

    ``overrides`` whose value is None are ignored, so argparse results can be
    passed straight through.
    """
    config = dict(DEFAULT_CONFIG)

    path = config_path or DEFAULT_CONFIG_PATH
    if path.is_file():
        file_config = _read_toml(path)
        unknown = sorted(set(file_config) - set(DEFAULT_CONFIG))
        if unknown:
            log.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
        config.update({k: v for k, v in file_config.items() if k in DEFAULT_CONFIG})
    elif config_path is not None:
        log.warning("Config file %s not found, using defaults", config_path)

    env = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            config[key] = _coerce_env(key, env[var])

    config.update({k: v for k, v in overrides.items() if v is not None})
    config["log_level"] = str(config["log_level"]).upper()

    validate_config(config)
    return config


def configure_logging(level: str = "INFO") -> None:
    """Process-wide logging setup, called once by the ``run_*`` entry points."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
