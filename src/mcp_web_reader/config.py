"""
Configuration management for the MCP Web URL Reader.

This module implements the AppConfig Pydantic model and configuration loading.
Configuration is read once at process start and never mutated afterwards.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/mcp-web-reader/config.yml or --config path)
3. Environment variables (MCP_WEB_READER_* prefix, __ for nesting)
4. Deployment environment variables (CUSTOM_PREFIX, INTERNAL_PORT)
5. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/mcp-web-reader/config.yml")
DEFAULT_ENV_PREFIX = "MCP_WEB_READER_"

# 25 MiB, the ceiling on captured fetch output
DEFAULT_MAX_OUTPUT_BYTES = 25 * 1024 * 1024

# Flat variables understood by existing container deployments
LEGACY_ENV_VARS: dict[str, tuple[str, str]] = {
    "CUSTOM_PREFIX": ("fetch", "prefix"),
    "INTERNAL_PORT": ("server", "port"),
}

# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Server settings configuration.

    Attributes:
        host: Interface to bind.
        port: Listening port.
        endpoint_path: Path of the MCP Streamable HTTP endpoint.
        log_level: Initial application log level.
    """

    host: str = Field(
        default="0.0.0.0",
        description="Interface to bind (e.g., '127.0.0.1' or '0.0.0.0')",
    )
    port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="Listening port",
    )
    endpoint_path: str = Field(
        default="/mcp",
        description="Path serving POST/GET/DELETE for the MCP endpoint",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("endpoint_path")
    @classmethod
    def validate_endpoint_path(cls, v: str) -> str:
        """Require an absolute path other than the liveness root."""
        if not v.startswith("/") or v == "/":
            raise ValueError(
                f"Invalid endpoint path: {v!r}. Must start with '/' and not be '/'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Fetch Configuration
# =============================================================================


class FetchConfig(BaseModel):
    """Settings for the `read_web_url` fetch backend.

    Attributes:
        prefix: String prepended to every requested URL (empty = passthrough).
        backend: Fetch implementation, "curl" or "httpx".
        curl_path: curl executable name or path.
        max_output_bytes: Ceiling on the captured body size.
        timeout_seconds: Optional per-fetch time limit handed to the backend.
    """

    prefix: str = Field(
        default="",
        description="Server-side prefix joined to the caller's URL with one '/'",
    )
    backend: str = Field(
        default="curl",
        description="Fetch backend: curl or httpx",
    )
    curl_path: str = Field(
        default="curl",
        description="curl executable used by the curl backend",
    )
    max_output_bytes: int = Field(
        default=DEFAULT_MAX_OUTPUT_BYTES,
        gt=0,
        description="Maximum number of body bytes captured per fetch",
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional time limit per fetch; unset means no limit",
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the backend name."""
        valid_backends = {"curl", "httpx"}
        v_lower = v.lower()
        if v_lower not in valid_backends:
            raise ValueError(
                f"Invalid fetch backend: {v}. Must be one of: {', '.join(sorted(valid_backends))}"
            )
        return v_lower

    @property
    def prefix_configured(self) -> bool:
        """Whether a non-empty prefix is in effect."""
        return bool(self.prefix)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON lines.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit one JSON object per log line",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: Server settings.
        fetch: Fetch backend settings.
        logging: Logging configuration.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server settings",
    )
    fetch: FetchConfig = Field(
        default_factory=FetchConfig,
        description="Fetch backend settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to a Python scalar.

    Only explicit boolean words are converted to bool; numeric strings are left
    for Pydantic to coerce so that "0" and "1" stay usable as numbers.
    """
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from prefixed environment variables.

    Nested keys use a double underscore separator, e.g.
    MCP_WEB_READER_FETCH__PREFIX=https://proxy.example/fetch.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _load_legacy_env_config() -> dict[str, Any]:
    """
    Load the flat CUSTOM_PREFIX / INTERNAL_PORT variables.

    Values are taken verbatim; an empty CUSTOM_PREFIX means unprefixed mode.
    """
    result: dict[str, Any] = {}
    for env_name, (section, key) in LEGACY_ENV_VARS.items():
        if env_name in os.environ:
            result.setdefault(section, {})[key] = os.environ[env_name]
    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="MCP Web URL Reader",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument("--host", type=str, help="Interface to bind")
    parser.add_argument("--port", type=int, help="Listening port")
    parser.add_argument("--prefix", type=str, help="URL prefix for read_web_url")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config
    if parsed.host:
        result.setdefault("server", {})["host"] = parsed.host
    if parsed.port is not None:
        result.setdefault("server", {})["port"] = parsed.port
    if parsed.prefix is not None:
        result.setdefault("fetch", {})["prefix"] = parsed.prefix
    if parsed.log_level:
        result.setdefault("server", {})["log_level"] = parsed.log_level
        result.setdefault("logging", {})["level"] = parsed.log_level
    if parsed.debug:
        result.setdefault("server", {})["log_level"] = "debug"
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, prefixed
    environment, deployment environment, command line.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--prefix", "https://proxy.example/fetch"])
        >>> config.fetch.prefix
        'https://proxy.example/fetch'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, _load_legacy_env_config())
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
