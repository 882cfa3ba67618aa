"""
Configuration management for the LLM UI proxy.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "LLM_UI_PROXY_"


class GeneralConfig(BaseModel):
    """General configuration."""

    log_level: str = "INFO"
    logs_dir: str = "logs"
    log_to_file: bool = False
    json_logs: bool = True


class ServerConfig(BaseModel):
    """Listening socket configuration."""

    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)


class UpstreamConfig(BaseModel):
    """Upstream inference server configuration.

    The defaults point at LM Studio's local server. ``timeout`` is None so
    long completions are never cut off by the proxy.
    """

    model_config = ConfigDict(extra="forbid")

    base_url: str = "http://localhost:1234"
    path_prefix: str = "/llm-proxy"
    timeout: float | None = None
    excluded_headers: list[str] = Field(default_factory=lambda: ["host"])

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an absolute http(s) URL: {value!r}")
        return value

    @field_validator("path_prefix")
    @classmethod
    def _check_path_prefix(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith("/"):
            raise ValueError(f"path_prefix must start with '/': {value!r}")
        return value


class StaticConfig(BaseModel):
    """Static asset bundle configuration."""

    model_config = ConfigDict(extra="forbid")

    # None serves the bundle shipped inside the package
    assets_dir: str | None = None


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    static: StaticConfig = Field(default_factory=StaticConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides.

    local.yaml keeps machine-specific overrides under a ``settings`` key:

        settings:
          upstream:
            base_url: http://192.168.0.10:1234

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config = _read_yaml(config_dir / "settings.yaml")
    local_overrides = _read_yaml(config_dir / "local.yaml")
    if isinstance(local_overrides.get("settings"), dict):
        config = _deep_merge(config, local_overrides["settings"])
    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with LLM_UI_PROXY_ and use
    double underscores for nested keys.

    Example:
        LLM_UI_PROXY_UPSTREAM__BASE_URL=http://localhost:11434

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG_DIR":
            continue

        key_path = key[len(ENV_PREFIX) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        # Set the value (attempt to parse as appropriate type)
        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def load_settings(config_dir: Path | None = None) -> Settings:
    """Build settings from defaults, YAML files and the environment.

    Args:
        config_dir: Configuration directory. Uses LLM_UI_PROXY_CONFIG_DIR
            (default "config") if None.

    Returns:
        Settings instance.
    """
    if config_dir is None:
        config_dir = Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config"))

    config = _load_yaml_config(config_dir)
    config = _apply_env_overrides(config)
    return Settings(**config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings (cached for the process lifetime)."""
    return load_settings()
