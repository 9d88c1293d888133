"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Generic, TypeVar

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")

DEFAULT_URL = "https://instance.service-now.com/api/global/em/jsonv2"
DEFAULT_SOURCE = "Kapacitor"

T = TypeVar("T")


class ServiceNowConfig(BaseModel):
    """ServiceNow Event Management API configuration.

    Instances are frozen; a running service replaces the whole object on update.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = False
    url: str = DEFAULT_URL
    username: str = ""
    password: SecretStr = SecretStr("")
    source: str = DEFAULT_SOURCE
    # Read by the alerting platform, not by the notifier itself.
    global_: bool = Field(default=False, alias="global")
    state_changes_only: bool = False
    timeout_secs: float | None = 10.0

    @model_validator(mode="after")
    def _check_url(self) -> ServiceNowConfig:
        if not self.enabled:
            return self
        if not self.url:
            raise ValueError("must specify events URL")
        try:
            parsed = httpx.URL(self.url)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid url {self.url!r}: {exc}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError(f"invalid url {self.url!r}: expected absolute http(s) URL")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class Settings(BaseModel):
    """Root settings container."""

    servicenow: ServiceNowConfig = ServiceNowConfig()
    logging: LoggingConfig = LoggingConfig()


class ConfigValue(Generic[T]):
    """Thread-safe holder for a single immutable config snapshot.

    Readers get whichever snapshot was current when they called ``load()``;
    writers replace the snapshot as a whole.
    """

    def __init__(self, value: T) -> None:
        self._lock = threading.Lock()
        self._value = value

    def load(self) -> T:
        with self._lock:
            return self._value

    def store(self, value: T) -> None:
        with self._lock:
            self._value = value


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
