"""Core module: config, types, logging."""

from notifier.core.config import (
    ConfigValue,
    LoggingConfig,
    ServiceNowConfig,
    Settings,
    get_settings,
    load_settings,
    reset_settings,
)
from notifier.core.logging import setup_logging
from notifier.core.types import AlertEvent, AlertLevel, EventData, EventState

__all__ = [
    "AlertEvent",
    "AlertLevel",
    "ConfigValue",
    "EventData",
    "EventState",
    "LoggingConfig",
    "ServiceNowConfig",
    "Settings",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
