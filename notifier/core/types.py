"""Alert event types handed to notifiers by the alerting platform."""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from pydantic import BaseModel, Field


class AlertLevel(IntEnum):
    """Alert level: ordered so comparisons work naturally."""

    OK = 0
    INFO = 1
    WARNING = 2
    CRITICAL = 3


class EventData(BaseModel):
    """Contextual payload of one alert occurrence, used as template input."""

    name: str = ""
    task_name: str = ""
    fields: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)


class EventState(BaseModel):
    """Identity and outcome of an alert evaluation."""

    id: str
    message: str = ""
    level: AlertLevel = AlertLevel.OK


class AlertEvent(BaseModel):
    """A single alert event as produced by the platform."""

    state: EventState
    data: EventData = Field(default_factory=EventData)
