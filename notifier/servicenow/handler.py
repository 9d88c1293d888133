"""Alert handlers: adapt platform alert events to the ServiceNow service."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any

from notifier.core.types import AlertEvent
from notifier.servicenow.exceptions import ServiceNowError

if TYPE_CHECKING:
    from notifier.servicenow.service import HandlerConfig, ServiceNowService


class AlertHandler(abc.ABC):
    """Base class for handlers the alerting platform delivers events to."""

    @abc.abstractmethod
    async def handle(self, event: AlertEvent) -> None:
        """Deliver one alert event. Must not raise for delivery failures."""


class ServiceNowHandler(AlertHandler):
    """Sends each alert event to ServiceNow using one handler's options.

    Failures are logged with the handler's bound context and dropped;
    events are never retried.
    """

    def __init__(self, service: ServiceNowService, config: HandlerConfig, log: Any) -> None:
        self._service = service
        self._config = config
        self._log = log

    @property
    def config(self) -> HandlerConfig:
        return self._config

    async def handle(self, event: AlertEvent) -> None:
        state = event.state
        try:
            await self._service.alert(
                self._config.url,
                state.id,
                state.message,
                state.level,
                event.data,
                self._config,
            )
        except ServiceNowError:
            self._log.exception(
                "servicenow_send_failed",
                alert_id=state.id,
                level=state.level.name,
            )
