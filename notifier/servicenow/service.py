"""ServiceNow Event Management service: resolves config, renders, posts."""

from __future__ import annotations

import io
import json
from types import TracebackType
from typing import Any, NamedTuple

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from notifier.core.config import DEFAULT_SOURCE, ConfigValue, ServiceNowConfig
from notifier.core.types import AlertLevel, EventData
from notifier.servicenow.exceptions import (
    InvalidURLError,
    ServiceDisabledError,
    ServiceNowAPIError,
    ServiceNowConnectionError,
)
from notifier.servicenow.handler import ServiceNowHandler
from notifier.servicenow.payload import build_alert, encode_alert
from notifier.servicenow.templates import TemplateData, render

logger = structlog.get_logger(__name__)

_HEADERS = {"Content-Type": "application/json"}


class HandlerConfig(BaseModel):
    """Options of one registered ServiceNow alert handler.

    ``url``, ``username``, ``password`` and ``source`` override the service
    configuration when non-empty. ``node``, ``type``, ``resource``,
    ``metric_name`` and ``message_key`` are templates rendered per alert.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")
    source: str = ""
    node: str = ""
    type: str = ""
    resource: str = ""
    metric_name: str = ""
    message_key: str = Field(default="", alias="messageKey")


class AlertTestOptions(BaseModel):
    """Options for sending a test alert."""

    alert_id: str = "id"
    source: str = DEFAULT_SOURCE
    level: AlertLevel = AlertLevel.CRITICAL
    message: str = "test servicenow alert"


class PreparedPost(NamedTuple):
    """A fully rendered request, ready to send."""

    url: str
    body: bytes
    auth: httpx.BasicAuth | None
    timeout_secs: float | None


def _resolve_url(raw: str) -> str:
    """Parse the event URL.

    Stricter than a plain parse: relative and non-http(s) URLs are rejected
    too, before any template is rendered.
    """
    try:
        url = httpx.URL(raw)
    except httpx.InvalidURL as exc:
        raise InvalidURLError(f"invalid url {raw!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidURLError(f"invalid url {raw!r}: expected absolute http(s) URL")
    return str(url)


def _resolve_auth(
    config: ServiceNowConfig,
    handler_config: HandlerConfig,
) -> httpx.BasicAuth | None:
    """Handler credentials win when both are set, then the config pair."""
    for username, password in (
        (handler_config.username, handler_config.password.get_secret_value()),
        (config.username, config.password.get_secret_value()),
    ):
        if username and password:
            return httpx.BasicAuth(username, password)
    return None


def _api_error(status_code: int, body: str) -> ServiceNowAPIError:
    """Build the error for a rejected event from its response body.

    ServiceNow reports failures as ``{"error": "..."}``; anything else is
    reported with the raw status code and body.
    """
    message = f"failed to understand ServiceNow response. code: {status_code} content: {body}"
    try:
        decoded, _ = json.JSONDecoder().raw_decode(body.lstrip())
    except ValueError:
        decoded = None
    if isinstance(decoded, dict):
        error = decoded.get("error")
        if isinstance(error, str) and error:
            message = error
    return ServiceNowAPIError(message, status_code=status_code, body=body)


class ServiceNowService:
    """Posts alert events to the ServiceNow Event Management API.

    The configuration is held as one immutable snapshot that ``update()``
    swaps atomically; every alert reads it once and uses it throughout.

    Usage::

        service = ServiceNowService(settings.servicenow)
        async with service:
            handler = service.handler(HandlerConfig(node="{{.Name}}"), task="cpu")
            await handler.handle(event)
    """

    def __init__(
        self,
        config: ServiceNowConfig,
        log: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config: ConfigValue[ServiceNowConfig] = ConfigValue(config)
        self._log = log if log is not None else logger
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ── Configuration ───────────────────────────────────────────

    @property
    def config(self) -> ServiceNowConfig:
        return self._config.load()

    @property
    def is_global(self) -> bool:
        return self.config.global_

    @property
    def state_changes_only(self) -> bool:
        return self.config.state_changes_only

    def update(self, new_config: list[Any]) -> None:
        """Replace the configuration with the single object in *new_config*."""
        if len(new_config) != 1:
            raise ValueError(f"expected only one new config object, got {len(new_config)}")
        config = new_config[0]
        if not isinstance(config, ServiceNowConfig):
            raise TypeError(
                f"expected config object to be of type ServiceNowConfig, "
                f"got {type(config).__name__}"
            )
        self._config.store(config)
        self._log.info("servicenow_config_updated", enabled=config.enabled)

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        """Whether the shared HTTP client is active."""
        return self._http is not None and not self._http.is_closed

    async def open(self) -> None:
        """Create the shared httpx async client."""
        if self._http is None:
            self._http = httpx.AsyncClient(transport=self._transport)

    async def close(self) -> None:
        """Close the shared httpx async client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ServiceNowService:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ── Handlers & test alerts ──────────────────────────────────

    def handler(self, config: HandlerConfig, **context: Any) -> ServiceNowHandler:
        """Return an alert handler bound to *config*; *context* tags its logs."""
        return ServiceNowHandler(self, config, self._log.bind(**context))

    def test_options(self) -> AlertTestOptions:
        return AlertTestOptions()

    async def test(self, options: object) -> None:
        """Send a test alert to the configured URL."""
        if not isinstance(options, AlertTestOptions):
            raise TypeError(f"unexpected options type {type(options).__name__}")
        config = self.config
        await self.alert(
            config.url,
            options.alert_id,
            options.message,
            options.level,
            EventData(),
            HandlerConfig(source=options.source),
        )

    # ── Alerting ────────────────────────────────────────────────

    async def alert(
        self,
        url: str,
        alert_id: str,
        message: str,
        level: AlertLevel,
        data: EventData,
        handler_config: HandlerConfig,
    ) -> None:
        """Send one alert as a ServiceNow event.

        Raises:
            ServiceNowError: any stage failed; nothing is retried.
        """
        post = self.prepare_post(url, alert_id, message, level, data, handler_config)
        if self._http is not None:
            await self._send(self._http, post)
            return
        async with httpx.AsyncClient(transport=self._transport) as client:
            await self._send(client, post)

    def prepare_post(
        self,
        url: str,
        alert_id: str,
        message: str,
        level: AlertLevel,
        data: EventData,
        handler_config: HandlerConfig,
    ) -> PreparedPost:
        """Resolve config and templates into a request for *alert_id*."""
        config = self.config
        if not config.enabled:
            raise ServiceDisabledError()

        post_url = _resolve_url(url or config.url)
        auth = _resolve_auth(config, handler_config)
        source = handler_config.source or config.source

        buffer = io.StringIO()
        info = TemplateData(
            ID=alert_id,
            Name=data.name,
            TaskName=data.task_name,
            Fields=data.fields,
            Tags=data.tags,
        )
        node = render("node", handler_config.node, info, buffer)
        metric_type = render("type", handler_config.type, info, buffer)
        resource = render("resource", handler_config.resource, info, buffer)
        metric_name = render("metricName", handler_config.metric_name, info, buffer)
        message_key = render("messageKey", handler_config.message_key, info, buffer)

        alert = build_alert(
            source=source,
            node=node,
            type=metric_type,
            resource=resource,
            metric_name=metric_name,
            message_key=message_key or alert_id,
            level=level,
            description=message,
        )
        return PreparedPost(post_url, encode_alert(alert), auth, config.timeout_secs)

    async def _send(self, client: httpx.AsyncClient, post: PreparedPost) -> None:
        try:
            async with client.stream(
                "POST",
                post.url,
                content=post.body,
                headers=_HEADERS,
                auth=post.auth,
                timeout=httpx.Timeout(post.timeout_secs),
            ) as response:
                if response.status_code == httpx.codes.CREATED:
                    self._log.debug("servicenow_event_sent", url=post.url)
                    return
                body = await response.aread()
        except httpx.HTTPError as exc:
            raise ServiceNowConnectionError(f"ServiceNow request failed: {exc}") from exc

        raise _api_error(response.status_code, body.decode(errors="replace"))
