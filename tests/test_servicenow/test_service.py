"""Tests for ServiceNowService: config resolution, rendering, HTTP transport."""

from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from notifier.core.config import ServiceNowConfig
from notifier.core.types import AlertLevel, EventData
from notifier.servicenow.exceptions import (
    InvalidURLError,
    ServiceDisabledError,
    ServiceNowAPIError,
    ServiceNowConnectionError,
    TemplateCompileError,
    TemplateExecError,
)
from notifier.servicenow.handler import ServiceNowHandler
from notifier.servicenow.service import (
    AlertTestOptions,
    HandlerConfig,
    ServiceNowService,
)

URL = "https://sn.example/api"


# ── Helpers ─────────────────────────────────────────────────────


class RecordingTransport(httpx.MockTransport):
    """Mock transport that records every request it receives."""

    def __init__(self, status: int = 201, body: bytes = b"", stream: Any = None) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []
        self._status = status
        self._body = body
        self._stream = stream
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._stream is not None:
            response = httpx.Response(self._status, stream=self._stream)
        else:
            response = httpx.Response(self._status, content=self._body)
        self.responses.append(response)
        return response

    def payload(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


class FailingStream(httpx.AsyncByteStream):
    """Response body that fails part-way through reading."""

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        raise httpx.ReadError("connection reset")


def _cfg(**kw: object) -> ServiceNowConfig:
    defaults: dict[str, object] = {
        "enabled": True,
        "url": URL,
        "source": "cfg-src",
    }
    defaults.update(kw)
    return ServiceNowConfig(**defaults)  # type: ignore[arg-type]


def _hc(**kw: object) -> HandlerConfig:
    return HandlerConfig(**kw)  # type: ignore[arg-type]


def _data(**kw: object) -> EventData:
    defaults: dict[str, object] = {
        "name": "cpu",
        "task_name": "cpu_alert",
        "fields": {"value": 97.25},
        "tags": {"host": "web-01"},
    }
    defaults.update(kw)
    return EventData(**defaults)  # type: ignore[arg-type]


def _service(transport: RecordingTransport | None = None, **kw: object) -> ServiceNowService:
    return ServiceNowService(_cfg(**kw), transport=transport or RecordingTransport())


def _basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


# ── prepare_post ────────────────────────────────────────────────


class TestPreparePost:
    def test_disabled_fails_before_anything_else(self) -> None:
        svc = _service(enabled=False)
        with pytest.raises(ServiceDisabledError, match="service is not enabled"):
            # Invalid URL and template would fail later stages.
            svc.prepare_post("::bad::", "a1", "m", AlertLevel.OK, _data(), _hc(node="{{"))

    def test_url_from_config(self) -> None:
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert post.url == URL

    def test_url_override(self) -> None:
        post = _service().prepare_post(
            "https://other.example/em", "a1", "m", AlertLevel.OK, _data(), _hc()
        )
        assert post.url == "https://other.example/em"

    @pytest.mark.parametrize("bad", ["not a url", "ftp://sn.example/api", "http:///path"])
    def test_malformed_url_fails_before_rendering(self, bad: str) -> None:
        with pytest.raises(InvalidURLError):
            _service().prepare_post(bad, "a1", "m", AlertLevel.OK, _data(), _hc(node="{{"))

    def test_source_from_config(self) -> None:
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert json.loads(post.body)["source"] == "cfg-src"

    def test_source_override(self) -> None:
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc(source="hc-src"))
        assert json.loads(post.body)["source"] == "hc-src"

    def test_templates_rendered_against_event(self) -> None:
        hc = _hc(
            node="{{.Tags.host}}",
            type="{{.Name}}",
            resource="{{.TaskName}}",
            metric_name='{{printf "%.2f" .Fields.value}}',
            message_key="{{.ID}}-key",
        )
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), hc)
        body = json.loads(post.body)
        assert body["node"] == "web-01"
        assert body["type"] == "cpu"
        assert body["resource"] == "cpu_alert"
        assert body["metric_name"] == "97.25"
        assert body["message_key"] == "a1-key"

    def test_empty_message_key_defaults_to_alert_id(self) -> None:
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert json.loads(post.body)["message_key"] == "a1"

    def test_message_key_rendering_empty_defaults_to_alert_id(self) -> None:
        hc = _hc(message_key="{{if .Tags.missing}}x{{end}}")
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), hc)
        assert json.loads(post.body)["message_key"] == "a1"

    def test_missing_indexed_tag_defaults_to_alert_id(self) -> None:
        hc = _hc(message_key='{{index .Tags "host"}}')
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(tags={}), hc)
        assert json.loads(post.body)["message_key"] == "a1"

    def test_compile_error_aborts(self) -> None:
        with pytest.raises(TemplateCompileError, match="template: type:"):
            _service().prepare_post(
                "", "a1", "m", AlertLevel.OK, _data(), _hc(node="ok", type="{{.Name")
            )

    def test_exec_error_aborts(self) -> None:
        with pytest.raises(TemplateExecError, match='executing "resource"'):
            _service().prepare_post(
                "", "a1", "m", AlertLevel.OK, _data(), _hc(resource="{{.Unknown}}")
            )

    def test_severity_and_description(self) -> None:
        post = _service().prepare_post("", "a1", "boom", AlertLevel.WARNING, _data(), _hc())
        body = json.loads(post.body)
        assert body["severity"] == "4"
        assert body["description"] == "boom"

    def test_long_description_truncated(self) -> None:
        message = "d" * 4001 + "tail"
        post = _service().prepare_post("", "a1", message, AlertLevel.OK, _data(), _hc())
        assert json.loads(post.body)["description"] == "d" * 4000

    def test_rendered_fields_truncated(self) -> None:
        hc = _hc(node="{{.Tags.host}}")
        data = _data(tags={"host": "h" * 300})
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, data, hc)
        assert json.loads(post.body)["node"] == "h" * 100

    def test_timeout_from_config(self) -> None:
        post = _service(timeout_secs=3.0).prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert post.timeout_secs == 3.0


class TestCredentials:
    def test_no_credentials(self) -> None:
        post = _service().prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert post.auth is None

    async def test_config_credentials(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport, username="cfg-user", password="cfg-pass")
        await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert transport.requests[0].headers["authorization"] == _basic("cfg-user", "cfg-pass")

    async def test_handler_credentials_win(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport, username="cfg-user", password="cfg-pass")
        await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc(username="hc", password="pw"))
        assert transport.requests[0].headers["authorization"] == _basic("hc", "pw")

    async def test_partial_handler_credentials_fall_back(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport, username="cfg-user", password="cfg-pass")
        await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc(username="hc"))
        assert transport.requests[0].headers["authorization"] == _basic("cfg-user", "cfg-pass")

    async def test_partial_config_credentials_unauthenticated(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport, username="cfg-user")
        await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert "authorization" not in transport.requests[0].headers


# ── alert() ─────────────────────────────────────────────────────


class TestAlert:
    async def test_scenario_payload(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport)
        await svc.alert("", "a1", "boom", AlertLevel.CRITICAL, EventData(), _hc())

        assert len(transport.requests) == 1
        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == URL
        assert request.headers["content-type"] == "application/json"
        assert transport.payload() == {
            "source": "cfg-src",
            "node": "",
            "type": "",
            "resource": "",
            "metric_name": "",
            "message_key": "a1",
            "severity": "1",
            "description": "boom",
        }

    async def test_disabled_issues_no_requests(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport, enabled=False)
        with pytest.raises(ServiceDisabledError):
            await svc.alert("", "a1", "m", AlertLevel.CRITICAL, _data(), _hc())
        assert transport.requests == []

    async def test_template_error_issues_no_requests(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport)
        with pytest.raises(TemplateCompileError):
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc(message_key="{{"))
        assert transport.requests == []

    @pytest.mark.parametrize("status", [200, 202, 204])
    async def test_other_2xx_is_failure(self, status: int) -> None:
        svc = _service(RecordingTransport(status=status, body=b"ok"))
        with pytest.raises(ServiceNowAPIError) as exc_info:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert exc_info.value.status_code == status

    async def test_decoded_error_message(self) -> None:
        svc = _service(RecordingTransport(status=500, body=b'{"error":"bad request"}'))
        with pytest.raises(ServiceNowAPIError) as exc_info:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert str(exc_info.value) == "bad request"

    async def test_non_json_body(self) -> None:
        svc = _service(RecordingTransport(status=500, body=b"oops"))
        with pytest.raises(ServiceNowAPIError) as exc_info:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        message = str(exc_info.value)
        assert "500" in message
        assert "oops" in message
        assert message == "failed to understand ServiceNow response. code: 500 content: oops"
        assert exc_info.value.body == "oops"

    @pytest.mark.parametrize(
        "body",
        [b"{}", b'{"error": 5}', b'{"error": ""}', b"[1, 2]", b'{"message": "x"}'],
    )
    async def test_missing_error_field_synthesized(self, body: bytes) -> None:
        svc = _service(RecordingTransport(status=400, body=body))
        with pytest.raises(ServiceNowAPIError, match="code: 400 content: "):
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())

    async def test_error_decoded_from_first_json_value(self) -> None:
        svc = _service(RecordingTransport(status=400, body=b'  {"error":"first"} trailing'))
        with pytest.raises(ServiceNowAPIError) as exc_info:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert str(exc_info.value) == "first"

    async def test_body_read_failure_is_connection_error(self) -> None:
        svc = _service(RecordingTransport(status=500, stream=FailingStream()))
        with pytest.raises(ServiceNowConnectionError) as exc_info:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert isinstance(exc_info.value.__cause__, httpx.ReadError)

    async def test_connect_failure_is_connection_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        svc = ServiceNowService(_cfg(), transport=httpx.MockTransport(refuse))
        with pytest.raises(ServiceNowConnectionError, match="connection refused"):
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())

    async def test_success_does_not_read_body(self) -> None:
        # A 201 with an unreadable body still succeeds: the body is never read.
        svc = _service(RecordingTransport(status=201, stream=FailingStream()))
        await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())

    async def test_missing_tag_comparison_still_sends(self) -> None:
        transport = RecordingTransport()
        hc = _hc(node='{{if eq (index .Tags "env") "prod"}}p{{else}}np{{end}}')
        await _service(transport).alert("", "a1", "m", AlertLevel.OK, _data(), hc)
        assert transport.payload()["node"] == "np"

    async def test_response_closed_on_success(self) -> None:
        transport = RecordingTransport(status=201, body=b"{}")
        await _service(transport).alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert transport.responses[0].is_closed

    async def test_response_closed_on_api_error(self) -> None:
        transport = RecordingTransport(status=500, body=b'{"error":"bad request"}')
        with pytest.raises(ServiceNowAPIError):
            await _service(transport).alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert transport.responses[0].is_closed

    async def test_response_closed_on_read_failure(self) -> None:
        transport = RecordingTransport(status=500, stream=FailingStream())
        with pytest.raises(ServiceNowConnectionError):
            await _service(transport).alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
        assert transport.responses[0].is_closed


# ── Lifecycle ───────────────────────────────────────────────────


class TestLifecycle:
    async def test_open_and_close(self) -> None:
        svc = _service()
        assert not svc.connected
        await svc.open()
        assert svc.connected
        await svc.close()
        assert not svc.connected

    async def test_close_is_safe_when_not_open(self) -> None:
        await _service().close()  # should not raise

    async def test_context_manager_shares_client(self) -> None:
        transport = RecordingTransport()
        async with _service(transport) as svc:
            await svc.alert("", "a1", "m", AlertLevel.OK, _data(), _hc())
            await svc.alert("", "a2", "m", AlertLevel.OK, _data(), _hc())
            assert svc.connected
        assert not svc.connected
        assert [transport.payload(i)["message_key"] for i in (0, 1)] == ["a1", "a2"]


# ── Configuration updates ───────────────────────────────────────


class TestUpdate:
    def test_update_replaces_config(self) -> None:
        svc = _service()
        new = _cfg(source="new-src")
        svc.update([new])
        assert svc.config is new

    def test_update_applies_to_next_alert(self) -> None:
        svc = _service()
        svc.update([_cfg(enabled=False)])
        with pytest.raises(ServiceDisabledError):
            svc.prepare_post("", "a1", "m", AlertLevel.OK, _data(), _hc())

    @pytest.mark.parametrize("configs", [[], [_cfg(), _cfg()]])
    def test_update_requires_exactly_one(self, configs: list[ServiceNowConfig]) -> None:
        with pytest.raises(ValueError, match="expected only one new config object"):
            _service().update(configs)

    def test_update_rejects_wrong_type(self) -> None:
        with pytest.raises(TypeError, match="got dict"):
            _service().update([{"enabled": True}])

    def test_policy_flags(self) -> None:
        svc = _service(global_=True, state_changes_only=True)
        assert svc.is_global is True
        assert svc.state_changes_only is True


# ── Test alerts & handlers ──────────────────────────────────────


class TestTestAlert:
    def test_default_options(self) -> None:
        opts = _service().test_options()
        assert opts.alert_id == "id"
        assert opts.source == "Kapacitor"
        assert opts.level == AlertLevel.CRITICAL
        assert opts.message == "test servicenow alert"

    async def test_sends_test_alert(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport)
        await svc.test(svc.test_options())
        assert transport.payload() == {
            "source": "Kapacitor",
            "node": "",
            "type": "",
            "resource": "",
            "metric_name": "",
            "message_key": "id",
            "severity": "1",
            "description": "test servicenow alert",
        }

    async def test_custom_options(self) -> None:
        transport = RecordingTransport()
        svc = _service(transport)
        await svc.test(AlertTestOptions(alert_id="t1", level=AlertLevel.WARNING, message="hi"))
        body = transport.payload()
        assert body["message_key"] == "t1"
        assert body["severity"] == "4"

    async def test_wrong_options_type(self) -> None:
        with pytest.raises(TypeError, match="unexpected options type"):
            await _service().test({"alert_id": "x"})


class TestHandlerFactory:
    def test_handler_keeps_config(self) -> None:
        hc = _hc(node="{{.Name}}")
        handler = _service().handler(hc, task="cpu_alert")
        assert isinstance(handler, ServiceNowHandler)
        assert handler.config is hc

    def test_handler_config_accepts_message_key_alias(self) -> None:
        hc = HandlerConfig.model_validate({"messageKey": "{{.ID}}"})
        assert hc.message_key == "{{.ID}}"
