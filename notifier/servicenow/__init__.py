"""ServiceNow Event Management notifier."""

from notifier.servicenow.exceptions import (
    InvalidURLError,
    PayloadEncodeError,
    ServiceDisabledError,
    ServiceNowAPIError,
    ServiceNowConnectionError,
    ServiceNowError,
    TemplateCompileError,
    TemplateError,
    TemplateExecError,
)
from notifier.servicenow.handler import AlertHandler, ServiceNowHandler
from notifier.servicenow.payload import ServiceNowAlert, cutoff, severity_for
from notifier.servicenow.service import (
    AlertTestOptions,
    HandlerConfig,
    PreparedPost,
    ServiceNowService,
)
from notifier.servicenow.templates import TemplateData, compile_template, render

__all__ = [
    "AlertHandler",
    "AlertTestOptions",
    "HandlerConfig",
    "InvalidURLError",
    "PayloadEncodeError",
    "PreparedPost",
    "ServiceDisabledError",
    "ServiceNowAPIError",
    "ServiceNowAlert",
    "ServiceNowConnectionError",
    "ServiceNowError",
    "ServiceNowHandler",
    "ServiceNowService",
    "TemplateCompileError",
    "TemplateData",
    "TemplateError",
    "TemplateExecError",
    "compile_template",
    "cutoff",
    "render",
    "severity_for",
]
