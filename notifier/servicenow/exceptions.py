"""Exception hierarchy for the ServiceNow notifier."""

from __future__ import annotations


class ServiceNowError(Exception):
    """Base exception for all ServiceNow notifier errors."""


class ServiceDisabledError(ServiceNowError):
    """The ServiceNow service is disabled in configuration."""

    def __init__(self, message: str = "service is not enabled") -> None:
        super().__init__(message)


class InvalidURLError(ServiceNowError):
    """The resolved events URL could not be parsed."""


class TemplateError(ServiceNowError):
    """Base exception for handler template errors."""


class TemplateCompileError(TemplateError):
    """A handler template has invalid syntax."""


class TemplateExecError(TemplateError):
    """A handler template failed while substituting alert data."""


class PayloadEncodeError(ServiceNowError):
    """The alert payload could not be serialized to JSON."""


class ServiceNowConnectionError(ServiceNowError):
    """Failed to send the request or to read the response."""


class ServiceNowAPIError(ServiceNowError):
    """ServiceNow rejected the event (any status other than 201 Created)."""

    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
