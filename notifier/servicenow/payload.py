"""ServiceNow event payload: severity mapping, field limits, JSON encoding."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic_core import PydanticSerializationError

from notifier.core.types import AlertLevel
from notifier.servicenow.exceptions import PayloadEncodeError

# Field length limits enforced by the Event Management API.
USUAL_CUTOFF = 100
MESSAGE_KEY_CUTOFF = 1024
DESCRIPTION_CUTOFF = 4000

# ServiceNow severities: Critical (1), Major (2), Minor (3), Warning (4), OK (5).
# Major and Minor have no alert level counterpart; 0 means unmapped.
_SEVERITY: dict[AlertLevel, int] = {
    AlertLevel.OK: 5,
    AlertLevel.INFO: 5,
    AlertLevel.WARNING: 4,
    AlertLevel.CRITICAL: 1,
}


class ServiceNowAlert(BaseModel):
    """A single ServiceNow event as posted to the Event Management API.

    See the ServiceNow docs for "Manage an event" / "View an alert".
    """

    source: str
    node: str = ""
    type: str = ""
    resource: str = ""
    metric_name: str = ""
    message_key: str = ""
    severity: str = "0"
    description: str = ""


def severity_for(level: AlertLevel | int) -> int:
    """Map an alert level to the ServiceNow numeric severity."""
    return _SEVERITY.get(level, 0)


def cutoff(text: str, limit: int) -> str:
    """Return at most the first *limit* characters of *text*."""
    return text[:max(limit, 0)]


def build_alert(
    *,
    source: str,
    node: str,
    type: str,  # noqa: A002
    resource: str,
    metric_name: str,
    message_key: str,
    level: AlertLevel | int,
    description: str,
) -> ServiceNowAlert:
    """Assemble a ServiceNowAlert, clamping every text field to its limit."""
    return ServiceNowAlert(
        source=cutoff(source, USUAL_CUTOFF),
        node=cutoff(node, USUAL_CUTOFF),
        type=cutoff(type, USUAL_CUTOFF),
        resource=cutoff(resource, USUAL_CUTOFF),
        metric_name=cutoff(metric_name, USUAL_CUTOFF),
        message_key=cutoff(message_key, MESSAGE_KEY_CUTOFF),
        severity=str(severity_for(level)),
        description=cutoff(description, DESCRIPTION_CUTOFF),
    )


def encode_alert(alert: ServiceNowAlert) -> bytes:
    """Serialize *alert* to the JSON request body."""
    try:
        return alert.model_dump_json().encode()
    except (PydanticSerializationError, ValueError) as exc:
        raise PayloadEncodeError("error marshaling alert struct") from exc
