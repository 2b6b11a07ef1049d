"""Event types for the notification system.

- ``RawEvent`` — envelope with type string + JSON content
- ``AlertEvent`` — a security alert routed to one delivery channel
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class RawEvent:
    """Generic event envelope sent to subscribers."""

    type: str
    content: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict."""
        return asdict(self)


@dataclass(frozen=True)
class AlertEvent(RawEvent):
    """A security alert to be delivered on ``channel``.

    Channel adapters (email, SMS, push, in-app) subscribe to the
    notification service and pick the events addressed to them.
    """

    type: str = "security_alert"
    alert_id: str = ""
    user_id: str = ""
    channel: str = ""
    severity: str = ""
    title: str = ""
    escalated: bool = False
