"""Notifications — security alert delivery fan-out.

Provides:
- ``NotificationService`` — fan-out event bus using asyncio queues
- ``AlertEvent`` — one alert delivered on one channel
"""

from __future__ import annotations

from account_guard.notifications.events import AlertEvent, RawEvent
from account_guard.notifications.service import NotificationService

__all__ = [
    "AlertEvent",
    "NotificationService",
    "RawEvent",
]
