"""
Notification Collaborator Interface.

CrisisWatch decides *what* should be communicated and records that it
happened; actual delivery (pushing resources into the user's chat,
alerting operators on a dashboard, paging on-call staff) belongs to the
deploying application.  Delivery is injected as a ``Notifier``.

Channels:

* ``session:<session_id>`` -- content for the end user's conversation.
* ``admin-broadcast``      -- alerts for operators and clinicians.

**This module does not guarantee delivery.**  A notifier that raises is
logged by the caller; committed crisis state is never rolled back because
a notification failed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "admin-broadcast"


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


class NotificationEvent:
    RESOURCES_OFFERED = "resources_offered"
    SUPERVISOR_REVIEW_REQUIRED = "supervisor_review_required"
    CRISIS_EMERGENCY = "crisis_emergency"
    HANDOFF_REQUIRED = "handoff_required"
    HANDOFF_STATUS_UPDATED = "handoff_status_updated"
    CLINICAL_REVIEW_REQUIRED = "clinical_review_required"
    CLINICAL_REVIEW_UPDATED = "clinical_review_updated"


class Notifier(Protocol):
    def notify(self, channel: str, event: str, payload: dict[str, Any]) -> None: ...


class NullNotifier:
    """Drops every notification.  Used when no transport is configured."""

    def notify(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        logger.debug("NOTIFICATION_DROPPED", extra={"channel": channel, "event": event})


class SentNotification:
    """A notification captured by ``RecordingNotifier``."""

    def __init__(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        self.channel = channel
        self.event = event
        self.payload = payload
        self.sent_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"SentNotification(channel='{self.channel}', event='{self.event}')"


class RecordingNotifier:
    """In-memory notifier for tests, demos, and local development."""

    def __init__(self) -> None:
        self.sent: list[SentNotification] = []

    def notify(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append(SentNotification(channel, event, dict(payload)))

    def events(self, channel: str | None = None) -> list[str]:
        return [n.event for n in self.sent if channel is None or n.channel == channel]


def safe_notify(notifier: Notifier, channel: str, event: str, payload: dict[str, Any]) -> bool:
    """Deliver through ``notifier``; log and report failure instead of raising.

    Returns:
        True if the notifier accepted the notification.
    """
    try:
        notifier.notify(channel, event, payload)
        return True
    except Exception as exc:
        logger.error(
            "NOTIFICATION_FAILED",
            extra={"channel": channel, "event": event, "error": str(exc)},
        )
        return False
