"""Notification sink that records deliveries as structured log events."""

from __future__ import annotations

import logging

LOG = logging.getLogger(__name__)

ADMIN = "admin"
REVIEWERS = "reviewers"


def user_recipient(user_id: str | None) -> str:
    return f"user:{user_id or 'unknown'}"


def _event_for(recipient: str) -> str:
    if recipient == ADMIN:
        return "ADMIN_NOTIFICATION"
    if recipient == REVIEWERS:
        return "REVIEWER_NOTIFICATION"
    if recipient.startswith("user:"):
        return "USER_NOTIFICATION"
    return "NOTIFICATION"


class LoggingNotificationSink:
    async def notify(self, recipient: str, notification_type: str, message: str) -> bool:
        LOG.info(
            _event_for(recipient),
            extra={
                "recipient": recipient,
                "notification_type": notification_type,
                "notification": message,
            },
        )
        return True


__all__ = ["ADMIN", "LoggingNotificationSink", "REVIEWERS", "user_recipient"]
