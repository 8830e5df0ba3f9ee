"""Best-effort notifications for task lifecycle events.

Delivery never affects the state machine: ``dispatch`` swallows and logs every
notifier failure.
"""

import os
from enum import Enum
from typing import Iterable, Optional

import httpx
import structlog

from .models import Member

log = structlog.get_logger(__name__)

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_NOTIFICATIONS_ENABLED = os.getenv("PUSH_NOTIFICATIONS_ENABLED", "0") == "1"
PUSH_TIMEOUT_SECONDS = 10.0


class NotificationEvent(str, Enum):
    task_assigned = "task_assigned"
    completion_pending = "completion_pending"
    approved = "approved"
    rejected = "rejected"


def build_message(event: NotificationEvent, task_title: str, **context) -> tuple[str, str]:
    if event == NotificationEvent.task_assigned:
        return "New Task Assigned", f"{context.get('assigner_name', 'A guardian')} assigned you: {task_title}"
    if event == NotificationEvent.completion_pending:
        return "Task Awaiting Approval", f"{context.get('requester_name', 'Someone')} completed: {task_title}"
    if event == NotificationEvent.approved:
        return "Task Approved!", f"Great job! You earned {context.get('stars', 0)} stars for: {task_title}"
    reason = context.get("reason")
    return "Task Needs Redo", f"{task_title}: {reason}" if reason else f"Please redo: {task_title}"


class Notifier:
    def send(self, event: NotificationEvent, recipients: list[Member], title: str, body: str, data: dict):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def send(self, event, recipients, title, body, data):
        log.info(
            "notification",
            notification_event=event.value,
            recipients=[member.id for member in recipients],
            title=title,
        )


class ExpoPushNotifier(Notifier):
    """Sends Expo push messages to recipients that registered a push token."""

    def __init__(self, push_url: str = EXPO_PUSH_URL, client: Optional[httpx.Client] = None):
        self.push_url = push_url
        self.client = client or httpx.Client(timeout=PUSH_TIMEOUT_SECONDS)

    def send(self, event, recipients, title, body, data):
        messages = [
            {
                "to": member.push_token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": {"type": event.value, **data},
            }
            for member in recipients
            if member.push_token
        ]
        if not messages:
            log.debug("push_skipped_no_tokens", notification_event=event.value)
            return
        response = self.client.post(
            self.push_url,
            json=messages,
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        log.info("push_sent", notification_event=event.value, count=len(messages))


def default_notifier() -> Notifier:
    if PUSH_NOTIFICATIONS_ENABLED:
        return ExpoPushNotifier()
    return LoggingNotifier()


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = default_notifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]):
    global _notifier
    _notifier = notifier


def dispatch(
    notifier: Optional[Notifier],
    event: NotificationEvent,
    recipients: Iterable[Member],
    task_title: str,
    **context,
) -> bool:
    """Fire and forget. Returns False when delivery failed."""
    notifier = notifier or get_notifier()
    recipients = [member for member in recipients if not member.removed]
    if not recipients:
        return True
    title, body = build_message(event, task_title, **context)
    data = {"task_title": task_title, **{key: value for key, value in context.items() if value is not None}}
    try:
        notifier.send(event, recipients, title, body, data)
    except Exception as exc:  # noqa: BLE001
        log.warning("notification_failed", notification_event=event.value, error=str(exc))
        return False
    return True
