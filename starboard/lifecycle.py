"""Pure task-instance state machine and due-date classification.

Nothing here touches the store: the engines load rows, ask this module whether
a transition is allowed, then persist it with a compare-and-swap.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from .errors import AlreadyApprovedError, InvalidStateError
from .models import ScheduleType, TaskInstance, TaskStatus, TaskTemplate


class Transition(str, Enum):
    request_completion = "request_completion"
    approve = "approve"
    reject = "reject"
    reopen = "reopen"
    expire = "expire"
    clear = "clear"


class Classification(str, Enum):
    overdue = "overdue"
    due_today = "due_today"
    upcoming = "upcoming"
    expired = "expired"


TERMINAL_STATUSES = frozenset({TaskStatus.approved, TaskStatus.expired})
ACTIVE_STATUSES = frozenset({TaskStatus.open, TaskStatus.pending_approval})

TRANSITIONS: dict[Transition, tuple[frozenset, TaskStatus]] = {
    Transition.request_completion: (frozenset({TaskStatus.open}), TaskStatus.pending_approval),
    Transition.approve: (ACTIVE_STATUSES, TaskStatus.approved),
    Transition.reject: (frozenset({TaskStatus.pending_approval}), TaskStatus.open),
    Transition.reopen: (frozenset({TaskStatus.rejected}), TaskStatus.open),
    Transition.expire: (ACTIVE_STATUSES, TaskStatus.expired),
    Transition.clear: (ACTIVE_STATUSES, TaskStatus.approved),
}


def next_status(current: TaskStatus, transition: Transition, instance_id: Optional[int] = None) -> TaskStatus:
    """Return the status ``transition`` leads to from ``current`` or raise."""
    allowed, target = TRANSITIONS[transition]
    if current in allowed:
        return target
    if transition in (Transition.approve, Transition.clear) and current == TaskStatus.approved:
        raise AlreadyApprovedError(
            "Task was already approved",
            entity_id=instance_id,
            current_status=current,
        )
    raise InvalidStateError(
        f"Cannot {transition.value} a task that is {current.value}",
        entity_id=instance_id,
        current_status=current,
    )


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59))


def compute_expires_at(template: TaskTemplate, due_at: datetime) -> Optional[datetime]:
    if template.schedule_type != ScheduleType.time_sensitive:
        return None
    return due_at + timedelta(minutes=template.time_window_minutes or 0)


def is_past_expiry(instance: TaskInstance, now: datetime) -> bool:
    return instance.expires_at is not None and now > instance.expires_at


def classify(instance: TaskInstance, now: datetime) -> Classification:
    """Bucket an instance relative to ``now``.

    Expiry supersedes the due-date buckets. Approved instances are never
    overdue or expired.
    """
    if instance.status == TaskStatus.expired:
        return Classification.expired
    if instance.status != TaskStatus.approved and is_past_expiry(instance, now):
        return Classification.expired
    today_start = start_of_day(now)
    if instance.status not in TERMINAL_STATUSES and instance.due_at < today_start:
        return Classification.overdue
    if today_start <= instance.due_at < today_start + timedelta(days=1):
        return Classification.due_today
    return Classification.upcoming


def is_overdue(instance: TaskInstance, now: datetime) -> bool:
    return classify(instance, now) == Classification.overdue
