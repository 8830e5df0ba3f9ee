"""Task instance engine: assignment and every status transition.

Each transition is validated against ``lifecycle.TRANSITIONS`` and persisted
with a compare-and-swap on the status column, so a write issued against a stale
status is rejected instead of overwriting a concurrent change.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import approvals, ledger
from .db import compare_and_set_status, read_with_retry, store_errors, swap_status
from .errors import (
    AlreadyApprovedError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    StarboardError,
    TransientError,
    ValidationError,
)
from .lifecycle import (
    Classification,
    Transition,
    classify,
    compute_expires_at,
    is_overdue,
    is_past_expiry,
    next_status,
)
from .members import get_guardian, get_member, list_members
from .models import (
    ApprovalRecord,
    InstanceSource,
    MemberRole,
    ScheduleType,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
)
from .notifications import NotificationEvent, Notifier, dispatch
from .templates import ensure_assignable, get_template

log = structlog.get_logger(__name__)


@dataclass
class ClearResult:
    cleared: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


def get_instance(session: Session, family_id: int, instance_id: int) -> TaskInstance:
    instance = session.get(TaskInstance, instance_id)
    if not instance or instance.family_id != family_id:
        raise NotFoundError("Task not found", entity_id=instance_id)
    return instance


def ensure_status(instance: TaskInstance, *expected: TaskStatus):
    if instance.status in expected:
        return
    if instance.status == TaskStatus.approved:
        raise AlreadyApprovedError("Task was already approved", entity_id=instance.id, current_status=instance.status)
    raise InvalidStateError(
        f"Task is {instance.status.value}, refresh and try again",
        entity_id=instance.id,
        current_status=instance.status,
    )


def _stale(session: Session, instance: TaskInstance, transition: Transition) -> InvalidStateError:
    session.refresh(instance)
    if instance.status == TaskStatus.approved and transition in (Transition.approve, Transition.clear):
        return AlreadyApprovedError("Task was already approved", entity_id=instance.id, current_status=instance.status)
    return InvalidStateError(
        "Task changed while you were looking at it, refresh and try again",
        entity_id=instance.id,
        current_status=instance.status,
    )


def _template_for(session: Session, instance: TaskInstance) -> TaskTemplate:
    return session.get(TaskTemplate, instance.template_id)


def assign(
    session: Session,
    family_id: int,
    template_id: int,
    assignee_id: int,
    due_at: datetime,
    assigner_id: int,
    source: InstanceSource = InstanceSource.manual,
    notifier: Optional[Notifier] = None,
) -> TaskInstance:
    assigner = get_guardian(session, family_id, assigner_id)
    try:
        template = get_template(session, family_id, template_id)
        assignee = get_member(session, family_id, assignee_id)
    except NotFoundError as exc:
        raise ValidationError(exc.message, entity_id=exc.entity_id) from exc
    ensure_assignable(template)

    instance = TaskInstance(
        family_id=family_id,
        template_id=template.id,
        assignee_member_id=assignee.id,
        assigned_by_member_id=assigner.id,
        status=TaskStatus.open,
        source=source,
        due_at=due_at,
        expires_at=compute_expires_at(template, due_at),
        recurrence_day=due_at.date() if template.schedule_type == ScheduleType.recurring_daily else None,
    )
    session.add(instance)
    try:
        with store_errors("assign"):
            session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ValidationError(
            f"{template.title} is already assigned to {assignee.display_name} for that day",
            entity_id=template.id,
        ) from exc
    session.refresh(instance)
    log.info(
        "task_assigned",
        instance_id=instance.id,
        template_id=template.id,
        assignee_id=assignee.id,
        source=source.value,
        due_at=due_at.isoformat(),
    )
    dispatch(notifier, NotificationEvent.task_assigned, [assignee], template.title, assigner_name=assigner.display_name)
    return instance


def request_completion(
    session: Session,
    family_id: int,
    instance_id: int,
    requester_id: int,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> TaskInstance:
    """Mark a task done. Goes to review, or straight to approved for a lone guardian."""
    now = now or datetime.utcnow()
    requester = get_member(session, family_id, requester_id)
    instance = get_instance(session, family_id, instance_id)
    if requester.id != instance.assignee_member_id and not requester.is_guardian:
        raise AuthorizationError("Only the assignee or a guardian can complete this task", entity_id=instance_id)
    if is_past_expiry(instance, now) and instance.status == TaskStatus.open:
        expire(session, family_id, instance_id, now=now)
    target = next_status(instance.status, Transition.request_completion, instance.id)

    assignee = get_member(session, family_id, instance.assignee_member_id, include_removed=True)
    if not approvals.requires_approval(session, assignee):
        log.info("auto_approval", instance_id=instance_id, member_id=assignee.id)
        return approve(
            session, family_id, instance_id, requester.id, expected=TaskStatus.open, now=now, notifier=notifier
        )

    swapped = compare_and_set_status(
        session,
        instance.id,
        TaskStatus.open,
        target,
        now=now,
        completion_requested_by=requester.id,
        completion_requested_at=now,
    )
    if not swapped:
        raise _stale(session, instance, Transition.request_completion)
    session.refresh(instance)
    log.info("completion_requested", instance_id=instance_id, requester_id=requester.id)

    template = _template_for(session, instance)
    guardians = [
        member
        for member in list_members(session, family_id)
        if member.role == MemberRole.guardian and member.id != requester.id
    ]
    dispatch(
        notifier,
        NotificationEvent.completion_pending,
        guardians,
        template.title,
        requester_name=requester.display_name,
    )
    return instance


def _commit_transition(
    session: Session,
    instance: TaskInstance,
    expected: TaskStatus,
    new_status: TaskStatus,
    transition: Transition,
    now: Optional[datetime],
    rows: Sequence = (),
    **values,
):
    """Swap the status from ``expected`` and write ``rows`` in one transaction.

    Either everything lands or nothing does: a lost swap, a constraint
    violation or a store failure rolls the whole transaction back.
    """
    try:
        with store_errors(transition.value):
            if not swap_status(session, instance.id, expected, new_status, now=now, **values):
                session.rollback()
                raise _stale(session, instance, transition)
            for row in rows:
                session.add(row)
            session.commit()
    except (IntegrityError, TransientError):
        session.rollback()
        raise
    session.refresh(instance)


def approve(
    session: Session,
    family_id: int,
    instance_id: int,
    approver_id: int,
    expected: TaskStatus = TaskStatus.pending_approval,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
    record: Optional[ApprovalRecord] = None,
) -> TaskInstance:
    """Approve from ``expected`` and pay out the template's stars exactly once.

    The status swap, the ledger credit and the optional approval ``record``
    commit together. Raises ``AlreadyApprovedError`` when the instance is
    already approved, including when a concurrent approver won the swap, and
    ``InvalidStateError`` when it moved to any other status.
    """
    now = now or datetime.utcnow()
    instance = get_instance(session, family_id, instance_id)
    try:
        ensure_status(instance, expected)
        next_status(expected, Transition.approve, instance.id)
    except AlreadyApprovedError:
        log.info("approve_already_applied", instance_id=instance_id, approver_id=approver_id)
        raise

    template = _template_for(session, instance)
    award = ledger.award_entry(family_id, instance.assignee_member_id, template.default_stars, approver_id, instance.id)
    audit = [record] if record is not None else []
    values = {"completed_at": now, "completion_requested_by": None, "completion_requested_at": None}
    try:
        _commit_transition(
            session, instance, expected, TaskStatus.approved, Transition.approve, now, [award, *audit], **values
        )
    except AlreadyApprovedError:
        log.info("approve_already_applied", instance_id=instance_id, approver_id=approver_id)
        raise
    except IntegrityError:
        if not ledger.award_exists(session, instance.id):
            raise
        log.info("award_already_recorded", instance_id=instance.id)
        _commit_transition(session, instance, expected, TaskStatus.approved, Transition.approve, now, audit, **values)

    log.info(
        "task_approved",
        instance_id=instance.id,
        approver_id=approver_id,
        stars=template.default_stars,
    )
    assignee = get_member(session, family_id, instance.assignee_member_id, include_removed=True)
    dispatch(notifier, NotificationEvent.approved, [assignee], template.title, stars=template.default_stars)
    return instance


def reject(
    session: Session,
    family_id: int,
    instance_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
    record: Optional[ApprovalRecord] = None,
) -> TaskInstance:
    instance = get_instance(session, family_id, instance_id)
    target = next_status(instance.status, Transition.reject, instance.id)
    _commit_transition(
        session,
        instance,
        TaskStatus.pending_approval,
        target,
        Transition.reject,
        now,
        [record] if record is not None else [],
        completion_requested_by=None,
        completion_requested_at=None,
    )
    log.info("task_rejected", instance_id=instance_id)

    template = _template_for(session, instance)
    assignee = get_member(session, family_id, instance.assignee_member_id, include_removed=True)
    dispatch(notifier, NotificationEvent.rejected, [assignee], template.title, reason=reason)
    return instance


def reopen(session: Session, family_id: int, instance_id: int, now: Optional[datetime] = None) -> TaskInstance:
    """Reset a row persisted as ``rejected`` back to ``open``."""
    instance = get_instance(session, family_id, instance_id)
    target = next_status(instance.status, Transition.reopen, instance.id)
    if not compare_and_set_status(session, instance.id, TaskStatus.rejected, target, now=now):
        raise _stale(session, instance, Transition.reopen)
    session.refresh(instance)
    log.info("task_reopened", instance_id=instance_id)
    return instance


def expire(session: Session, family_id: int, instance_id: int, now: Optional[datetime] = None) -> TaskInstance:
    now = now or datetime.utcnow()
    instance = get_instance(session, family_id, instance_id)
    current = instance.status
    target = next_status(current, Transition.expire, instance.id)
    if instance.expires_at is None:
        raise InvalidStateError("Only time-sensitive tasks expire", entity_id=instance_id, current_status=current)
    if not is_past_expiry(instance, now):
        raise InvalidStateError("Task has not reached its deadline", entity_id=instance_id, current_status=current)
    if not compare_and_set_status(session, instance.id, current, target, now=now):
        raise _stale(session, instance, Transition.expire)
    session.refresh(instance)
    log.info("task_expired", instance_id=instance_id, expires_at=instance.expires_at.isoformat())
    return instance


def bulk_clear_overdue(
    session: Session,
    family_id: int,
    instance_ids: Iterable[int],
    cleared_by_id: int,
    now: Optional[datetime] = None,
) -> ClearResult:
    """Mark overdue tasks approved without paying stars ("done but unpaid").

    Tasks that are not overdue, or that changed concurrently, are skipped.
    """
    now = now or datetime.utcnow()
    guardian = get_guardian(session, family_id, cleared_by_id)
    result = ClearResult()
    for instance_id in instance_ids:
        try:
            instance = get_instance(session, family_id, instance_id)
        except NotFoundError:
            result.skipped.append(instance_id)
            continue
        if not is_overdue(instance, now):
            result.skipped.append(instance_id)
            continue
        current = instance.status
        try:
            next_status(current, Transition.clear, instance.id)
        except StarboardError:
            result.skipped.append(instance_id)
            continue
        swapped = compare_and_set_status(
            session,
            instance.id,
            current,
            TaskStatus.approved,
            now=now,
            completed_at=now,
            cleared_by_member_id=guardian.id,
            completion_requested_by=None,
            completion_requested_at=None,
        )
        (result.cleared if swapped else result.skipped).append(instance_id)
    log.info(
        "overdue_cleared",
        cleared_by=guardian.id,
        cleared=len(result.cleared),
        skipped=len(result.skipped),
    )
    return result


def list_instances(
    session: Session,
    family_id: int,
    assignee_id: Optional[int] = None,
    status: Optional[TaskStatus] = None,
    window: Optional[Classification] = None,
    now: Optional[datetime] = None,
):
    now = now or datetime.utcnow()
    statement = select(TaskInstance).where(TaskInstance.family_id == family_id)
    if assignee_id is not None:
        statement = statement.where(TaskInstance.assignee_member_id == assignee_id)
    if status is not None:
        statement = statement.where(TaskInstance.status == status)
    statement = statement.order_by(TaskInstance.due_at, TaskInstance.id)
    rows = read_with_retry(session, lambda: session.exec(statement).all(), "list_instances")
    if window is None:
        return rows
    return [instance for instance in rows if classify(instance, now) == window]
