"""Background reconciliation: daily regeneration and time-box expiry.

Sweeps are idempotent. Recurring instances are keyed by
(template, assignee, recurrence_day) in the store, so a second sweep on the
same day, or two devices sweeping at once, cannot create duplicates. Days the
sweep did not run for are skipped rather than back-filled.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from sqlmodel import Session, select

from . import instances
from .errors import InvalidStateError, ValidationError
from .lifecycle import end_of_day
from .members import list_members
from .models import (
    InstanceSource,
    Member,
    MemberRole,
    ScheduleType,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
)
from .notifications import Notifier

log = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    created: list[int] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)


def _recurring_templates(session: Session, family_id: Optional[int]):
    statement = select(TaskTemplate).where(
        TaskTemplate.schedule_type == ScheduleType.recurring_daily,
        TaskTemplate.enabled == True,  # noqa: E712
        TaskTemplate.archived == False,  # noqa: E712
    )
    if family_id is not None:
        statement = statement.where(TaskTemplate.family_id == family_id)
    return session.exec(statement.order_by(TaskTemplate.id)).all()


def _latest_assigners(session: Session, template_id: int) -> dict[int, int]:
    """Map each assignee that ever held the template to whoever last assigned it."""
    rows = session.exec(
        select(TaskInstance.assignee_member_id, TaskInstance.assigned_by_member_id)
        .where(TaskInstance.template_id == template_id)
        .order_by(TaskInstance.id)
    ).all()
    return {assignee_id: assigned_by for assignee_id, assigned_by in rows}


def _pick_assigner(members: dict[int, Member], preferred_id: int) -> Optional[int]:
    preferred = members.get(preferred_id)
    if preferred and preferred.role == MemberRole.guardian:
        return preferred.id
    guardians = [member.id for member in members.values() if member.role == MemberRole.guardian]
    return guardians[0] if guardians else None


def regenerate_recurring(
    session: Session,
    now: Optional[datetime] = None,
    family_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> list[int]:
    now = now or datetime.utcnow()
    today = now.date()
    created: list[int] = []
    for template in _recurring_templates(session, family_id):
        members = {member.id: member for member in list_members(session, template.family_id)}
        for assignee_id, assigned_by in _latest_assigners(session, template.id).items():
            if assignee_id not in members:
                continue
            existing = session.exec(
                select(TaskInstance.id).where(
                    TaskInstance.template_id == template.id,
                    TaskInstance.assignee_member_id == assignee_id,
                    TaskInstance.recurrence_day == today,
                )
            ).first()
            if existing is not None:
                continue
            assigner_id = _pick_assigner(members, assigned_by)
            if assigner_id is None:
                log.warning("recurrence_no_guardian", template_id=template.id)
                break
            try:
                instance = instances.assign(
                    session,
                    template.family_id,
                    template.id,
                    assignee_id,
                    end_of_day(today),
                    assigner_id,
                    source=InstanceSource.recurrence,
                    notifier=notifier,
                )
            except ValidationError:
                log.info("recurrence_already_created", template_id=template.id, assignee_id=assignee_id)
                continue
            created.append(instance.id)
    return created


def expire_overdue(session: Session, now: Optional[datetime] = None, family_id: Optional[int] = None) -> list[int]:
    now = now or datetime.utcnow()
    statement = select(TaskInstance).where(
        TaskInstance.status.in_([TaskStatus.open, TaskStatus.pending_approval]),
        TaskInstance.expires_at != None,  # noqa: E711
        TaskInstance.expires_at < now,
    )
    if family_id is not None:
        statement = statement.where(TaskInstance.family_id == family_id)
    expired: list[int] = []
    for instance in session.exec(statement).all():
        try:
            instances.expire(session, instance.family_id, instance.id, now=now)
        except InvalidStateError:
            continue
        expired.append(instance.id)
    return expired


def run_sweep(
    session: Session,
    now: Optional[datetime] = None,
    family_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
) -> SweepResult:
    now = now or datetime.utcnow()
    result = SweepResult(
        expired=expire_overdue(session, now=now, family_id=family_id),
        created=regenerate_recurring(session, now=now, family_id=family_id, notifier=notifier),
    )
    log.info(
        "sweep_completed",
        family_id=family_id,
        created=len(result.created),
        expired=len(result.expired),
    )
    return result
