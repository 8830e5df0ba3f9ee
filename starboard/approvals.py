"""Approval workflow: who must sign off on a completion, and guardian decisions.

Decisions are not safe to replay blindly. A stale decision surfaces as
``InvalidStateError`` and the caller is expected to re-read the instance.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlmodel import Session, select

from . import instances
from .errors import ValidationError
from .members import count_guardians, get_guardian
from .models import ApprovalRecord, Decision, Member, TaskInstance, TaskStatus
from .notifications import Notifier

log = structlog.get_logger(__name__)


def requires_approval(session: Session, assignee: Member) -> bool:
    """A lone guardian completing their own task skips review; everyone else waits."""
    if not assignee.is_guardian:
        return True
    return count_guardians(session, assignee.family_id) != 1


def list_pending(session: Session, family_id: int):
    return session.exec(
        select(TaskInstance)
        .where(
            TaskInstance.family_id == family_id,
            TaskInstance.status == TaskStatus.pending_approval,
        )
        .order_by(TaskInstance.completion_requested_at)
    ).all()


def approval_history(session: Session, instance_id: int):
    return session.exec(
        select(ApprovalRecord)
        .where(ApprovalRecord.task_instance_id == instance_id)
        .order_by(ApprovalRecord.created_at, ApprovalRecord.id)
    ).all()


def _decision_record(
    instance_id: int,
    approver_id: int,
    decision: Decision,
    reason: Optional[str],
    now: datetime,
) -> ApprovalRecord:
    return ApprovalRecord(
        task_instance_id=instance_id,
        approver_member_id=approver_id,
        decision=decision,
        reason=reason,
        created_at=now,
    )


def decide(
    session: Session,
    family_id: int,
    instance_id: int,
    approver_id: int,
    decision: Decision,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> TaskInstance:
    """Approve or reject a pending completion request.

    Only guardians decide. When another guardian exists, a guardian cannot
    approve a request they made themselves. The approval record commits in
    the same transaction as the status change, so a decision that loses its
    race to a concurrent one leaves no record behind.
    """
    now = now or datetime.utcnow()
    decision = Decision(decision)
    approver = get_guardian(session, family_id, approver_id)
    instance = instances.get_instance(session, family_id, instance_id)
    instances.ensure_status(instance, TaskStatus.pending_approval)
    if (
        decision == Decision.approved
        and instance.completion_requested_by == approver.id
        and count_guardians(session, family_id) > 1
    ):
        raise ValidationError("Another guardian needs to approve this", entity_id=instance_id)

    record = _decision_record(instance_id, approver.id, decision, reason, now)
    if decision == Decision.approved:
        result = instances.approve(
            session,
            family_id,
            instance_id,
            approver.id,
            expected=TaskStatus.pending_approval,
            now=now,
            notifier=notifier,
            record=record,
        )
    else:
        result = instances.reject(
            session, family_id, instance_id, reason=reason, now=now, notifier=notifier, record=record
        )
    log.info(
        "approval_decided",
        instance_id=instance_id,
        approver_id=approver.id,
        decision=decision.value,
    )
    return result
