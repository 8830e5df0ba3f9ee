"""Spin-wheel assignment: a fair random pick of participant and queued task."""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlmodel import Session, select

from . import instances
from .errors import ValidationError
from .lifecycle import end_of_day
from .members import list_members
from .models import InstanceSource, Member, MemberRole, TaskInstance, TaskTemplate
from .notifications import Notifier
from .templates import get_template

log = structlog.get_logger(__name__)

RECENT_WINNER_WINDOW = 3
BASE_WEIGHT = 10
RECENT_WIN_PENALTY = 3


@dataclass
class SpinProposal:
    member: Member
    template: TaskTemplate


def recent_winner_ids(session: Session, family_id: int) -> list[int]:
    return list(
        session.exec(
            select(TaskInstance.assignee_member_id)
            .where(
                TaskInstance.family_id == family_id,
                TaskInstance.source == InstanceSource.spin,
            )
            .order_by(TaskInstance.created_at.desc(), TaskInstance.id.desc())
            .limit(RECENT_WINNER_WINDOW)
        ).all()
    )


def spin_weight(member_id: int, recent_winners: Sequence[int]) -> int:
    recent_wins = sum(1 for winner in recent_winners if winner == member_id)
    return max(1, BASE_WEIGHT - recent_wins * RECENT_WIN_PENALTY)


def pick_spin_proposal(
    session: Session,
    family_id: int,
    template_ids: Sequence[int],
    rng: Optional[random.Random] = None,
) -> SpinProposal:
    rng = rng or random.Random()
    participants = [m for m in list_members(session, family_id) if m.role == MemberRole.participant]
    if not participants:
        raise ValidationError("Add a participant before spinning")
    queue = []
    for template_id in template_ids:
        template = get_template(session, family_id, template_id)
        if template.enabled and not template.archived:
            queue.append(template)
    if not queue:
        raise ValidationError("Queue at least one enabled task before spinning")

    winners = recent_winner_ids(session, family_id)
    weights = [spin_weight(member.id, winners) for member in participants]
    member = rng.choices(participants, weights=weights, k=1)[0]
    template = rng.choice(queue)
    log.info("spin_proposed", member_id=member.id, template_id=template.id)
    return SpinProposal(member=member, template=template)


def accept_spin(
    session: Session,
    family_id: int,
    template_id: int,
    member_id: int,
    assigner_id: int,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> TaskInstance:
    now = now or datetime.utcnow()
    return instances.assign(
        session,
        family_id,
        template_id,
        member_id,
        end_of_day(now.date()),
        assigner_id,
        source=InstanceSource.spin,
        notifier=notifier,
    )
