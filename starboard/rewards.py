from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import update
from sqlmodel import Session, select

from . import ledger
from .db import store_errors
from .errors import InvalidStateError, NotFoundError, TransientError, ValidationError
from .members import get_guardian, get_member
from .models import Member, Reward, RewardStatus

log = structlog.get_logger(__name__)


def _validate(title: Optional[str], star_cost: Optional[int]):
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if star_cost is None or star_cost < 1:
        raise ValidationError("Star cost must be a positive whole number")


def create_reward(
    session: Session,
    family_id: int,
    created_by_id: int,
    title: str,
    star_cost: int,
    description: Optional[str] = None,
) -> Reward:
    get_guardian(session, family_id, created_by_id)
    _validate(title, star_cost)
    reward = Reward(
        family_id=family_id,
        title=title.strip(),
        description=description,
        star_cost=star_cost,
        created_by_member_id=created_by_id,
    )
    session.add(reward)
    session.commit()
    session.refresh(reward)
    log.info("reward_created", reward_id=reward.id, star_cost=star_cost)
    return reward


def get_reward(session: Session, family_id: int, reward_id: int) -> Reward:
    reward = session.get(Reward, reward_id)
    if not reward or reward.family_id != family_id:
        raise NotFoundError("Reward not found", entity_id=reward_id)
    return reward


def list_rewards(session: Session, family_id: int, status: Optional[RewardStatus] = None):
    statement = select(Reward).where(Reward.family_id == family_id)
    if status is not None:
        statement = statement.where(Reward.status == status)
    return session.exec(statement.order_by(Reward.star_cost, Reward.id)).all()


REWARD_EDITABLE_FIELDS = ("title", "description", "star_cost")


def update_reward(session: Session, family_id: int, reward_id: int, updated_by_id: int, **changes) -> Reward:
    get_guardian(session, family_id, updated_by_id)
    reward = get_reward(session, family_id, reward_id)
    if reward.status != RewardStatus.active:
        raise InvalidStateError("Only active rewards can be edited", entity_id=reward_id, current_status=reward.status)
    unknown = set(changes) - set(REWARD_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot edit {', '.join(sorted(unknown))}")
    title = changes.get("title", reward.title)
    star_cost = changes.get("star_cost", reward.star_cost)
    _validate(title, star_cost)
    reward.title = title.strip()
    reward.star_cost = star_cost
    if "description" in changes:
        reward.description = changes["description"]
    session.add(reward)
    session.commit()
    session.refresh(reward)
    log.info("reward_updated", reward_id=reward_id, fields=sorted(changes))
    return reward


def retire_reward(session: Session, family_id: int, reward_id: int, retired_by_id: int) -> Reward:
    """Take an unclaimed reward off the shelf. Redeemed rewards stay as history."""
    get_guardian(session, family_id, retired_by_id)
    reward = get_reward(session, family_id, reward_id)
    if reward.status != RewardStatus.active:
        raise InvalidStateError("Only active rewards can be retired", entity_id=reward_id, current_status=reward.status)
    reward.status = RewardStatus.retired
    session.add(reward)
    session.commit()
    session.refresh(reward)
    log.info("reward_retired", reward_id=reward_id)
    return reward


def redeem_reward(
    session: Session,
    family_id: int,
    reward_id: int,
    member_id: int,
    now: Optional[datetime] = None,
) -> Reward:
    """Spend a member's stars on an active reward.

    The ``active -> redeemed`` swap, the balance check and the
    ``reward_redemption`` debit share one transaction. The member row is
    locked first where the store supports it, and on SQLite the swap takes
    the write lock before the balance is read, so concurrent claims cannot
    overdraw the member.
    """
    now = now or datetime.utcnow()
    member = get_member(session, family_id, member_id)
    reward = get_reward(session, family_id, reward_id)
    if reward.status != RewardStatus.active:
        raise InvalidStateError("Reward was already claimed", entity_id=reward_id, current_status=reward.status)

    statement = (
        update(Reward)
        .where(Reward.id == reward.id, Reward.status == RewardStatus.active)
        .values(status=RewardStatus.redeemed, redeemed_by_member_id=member.id, redeemed_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        with store_errors("redeem_reward"):
            session.exec(select(Member.id).where(Member.id == member.id).with_for_update()).one()
            if session.exec(statement).rowcount != 1:
                session.rollback()
                raise InvalidStateError("Reward was already claimed", entity_id=reward_id)
            balance = ledger.balance_in_transaction(session, member.id)
            if balance < reward.star_cost:
                session.rollback()
                raise ValidationError(
                    f"{member.display_name} needs {reward.star_cost - balance} more stars",
                    entity_id=reward_id,
                )
            session.add(ledger.redemption_entry(family_id, member.id, reward.star_cost, reward.id))
            session.commit()
    except TransientError:
        session.rollback()
        raise
    session.refresh(reward)
    log.info("reward_redeemed", reward_id=reward.id, member_id=member.id, star_cost=reward.star_cost)
    return reward
