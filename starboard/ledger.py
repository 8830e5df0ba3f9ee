"""Stars ledger: append-only signed star transactions.

A member's star total is always ``SUM(delta)`` over their entries, computed in
the store on every read. The only uniqueness rule, at most one positive entry
per task instance, is a partial unique index (see ``StarsLedgerEntry``), so two
devices approving the same task converge on a single credit.
"""

from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .db import read_with_retry, store_errors
from .errors import DuplicateAwardError, ValidationError
from .members import get_guardian, get_member
from .models import LedgerReason, StarsLedgerEntry

log = structlog.get_logger(__name__)


def _positive_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError("Star amount must be a positive whole number")
    return amount


def _reason_text(reason) -> str:
    if isinstance(reason, LedgerReason):
        return reason.value
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required")
    return reason


def award_exists(session: Session, task_instance_id: int) -> bool:
    entry = session.exec(
        select(StarsLedgerEntry.id).where(
            StarsLedgerEntry.task_instance_id == task_instance_id,
            StarsLedgerEntry.delta > 0,
        )
    ).first()
    return entry is not None


def _insert(session: Session, entry: StarsLedgerEntry) -> StarsLedgerEntry:
    session.add(entry)
    try:
        with store_errors("ledger_insert"):
            session.commit()
    except IntegrityError as exc:
        session.rollback()
        if entry.task_instance_id is not None and entry.delta > 0 and award_exists(session, entry.task_instance_id):
            raise DuplicateAwardError(
                "Stars were already awarded for this task",
                entity_id=entry.task_instance_id,
            ) from exc
        raise
    session.refresh(entry)
    log.info(
        "ledger_entry_recorded",
        entry_id=entry.id,
        member_id=entry.member_id,
        delta=entry.delta,
        reason=entry.reason,
        task_instance_id=entry.task_instance_id,
    )
    return entry


def credit(
    session: Session,
    family_id: int,
    member_id: int,
    amount: int,
    reason,
    creator_id: int,
    task_instance_id: Optional[int] = None,
) -> StarsLedgerEntry:
    """Add stars. Raises ``DuplicateAwardError`` if the task was already paid out.

    Credits not tied to a task are manual bonuses and need a guardian.
    """
    amount = _positive_amount(amount)
    get_member(session, family_id, member_id, include_removed=True)
    if task_instance_id is None:
        get_guardian(session, family_id, creator_id)
    else:
        get_member(session, family_id, creator_id)
    entry = StarsLedgerEntry(
        family_id=family_id,
        member_id=member_id,
        delta=amount,
        reason=_reason_text(reason),
        created_by_member_id=creator_id,
        task_instance_id=task_instance_id,
    )
    return _insert(session, entry)


def debit(session: Session, family_id: int, member_id: int, amount: int, reason, creator_id: int) -> StarsLedgerEntry:
    """Guardian deduction. Totals are allowed to go negative."""
    amount = _positive_amount(amount)
    get_guardian(session, family_id, creator_id)
    get_member(session, family_id, member_id, include_removed=True)
    entry = StarsLedgerEntry(
        family_id=family_id,
        member_id=member_id,
        delta=-amount,
        reason=_reason_text(reason),
        created_by_member_id=creator_id,
    )
    return _insert(session, entry)


def award_entry(
    family_id: int, member_id: int, amount: int, creator_id: int, task_instance_id: int
) -> StarsLedgerEntry:
    """Build, but do not add, the task-completion credit for an approval.

    The approval adds it in the same transaction as its status change.
    """
    return StarsLedgerEntry(
        family_id=family_id,
        member_id=member_id,
        delta=_positive_amount(amount),
        reason=LedgerReason.task_completion.value,
        created_by_member_id=creator_id,
        task_instance_id=task_instance_id,
    )


def redemption_entry(family_id: int, member_id: int, amount: int, reward_id: int) -> StarsLedgerEntry:
    return StarsLedgerEntry(
        family_id=family_id,
        member_id=member_id,
        delta=-_positive_amount(amount),
        reason=LedgerReason.reward_redemption.value,
        created_by_member_id=member_id,
        reward_id=reward_id,
    )


def balance_in_transaction(session: Session, member_id: int) -> int:
    """Sum inside the caller's open transaction. No retry, since a retry rolls back."""
    total = session.exec(
        select(func.coalesce(func.sum(StarsLedgerEntry.delta), 0)).where(StarsLedgerEntry.member_id == member_id)
    ).one()
    return int(total or 0)


def total_for(session: Session, member_id: int) -> int:
    return read_with_retry(session, lambda: balance_in_transaction(session, member_id), "total_for")


def totals_for_family(session: Session, family_id: int) -> dict[int, int]:
    def read():
        return session.exec(
            select(StarsLedgerEntry.member_id, func.coalesce(func.sum(StarsLedgerEntry.delta), 0))
            .where(StarsLedgerEntry.family_id == family_id)
            .group_by(StarsLedgerEntry.member_id)
        ).all()

    rows = read_with_retry(session, read, "totals_for_family")
    return {member_id: int(total) for member_id, total in rows}


def history(session: Session, family_id: int, member_id: Optional[int] = None):
    statement = select(StarsLedgerEntry).where(StarsLedgerEntry.family_id == family_id)
    if member_id is not None:
        statement = statement.where(StarsLedgerEntry.member_id == member_id)
    statement = statement.order_by(StarsLedgerEntry.created_at.desc(), StarsLedgerEntry.id.desc())
    return read_with_retry(session, lambda: session.exec(statement).all(), "ledger_history")
