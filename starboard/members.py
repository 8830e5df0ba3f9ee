import secrets
from typing import Optional

import structlog
from sqlalchemy import func
from sqlmodel import Session, select

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Family, Member, MemberRole

log = structlog.get_logger(__name__)


def create_family(session: Session, name: str, join_code: Optional[str] = None) -> Family:
    family = Family(name=name.strip() or "Family", join_code=join_code or secrets.token_hex(4))
    session.add(family)
    session.commit()
    session.refresh(family)
    log.info("family_created", family_id=family.id)
    return family


def get_family_by_code(session: Session, join_code: str) -> Family:
    family = session.exec(select(Family).where(Family.join_code == join_code)).first()
    if not family:
        raise NotFoundError("Unknown join code")
    return family


def add_member(
    session: Session,
    family_id: int,
    display_name: str,
    role: MemberRole = MemberRole.participant,
    email: Optional[str] = None,
    hashed_password: Optional[str] = None,
) -> Member:
    if not display_name.strip():
        raise ValidationError("Display name is required")
    if email:
        existing = session.exec(select(Member).where(Member.email == email)).first()
        if existing:
            raise ValidationError("Email already registered")
    member = Member(
        family_id=family_id,
        display_name=display_name.strip(),
        role=role,
        email=email,
        hashed_password=hashed_password,
    )
    session.add(member)
    session.commit()
    session.refresh(member)
    log.info("member_added", family_id=family_id, member_id=member.id, role=role.value)
    return member


def get_member(session: Session, family_id: int, member_id: int, include_removed: bool = False) -> Member:
    member = session.get(Member, member_id)
    if not member or member.family_id != family_id:
        raise NotFoundError("Member not found", entity_id=member_id)
    if member.removed and not include_removed:
        raise NotFoundError("Member was removed", entity_id=member_id)
    return member


def get_guardian(session: Session, family_id: int, member_id: int) -> Member:
    member = get_member(session, family_id, member_id)
    ensure_guardian(member)
    return member


def ensure_guardian(member: Member):
    if not member.is_guardian:
        raise AuthorizationError("Only guardians can do this", entity_id=member.id)


def list_members(session: Session, family_id: int, include_removed: bool = False):
    statement = select(Member).where(Member.family_id == family_id)
    if not include_removed:
        statement = statement.where(Member.removed == False)  # noqa: E712
    return session.exec(statement.order_by(Member.id)).all()


def count_guardians(session: Session, family_id: int) -> int:
    total = session.exec(
        select(func.count(Member.id)).where(
            Member.family_id == family_id,
            Member.role == MemberRole.guardian,
            Member.removed == False,  # noqa: E712
        )
    ).one()
    return int(total or 0)


def remove_member(session: Session, family_id: int, member_id: int, removed_by_id: int) -> Member:
    """Soft-remove a member; their instances and ledger rows stay as history."""
    get_guardian(session, family_id, removed_by_id)
    member = get_member(session, family_id, member_id)
    if member.is_guardian and count_guardians(session, family_id) == 1:
        raise ValidationError("A family needs at least one guardian", entity_id=member_id)
    member.removed = True
    session.add(member)
    session.commit()
    session.refresh(member)
    log.info("member_removed", member_id=member_id, removed_by=removed_by_id)
    return member
