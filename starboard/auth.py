import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext
from sqlmodel import Session, select

from .db import get_session
from .models import Member
from .observability import bind_request_context

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def get_current_member(
    request: Request, session: Session = Depends(get_session)
) -> Optional[Member]:
    member_id = request.session.get("member_id")
    family_id = request.session.get("family_id")
    if not member_id or not family_id:
        return None
    statement = select(Member).where(
        Member.id == member_id,
        Member.family_id == family_id,
        Member.removed == False,  # noqa: E712
    )
    member = session.exec(statement).first()
    if member:
        bind_request_context(member_id=member.id, family_id=member.family_id)
    return member


def require_member(member: Optional[Member] = Depends(get_current_member)) -> Member:
    if not member:
        raise HTTPException(status_code=401)
    return member


def require_guardian(member: Member = Depends(require_member)) -> Member:
    if not member.is_guardian:
        raise HTTPException(status_code=403, detail="Guardian access required")
    return member


def login_member(request: Request, member: Member):
    request.session["member_id"] = member.id
    request.session["family_id"] = member.family_id
    request.session["csrf_token"] = secrets.token_hex(16)


def logout_member(request: Request):
    request.session.clear()
