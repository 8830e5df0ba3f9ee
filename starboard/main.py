import asyncio
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware

from . import approvals, db, instances, ledger, members, rewards, scheduler, spin, templates
from .auth import (
    get_current_member,
    hash_password,
    login_member,
    logout_member,
    require_guardian,
    require_member,
    verify_password,
)
from .db import get_session, init_db
from .errors import (
    AlreadyApprovedError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .lifecycle import Classification, classify, end_of_day
from .models import (
    ApprovalRecord,
    Decision,
    Member,
    MemberRole,
    Reward,
    RewardStatus,
    ScheduleType,
    StarsLedgerEntry,
    TaskCategory,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
)
from .observability import configure_logging

log = structlog.get_logger(__name__)

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))

ALREADY_HANDLED_MESSAGE = "This was already handled"
REFRESH_MESSAGE = "This task changed. Refresh and try again."
RETRY_MESSAGE = "Something went wrong. Please try again."


def sweep_all_families():
    with Session(db.engine) as session:
        return scheduler.run_sweep(session)


async def periodic_sweep(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweep_all_families)
        except Exception:  # noqa: BLE001
            log.exception("periodic_sweep_failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    sweeper = None
    if SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(periodic_sweep(SWEEP_INTERVAL_SECONDS))
    yield
    if sweeper:
        sweeper.cancel()


app = FastAPI(title="Family star board", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=os.getenv("SESSION_SECRET", "dev-secret"),
    session_cookie="starboardsession",
)


@app.exception_handler(AlreadyApprovedError)
async def already_approved_handler(_: Request, exc: AlreadyApprovedError):
    log.info("already_handled", entity_id=exc.entity_id)
    return JSONResponse({"status": "already_handled", "message": ALREADY_HANDLED_MESSAGE})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(_: Request, exc: InvalidStateError):
    current = exc.current_status.value if exc.current_status else None
    return JSONResponse(
        {"error": "invalid_state", "message": REFRESH_MESSAGE, "detail": exc.message, "current_status": current},
        status_code=409,
    )


@app.exception_handler(ValidationError)
async def validation_handler(_: Request, exc: ValidationError):
    return JSONResponse({"error": "validation", "message": exc.message}, status_code=400)


@app.exception_handler(NotFoundError)
async def not_found_handler(_: Request, exc: NotFoundError):
    return JSONResponse({"error": "not_found", "message": exc.message}, status_code=404)


@app.exception_handler(AuthorizationError)
async def authorization_handler(_: Request, exc: AuthorizationError):
    return JSONResponse({"error": "forbidden", "message": exc.message}, status_code=403)


@app.exception_handler(TransientError)
async def transient_handler(_: Request, exc: TransientError):
    return JSONResponse({"error": "unavailable", "message": RETRY_MESSAGE}, status_code=503)


def parse_due(value: Optional[str]) -> datetime:
    if not value:
        return end_of_day(date.today())
    try:
        if len(value) == 10:
            return end_of_day(date.fromisoformat(value))
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid due date: {value}") from None


def member_payload(member: Member, stars: int) -> dict:
    return {
        "id": member.id,
        "display_name": member.display_name,
        "role": member.role.value,
        "stars": stars,
        "can_login": bool(member.email),
    }


def template_payload(template: TaskTemplate) -> dict:
    return {
        "id": template.id,
        "title": template.title,
        "category": template.category.value,
        "default_stars": template.default_stars,
        "schedule_type": template.schedule_type.value,
        "time_window_minutes": template.time_window_minutes,
        "enabled": template.enabled,
        "archived": template.archived,
    }


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def instance_payload(instance: TaskInstance, now: Optional[datetime] = None) -> dict:
    return {
        "id": instance.id,
        "template_id": instance.template_id,
        "assignee_id": instance.assignee_member_id,
        "assigned_by_id": instance.assigned_by_member_id,
        "status": instance.status.value,
        "source": instance.source.value,
        "classification": classify(instance, now or datetime.utcnow()).value,
        "due_at": _iso(instance.due_at),
        "expires_at": _iso(instance.expires_at),
        "completion_requested_by": instance.completion_requested_by,
        "completion_requested_at": _iso(instance.completion_requested_at),
        "completed_at": _iso(instance.completed_at),
        "cleared_by_id": instance.cleared_by_member_id,
    }


def approval_payload(record: ApprovalRecord) -> dict:
    return {
        "id": record.id,
        "approver_id": record.approver_member_id,
        "decision": record.decision.value,
        "reason": record.reason,
        "created_at": _iso(record.created_at),
    }


def ledger_payload(entry: StarsLedgerEntry) -> dict:
    return {
        "id": entry.id,
        "member_id": entry.member_id,
        "delta": entry.delta,
        "reason": entry.reason,
        "created_by_id": entry.created_by_member_id,
        "task_instance_id": entry.task_instance_id,
        "reward_id": entry.reward_id,
        "created_at": _iso(entry.created_at),
    }


def reward_payload(reward: Reward) -> dict:
    return {
        "id": reward.id,
        "title": reward.title,
        "description": reward.description,
        "star_cost": reward.star_cost,
        "status": reward.status.value,
        "redeemed_by_id": reward.redeemed_by_member_id,
        "redeemed_at": _iso(reward.redeemed_at),
    }


@app.post("/register")
async def register(
    request: Request,
    display_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    family_name: str = Form(...),
    seed_templates: bool = Form(True),
    session: Session = Depends(get_session),
):
    email = email.strip().lower()
    if session.exec(select(Member).where(Member.email == email)).first():
        raise ValidationError("Email already registered")
    family = members.create_family(session, family_name)
    guardian = members.add_member(
        session,
        family.id,
        display_name,
        role=MemberRole.guardian,
        email=email,
        hashed_password=hash_password(password),
    )
    if seed_templates:
        templates.seed_starter_templates(session, family.id, guardian.id)
    login_member(request, guardian)
    return {"family_id": family.id, "join_code": family.join_code, "member": member_payload(guardian, 0)}


@app.post("/login")
async def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    member = session.exec(
        select(Member).where(Member.email == email.strip().lower(), Member.removed == False)  # noqa: E712
    ).first()
    if not member or not verify_password(password, member.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    login_member(request, member)
    return {"member": member_payload(member, ledger.total_for(session, member.id))}


@app.post("/logout")
def logout(request: Request):
    logout_member(request)
    return {"status": "ok"}


@app.get("/me")
def me(
    member: Optional[Member] = Depends(get_current_member),
    session: Session = Depends(get_session),
):
    if not member:
        return {"member": None}
    return {"member": member_payload(member, ledger.total_for(session, member.id))}


@app.get("/members")
def list_members(
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    totals = ledger.totals_for_family(session, member.family_id)
    rows = members.list_members(session, member.family_id)
    return {"members": [member_payload(m, totals.get(m.id, 0)) for m in rows]}


@app.post("/members")
async def add_member(
    display_name: str = Form(...),
    role: MemberRole = Form(MemberRole.participant),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    email = email.strip().lower() if email else None
    if email and not password:
        raise ValidationError("A password is required for members who log in")
    new_member = members.add_member(
        session,
        guardian.family_id,
        display_name,
        role=role,
        email=email,
        hashed_password=hash_password(password) if password else None,
    )
    return {"member": member_payload(new_member, 0)}


@app.post("/members/{member_id}/remove")
async def remove_member(
    member_id: int,
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    removed = members.remove_member(session, guardian.family_id, member_id, guardian.id)
    return {"member_id": removed.id, "removed": True}


@app.post("/members/me/push-token")
async def register_push_token(
    push_token: str = Form(...),
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    member.push_token = push_token.strip() or None
    session.add(member)
    session.commit()
    return {"status": "ok"}


@app.get("/templates")
def list_task_templates(
    include_archived: bool = False,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    rows = templates.list_templates(session, member.family_id, include_archived=include_archived)
    return {"templates": [template_payload(t) for t in rows]}


@app.post("/templates")
async def create_task_template(
    title: str = Form(...),
    default_stars: int = Form(...),
    category: TaskCategory = Form(TaskCategory.personal),
    schedule_type: ScheduleType = Form(ScheduleType.one_time),
    time_window_minutes: Optional[int] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    template = templates.create_template(
        session,
        guardian.family_id,
        guardian.id,
        title,
        default_stars,
        category=category,
        schedule_type=schedule_type,
        time_window_minutes=time_window_minutes,
    )
    return {"template": template_payload(template)}


@app.post("/templates/{template_id}/edit")
async def edit_task_template(
    template_id: int,
    title: Optional[str] = Form(None),
    default_stars: Optional[int] = Form(None),
    category: Optional[TaskCategory] = Form(None),
    schedule_type: Optional[ScheduleType] = Form(None),
    time_window_minutes: Optional[int] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    changes = {
        "title": title,
        "default_stars": default_stars,
        "category": category,
        "schedule_type": schedule_type,
        "time_window_minutes": time_window_minutes,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    template = templates.update_template(session, guardian.family_id, template_id, guardian.id, **changes)
    return {"template": template_payload(template)}


@app.post("/templates/{template_id}/toggle")
async def toggle_task_template(
    template_id: int,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    template = templates.toggle_template(session, member.family_id, template_id, member.id)
    return {"template": template_payload(template)}


@app.post("/templates/{template_id}/archive")
async def archive_task_template(
    template_id: int,
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    template = templates.archive_template(session, guardian.family_id, template_id, guardian.id)
    return {"template": template_payload(template)}


@app.get("/instances")
def list_task_instances(
    assignee_id: Optional[int] = None,
    status: Optional[TaskStatus] = None,
    window: Optional[Classification] = None,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    now = datetime.utcnow()
    rows = instances.list_instances(
        session,
        member.family_id,
        assignee_id=assignee_id,
        status=status,
        window=window,
        now=now,
    )
    return {"instances": [instance_payload(i, now) for i in rows]}


@app.post("/instances")
async def assign_task(
    template_id: int = Form(...),
    assignee_id: int = Form(...),
    due_at: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    instance = instances.assign(
        session,
        guardian.family_id,
        template_id,
        assignee_id,
        parse_due(due_at),
        guardian.id,
    )
    return {"instance": instance_payload(instance)}


@app.get("/instances/{instance_id}")
def task_instance_detail(
    instance_id: int,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    instance = instances.get_instance(session, member.family_id, instance_id)
    history = approvals.approval_history(session, instance.id)
    return {"instance": instance_payload(instance), "approvals": [approval_payload(r) for r in history]}


@app.post("/instances/{instance_id}/complete")
async def request_task_completion(
    instance_id: int,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    instance = instances.request_completion(session, member.family_id, instance_id, member.id)
    return {"instance": instance_payload(instance)}


@app.post("/instances/{instance_id}/decide")
async def decide_task_completion(
    instance_id: int,
    decision: Decision = Form(...),
    reason: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    instance = approvals.decide(session, member.family_id, instance_id, member.id, decision, reason=reason)
    return {"status": decision.value, "instance": instance_payload(instance)}


@app.post("/instances/{instance_id}/reopen")
async def reopen_task(
    instance_id: int,
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    instance = instances.reopen(session, guardian.family_id, instance_id)
    return {"instance": instance_payload(instance)}


@app.post("/instances/clear-overdue")
async def clear_overdue_tasks(
    instance_ids: list[int] = Form(...),
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    result = instances.bulk_clear_overdue(session, member.family_id, instance_ids, member.id)
    return {"cleared": result.cleared, "skipped": result.skipped}


@app.get("/approvals/pending")
def pending_approvals(
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    rows = approvals.list_pending(session, guardian.family_id)
    return {"instances": [instance_payload(i) for i in rows]}


@app.post("/spin")
async def spin_wheel(
    template_ids: list[int] = Form(...),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    proposal = spin.pick_spin_proposal(session, guardian.family_id, template_ids)
    return {
        "member_id": proposal.member.id,
        "display_name": proposal.member.display_name,
        "template": template_payload(proposal.template),
    }


@app.post("/spin/accept")
async def accept_spin(
    template_id: int = Form(...),
    member_id: int = Form(...),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    instance = spin.accept_spin(session, guardian.family_id, template_id, member_id, guardian.id)
    return {"instance": instance_payload(instance)}


@app.get("/stars")
def star_totals(
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    totals = ledger.totals_for_family(session, member.family_id)
    rows = members.list_members(session, member.family_id)
    leaderboard = sorted(
        (member_payload(m, totals.get(m.id, 0)) for m in rows),
        key=lambda payload: payload["stars"],
        reverse=True,
    )
    return {"leaderboard": leaderboard}


@app.get("/stars/history")
def star_history(
    member_id: Optional[int] = None,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    entries = ledger.history(session, member.family_id, member_id=member_id)
    return {"entries": [ledger_payload(e) for e in entries]}


@app.post("/stars/credit")
async def credit_stars(
    member_id: int = Form(...),
    amount: int = Form(...),
    reason: str = Form("manual_bonus"),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    entry = ledger.credit(session, guardian.family_id, member_id, amount, reason, guardian.id)
    return {"entry": ledger_payload(entry), "total": ledger.total_for(session, member_id)}


@app.post("/stars/debit")
async def debit_stars(
    member_id: int = Form(...),
    amount: int = Form(...),
    reason: str = Form(...),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    entry = ledger.debit(session, guardian.family_id, member_id, amount, reason, guardian.id)
    return {"entry": ledger_payload(entry), "total": ledger.total_for(session, member_id)}


@app.get("/rewards")
def list_family_rewards(
    status: Optional[RewardStatus] = None,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    rows = rewards.list_rewards(session, member.family_id, status=status)
    return {"rewards": [reward_payload(r) for r in rows]}


@app.post("/rewards")
async def create_family_reward(
    title: str = Form(...),
    star_cost: int = Form(...),
    description: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    reward = rewards.create_reward(session, guardian.family_id, guardian.id, title, star_cost, description)
    return {"reward": reward_payload(reward)}


@app.post("/rewards/{reward_id}/edit")
async def edit_family_reward(
    reward_id: int,
    title: Optional[str] = Form(None),
    star_cost: Optional[int] = Form(None),
    description: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    changes = {"title": title, "star_cost": star_cost, "description": description}
    changes = {key: value for key, value in changes.items() if value is not None}
    reward = rewards.update_reward(session, guardian.family_id, reward_id, guardian.id, **changes)
    return {"reward": reward_payload(reward)}


@app.post("/rewards/{reward_id}/retire")
async def retire_family_reward(
    reward_id: int,
    session: Session = Depends(get_session),
    guardian: Member = Depends(require_guardian),
):
    reward = rewards.retire_reward(session, guardian.family_id, reward_id, guardian.id)
    return {"reward": reward_payload(reward)}


@app.post("/rewards/{reward_id}/redeem")
async def redeem_family_reward(
    reward_id: int,
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    reward = rewards.redeem_reward(session, member.family_id, reward_id, member.id)
    return {"reward": reward_payload(reward), "total": ledger.total_for(session, member.id)}


@app.post("/scheduler/sweep")
async def trigger_sweep(
    session: Session = Depends(get_session),
    member: Member = Depends(require_member),
):
    result = scheduler.run_sweep(session, family_id=member.family_id)
    return {"created": result.created, "expired": result.expired}


@app.get("/health")
def health():
    return {"status": "ok"}
