import pytest
from sqlmodel import Session, select

from conftest import make_family, make_template, test_engine
from starboard import approvals, instances, ledger
from starboard.errors import (
    AlreadyApprovedError,
    AuthorizationError,
    InvalidStateError,
    ValidationError,
)
from starboard.lifecycle import end_of_day
from starboard.members import remove_member
from starboard.models import ApprovalRecord, Decision, LedgerReason, StarsLedgerEntry, TaskStatus


def pending_instance(session, family, now, assignee=None, requester=None):
    template = make_template(session, family)
    assignee = assignee or family.participant
    instance = instances.assign(
        session, family.id, template.id, assignee.id, end_of_day(now.date()), family.guardian.id
    )
    return instances.request_completion(session, family.id, instance.id, (requester or assignee).id, now=now)


def test_requires_approval_rule(session):
    solo = make_family(session, guardians=1, participants=1)
    pair = make_family(session, guardians=2, participants=1)

    assert approvals.requires_approval(session, solo.participant)
    assert not approvals.requires_approval(session, solo.guardian)
    assert approvals.requires_approval(session, pair.participant)
    assert approvals.requires_approval(session, pair.guardian)


def test_removed_guardian_does_not_count(session, two_guardian_family):
    family = two_guardian_family
    remove_member(session, family.id, family.guardians[1].id, family.guardian.id)
    assert not approvals.requires_approval(session, family.guardian)


def test_make_bed_end_to_end(session, two_guardian_family, now):
    family = two_guardian_family
    kid = family.participant
    template = make_template(session, family, title="Make bed", stars=5)
    instance = instances.assign(session, family.id, template.id, kid.id, end_of_day(now.date()), family.guardian.id)

    pending = instances.request_completion(session, family.id, instance.id, kid.id, now=now)
    assert pending.status == TaskStatus.pending_approval

    approved = approvals.decide(session, family.id, instance.id, family.guardians[1].id, Decision.approved, now=now)
    assert approved.status == TaskStatus.approved

    entries = session.exec(select(StarsLedgerEntry).where(StarsLedgerEntry.member_id == kid.id)).all()
    assert len(entries) == 1
    assert entries[0].delta == 5
    assert entries[0].reason == LedgerReason.task_completion.value
    assert entries[0].task_instance_id == instance.id
    assert ledger.total_for(session, kid.id) == 5

    records = approvals.approval_history(session, instance.id)
    assert [(r.approver_member_id, r.decision) for r in records] == [(family.guardians[1].id, Decision.approved)]


def test_decide_reject_returns_task_to_open(session, family, now):
    instance = pending_instance(session, family, now)

    rejected = approvals.decide(
        session, family.id, instance.id, family.guardian.id, Decision.rejected, reason="Try again", now=now
    )

    assert rejected.status == TaskStatus.open
    assert rejected.completion_requested_by is None
    record = session.exec(select(ApprovalRecord)).one()
    assert record.decision == Decision.rejected
    assert record.reason == "Try again"
    assert ledger.total_for(session, family.participant.id) == 0


def test_participants_cannot_decide(session, family, now):
    instance = pending_instance(session, family, now)
    with pytest.raises(AuthorizationError):
        approvals.decide(session, family.id, instance.id, family.participant.id, Decision.approved, now=now)


def test_deciding_on_open_instance_is_invalid_state(session, family, now):
    template = make_template(session, family)
    instance = instances.assign(session, family.id, template.id, family.participant.id, now, family.guardian.id)
    with pytest.raises(InvalidStateError):
        approvals.decide(session, family.id, instance.id, family.guardian.id, Decision.approved, now=now)


def test_second_decision_reports_already_handled(session, two_guardian_family, now):
    family = two_guardian_family
    instance = pending_instance(session, family, now)

    approvals.decide(session, family.id, instance.id, family.guardians[0].id, Decision.approved, now=now)
    with pytest.raises(AlreadyApprovedError):
        approvals.decide(session, family.id, instance.id, family.guardians[1].id, Decision.approved, now=now)

    assert ledger.total_for(session, family.participant.id) == 5
    assert len(approvals.approval_history(session, instance.id)) == 1


def test_guardian_cannot_approve_own_request_when_another_guardian_exists(session, two_guardian_family, now):
    family = two_guardian_family
    first, second = family.guardians
    instance = pending_instance(session, family, now, requester=first)

    with pytest.raises(ValidationError):
        approvals.decide(session, family.id, instance.id, first.id, Decision.approved, now=now)

    approved = approvals.decide(session, family.id, instance.id, second.id, Decision.approved, now=now)
    assert approved.status == TaskStatus.approved


def test_lone_guardian_can_approve_request_made_on_behalf_of_child(session, family, now):
    instance = pending_instance(session, family, now, requester=family.guardian)
    assert instance.completion_requested_by == family.guardian.id

    approved = approvals.decide(session, family.id, instance.id, family.guardian.id, Decision.approved, now=now)

    assert approved.status == TaskStatus.approved
    assert ledger.total_for(session, family.participant.id) == 5


def test_list_pending(session, family, now):
    instance = pending_instance(session, family, now)
    assert [row.id for row in approvals.list_pending(session, family.id)] == [instance.id]


def race_before_decision(monkeypatch, family, instance_id, other_guardian, decision, now):
    """Let another device decide right after this one validated the pending row."""
    build_record = approvals._decision_record
    raced = []

    def other_device_decides_first(*args, **kwargs):
        if not raced:
            raced.append(True)
            with Session(test_engine) as other_device:
                approvals.decide(other_device, family.id, instance_id, other_guardian.id, decision, now=now)
        return build_record(*args, **kwargs)

    monkeypatch.setattr(approvals, "_decision_record", other_device_decides_first)


def test_stale_approval_after_concurrent_reject_is_refused(session, two_guardian_family, now, monkeypatch):
    family = two_guardian_family
    first, second = family.guardians
    instance = pending_instance(session, family, now)
    race_before_decision(monkeypatch, family, instance.id, second, Decision.rejected, now)

    with pytest.raises(InvalidStateError) as excinfo:
        approvals.decide(session, family.id, instance.id, first.id, Decision.approved, now=now)
    monkeypatch.undo()

    assert not isinstance(excinfo.value, AlreadyApprovedError)
    assert excinfo.value.current_status == TaskStatus.open
    assert instances.get_instance(session, family.id, instance.id).status == TaskStatus.open
    assert ledger.total_for(session, family.participant.id) == 0
    assert [r.decision for r in approvals.approval_history(session, instance.id)] == [Decision.rejected]

    instances.request_completion(session, family.id, instance.id, family.participant.id, now=now)
    approved = approvals.decide(session, family.id, instance.id, first.id, Decision.approved, now=now)
    assert approved.status == TaskStatus.approved
    assert ledger.total_for(session, family.participant.id) == 5


def test_stale_rejection_after_concurrent_approval_is_refused(session, two_guardian_family, now, monkeypatch):
    family = two_guardian_family
    first, second = family.guardians
    instance = pending_instance(session, family, now)
    race_before_decision(monkeypatch, family, instance.id, second, Decision.approved, now)

    with pytest.raises(InvalidStateError):
        approvals.decide(session, family.id, instance.id, first.id, Decision.rejected, reason="Redo", now=now)
    monkeypatch.undo()

    assert instances.get_instance(session, family.id, instance.id).status == TaskStatus.approved
    assert ledger.total_for(session, family.participant.id) == 5
    records = approvals.approval_history(session, instance.id)
    assert [(r.approver_member_id, r.decision) for r in records] == [(second.id, Decision.approved)]
