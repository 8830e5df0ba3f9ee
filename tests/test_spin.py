import random

import pytest

from conftest import make_family, make_template
from starboard import spin
from starboard.errors import ValidationError
from starboard.lifecycle import end_of_day
from starboard.models import InstanceSource, TaskStatus
from starboard.templates import toggle_template


def test_spin_weight_penalises_recent_winners():
    assert spin.spin_weight(1, []) == 10
    assert spin.spin_weight(1, [1, 2]) == 7
    assert spin.spin_weight(1, [1, 1, 1]) == 1
    assert spin.spin_weight(3, [1, 1, 2]) == 10


def test_pick_spin_proposal_uses_participants_and_queue(session):
    family = make_family(session, participants=2)
    dishes = make_template(session, family, title="Dishes")
    trash = make_template(session, family, title="Trash")
    toggle_template(session, family.id, trash.id, family.guardian.id)

    proposal = spin.pick_spin_proposal(session, family.id, [dishes.id, trash.id], rng=random.Random(7))

    assert proposal.member.id in {kid.id for kid in family.participants}
    assert proposal.template.id == dishes.id


def test_spin_is_deterministic_for_a_seed(session):
    family = make_family(session, participants=3)
    template = make_template(session, family)

    first = spin.pick_spin_proposal(session, family.id, [template.id], rng=random.Random(42))
    second = spin.pick_spin_proposal(session, family.id, [template.id], rng=random.Random(42))

    assert first.member.id == second.member.id


def test_spin_needs_participants_and_tasks(session):
    family = make_family(session, participants=0)
    template = make_template(session, family)
    with pytest.raises(ValidationError):
        spin.pick_spin_proposal(session, family.id, [template.id])

    family = make_family(session)
    with pytest.raises(ValidationError):
        spin.pick_spin_proposal(session, family.id, [])


def test_accept_spin_assigns_due_today(session, family, now):
    template = make_template(session, family)

    instance = spin.accept_spin(session, family.id, template.id, family.participant.id, family.guardian.id, now=now)

    assert instance.status == TaskStatus.open
    assert instance.source == InstanceSource.spin
    assert instance.due_at == end_of_day(now.date())
    assert spin.recent_winner_ids(session, family.id) == [family.participant.id]
