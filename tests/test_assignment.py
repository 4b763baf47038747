import random
from datetime import timedelta

import pytest

from splitlens import assignment, engine, models
from splitlens.errors import InvalidState, NotFound


def _force_split(db, experiment_id, control, variant):
    exp = engine.get_experiment(db, experiment_id)
    exp.control_allocation = control
    exp.variant_allocation = variant
    db.commit()


def test_assign_persists_with_expiry(db, make_active):
    exp = make_active()
    now = models.utcnow()

    variant = assignment.assign(db, "sess-1", exp.id, now=now)

    row = assignment.find_assignment(db, "sess-1", exp.id)
    assert variant in ("control", "variant")
    assert row.variant == variant
    assert row.expires_at - row.assigned_at == timedelta(days=90)


def test_assignment_is_sticky(db, make_active):
    exp = make_active()
    _force_split(db, exp.id, control=1.0, variant=0.0)
    assert assignment.assign(db, "sess-1", exp.id) == "control"

    # Flip the split completely; the session keeps its arm
    _force_split(db, exp.id, control=0.0, variant=1.0)
    assert assignment.assign(db, "sess-1", exp.id) == "control"
    assert assignment.assign(db, "sess-2", exp.id) == "variant"

    rows = db.query(models.SessionAssignment).filter_by(session_id="sess-1").all()
    assert len(rows) == 1


def test_expired_assignment_is_not_redrawn(db, make_active):
    exp = make_active()
    long_ago = models.utcnow() - timedelta(days=120)
    first = assignment.assign(db, "sess-old", exp.id, now=long_ago)

    assert assignment.find_assignment(db, "sess-old", exp.id).is_expired()
    assert assignment.assign(db, "sess-old", exp.id) == first


def test_draw_follows_the_split():
    exp = models.Experiment(control_allocation=0.75, variant_allocation=0.05)
    rng = random.Random(3)

    draws = [assignment.draw_variant(exp, rng) for _ in range(2000)]
    control_share = draws.count("control") / len(draws)

    # 0.75 / 0.80 of exposed traffic goes to control
    assert 0.90 < control_share < 0.97


def test_draw_with_no_exposure_is_control():
    exp = models.Experiment(control_allocation=0.0, variant_allocation=0.0)
    assert assignment.draw_variant(exp, random.Random(1)) == "control"


def test_seeded_assignment_is_reproducible(db, make_active):
    first = make_active(name="A")
    second = make_active(name="B")

    a = [assignment.assign(db, f"s-{i}", first.id, rng=random.Random(i)) for i in range(20)]
    b = [assignment.assign(db, f"s-{i}", second.id, rng=random.Random(i)) for i in range(20)]

    assert a == b


def test_assign_requires_active_experiment(db):
    draft = engine.create_experiment(db, name="Draft")

    with pytest.raises(InvalidState):
        assignment.assign(db, "sess-1", draft.id)
    with pytest.raises(NotFound):
        assignment.assign(db, "sess-1", 12345)
    assert db.query(models.SessionAssignment).count() == 0


def test_losing_a_race_reads_back_the_winner(db, make_active, monkeypatch):
    exp = make_active()
    # This request would draw control...
    _force_split(db, exp.id, control=1.0, variant=0.0)

    # ...but a concurrent request already stored variant
    db.add(
        models.SessionAssignment(
            session_id="sess-race",
            experiment_id=exp.id,
            variant="variant",
            expires_at=models.utcnow() + timedelta(days=90),
        )
    )
    db.commit()

    real_find = assignment.find_assignment
    calls = []

    def miss_first(db, session_id, experiment_id):
        calls.append(session_id)
        if len(calls) == 1:
            return None
        return real_find(db, session_id, experiment_id)

    monkeypatch.setattr(assignment, "find_assignment", miss_first)

    assert assignment.assign(db, "sess-race", exp.id) == "variant"
    assert db.query(models.SessionAssignment).filter_by(session_id="sess-race").count() == 1


def test_session_assignments_lists_all_experiments(db, make_active):
    first = make_active(name="A", product_id="p-1")
    second = make_active(name="B", product_id="p-2")

    assignment.assign(db, "sess-1", first.id)
    assignment.assign(db, "sess-1", second.id)

    rows = assignment.session_assignments(db, "sess-1")
    assert sorted(r.experiment_id for r in rows) == [first.id, second.id]
