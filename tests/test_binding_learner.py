"""
Tests for category-binding learning, promotion and demotion.
"""
from datetime import timedelta

import pytest

from gatewise.db.models import (
    BindingTransition, BindingViolation, CategoryBinding, LearnedCheckin
)
from gatewise.exceptions import InvalidTransitionError, NotFoundError
from gatewise.services.binding_learner import BindingLearner, compute_confidence
from tests.conftest import BASE_TIME, VENUE_LAT, VENUE_LON, offset


def _binding(db, gate_id, category):
    return db.query(CategoryBinding).filter(
        CategoryBinding.gate_id == gate_id,
        CategoryBinding.category == category
    ).one()


class TestConfidence:

    def test_consistent_use_reaches_hard_threshold(self):
        assert compute_confidence(20, 20, 5.0) == pytest.approx(0.8)

    def test_split_use_stays_low(self):
        assert compute_confidence(10, 20, 5.0) == pytest.approx(1 / 3, abs=1e-6)

    def test_no_samples(self):
        assert compute_confidence(0, 0, 5.0) == 0.0

    def test_more_samples_never_lower_confidence(self):
        values = [compute_confidence(n, n + 3, 5.0) for n in range(1, 60)]
        assert values == sorted(values)


class TestLearn:

    def setup_method(self):
        self.learner = BindingLearner()

    def test_promotes_after_enough_consistent_samples(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id)
        add_scans(venue.id, 19, gate_id=gate.id)

        first = self.learner.learn(db, venue.id, thresholds)
        binding = _binding(db, gate.id, "GENERAL")
        assert first["learned"] == 19
        assert binding.status == "probation"

        add_scans(venue.id, 1, gate_id=gate.id, start=BASE_TIME + timedelta(hours=1))
        second = self.learner.learn(db, venue.id, thresholds)

        db.refresh(binding)
        assert second["promoted_binding_ids"] == [binding.id]
        assert binding.status == "enforced"
        assert binding.sample_count == 20
        assert binding.confidence == pytest.approx(0.8)
        transition = db.query(BindingTransition).one()
        assert (transition.from_status, transition.to_status, transition.reason) == (
            "probation", "enforced", "promotion"
        )

    def test_split_category_is_not_promoted(self, db, venue, add_scans, make_gate, thresholds):
        gate_a = make_gate(venue.id, name="A")
        gate_b = make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=200), name="B")
        add_scans(venue.id, 30, gate_id=gate_a.id)
        add_scans(venue.id, 30, gate_id=gate_b.id)

        self.learner.learn(db, venue.id, thresholds)

        for gate in (gate_a, gate_b):
            binding = _binding(db, gate.id, "GENERAL")
            assert binding.status == "probation"
            assert binding.confidence < thresholds.soft_threshold

    def test_each_checkin_is_counted_once(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id)
        ids = add_scans(venue.id, 5, gate_id=gate.id)

        first = self.learner.learn(db, venue.id, thresholds)
        second = self.learner.learn(db, venue.id, thresholds)

        assert first["learned"] == 5
        assert second["learned"] == 0
        assert {r.checkin_id for r in db.query(LearnedCheckin).all()} == set(ids)
        assert _binding(db, gate.id, "GENERAL").sample_count == 5
        assert db.query(LearnedCheckin).count() == 5

    def test_checkins_at_inactive_gates_are_ignored(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id, status="inactive")
        add_scans(venue.id, 5, gate_id=gate.id)

        result = self.learner.learn(db, venue.id, thresholds)

        assert result["learned"] == 0
        assert db.query(CategoryBinding).count() == 0

    def test_checkins_skipped_earlier_are_learned_later(self, db, venue, add_scans, make_gate, thresholds):
        closed = make_gate(venue.id, status="inactive", name="Closed")
        waiting = add_scans(venue.id, 5, gate_id=closed.id)
        open_gate = make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=200), name="Open")
        add_scans(venue.id, 5, gate_id=open_gate.id, category="VIP")

        first = self.learner.learn(db, venue.id, thresholds)
        assert first["learned"] == 5

        closed.status = "active"
        db.commit()
        second = self.learner.learn(db, venue.id, thresholds)

        assert second["learned"] == 5
        learned = {r.checkin_id for r in db.query(LearnedCheckin).all()}
        assert set(waiting) <= learned


class TestViolationsAndDemotion:

    def setup_method(self):
        self.learner = BindingLearner()

    def _enforce_general(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id)
        add_scans(venue.id, 20, gate_id=gate.id)
        self.learner.learn(db, venue.id, thresholds)
        binding = _binding(db, gate.id, "GENERAL")
        assert binding.status == "enforced"
        return gate, binding

    def _scan_new_categories(self, add_scans, venue, gate, prefix, count):
        """One scan each for categories never seen at the gate"""
        ids = []
        for i in range(count):
            ids.extend(add_scans(venue.id, 1, gate_id=gate.id, category=f"{prefix}{i}"))
        return ids

    def test_mismatched_category_records_violation(self, db, venue, add_scans, make_gate, thresholds):
        gate, binding = self._enforce_general(db, venue, add_scans, make_gate, thresholds)
        strangers = self._scan_new_categories(add_scans, venue, gate, "VIP", 3)

        result = self.learner.learn(db, venue.id, thresholds)

        db.refresh(binding)
        assert result["violations"] == 3
        assert binding.violation_count == 3
        assert binding.window_violations == 3
        assert binding.status == "enforced"
        violations = db.query(BindingViolation).order_by(BindingViolation.checkin_id).all()
        assert [v.checkin_id for v in violations] == strangers
        assert {v.binding_id for v in violations} == {binding.id}

    def test_category_with_probation_binding_is_not_a_violation(
        self, db, venue, add_scans, make_gate, thresholds
    ):
        gate, binding = self._enforce_general(db, venue, add_scans, make_gate, thresholds)
        vip = add_scans(venue.id, 1, gate_id=gate.id, category="VIP")
        first = self.learner.learn(db, venue.id, thresholds)
        assert first["violations"] == 1
        assert _binding(db, gate.id, "VIP").status == "probation"

        add_scans(venue.id, 1, gate_id=gate.id, category="VIP", start=BASE_TIME + timedelta(hours=1))
        second = self.learner.learn(db, venue.id, thresholds)

        db.refresh(binding)
        assert second["violations"] == 0
        assert binding.violation_count == 1
        assert [v.checkin_id for v in db.query(BindingViolation).all()] == vip

    def test_weak_enforced_binding_is_not_charged(self, db, venue, add_scans, make_gate, thresholds):
        gate, binding = self._enforce_general(db, venue, add_scans, make_gate, thresholds)
        binding.confidence = thresholds.soft_threshold - 0.01
        db.commit()
        add_scans(venue.id, 1, gate_id=gate.id, category="VIP")

        result = self.learner.learn(db, venue.id, thresholds)

        assert result["violations"] == 0
        assert db.query(BindingViolation).count() == 0

    def test_repeated_violations_demote_then_unbind(self, db, venue, add_scans, make_gate, thresholds):
        gate, binding = self._enforce_general(db, venue, add_scans, make_gate, thresholds)

        self._scan_new_categories(add_scans, venue, gate, "VIP", 10)
        first = self.learner.learn(db, venue.id, thresholds)
        db.refresh(binding)
        assert first["demoted_binding_ids"] == [binding.id]
        assert binding.status == "probation"
        assert binding.demotion_count == 1

        # Re-promotion needs fresh samples since the demotion
        add_scans(venue.id, 19, gate_id=gate.id)
        self.learner.learn(db, venue.id, thresholds)
        db.refresh(binding)
        assert binding.status == "probation"

        add_scans(venue.id, 1, gate_id=gate.id)
        self.learner.learn(db, venue.id, thresholds)
        db.refresh(binding)
        assert binding.status == "enforced"

        self._scan_new_categories(add_scans, venue, gate, "STAFF", 10)
        self.learner.learn(db, venue.id, thresholds)
        db.refresh(binding)
        assert binding.status == "unbound"
        assert binding.demotion_count == 2

        history = db.query(BindingTransition).filter(
            BindingTransition.binding_id == binding.id
        ).order_by(BindingTransition.id)
        assert [t.reason for t in history] == ["promotion", "demotion", "promotion", "demotion"]

    def test_few_violations_do_not_demote(self, db, venue, add_scans, make_gate, thresholds):
        gate, binding = self._enforce_general(db, venue, add_scans, make_gate, thresholds)
        self._scan_new_categories(add_scans, venue, gate, "VIP", 9)

        result = self.learner.learn(db, venue.id, thresholds)

        db.refresh(binding)
        assert result["violations"] == 9
        assert result["demoted_binding_ids"] == []
        assert binding.status == "enforced"


class TestOperatorOverrides:

    def setup_method(self):
        self.learner = BindingLearner()

    def test_unbind_and_reset(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id)
        add_scans(venue.id, 5, gate_id=gate.id)
        self.learner.learn(db, venue.id, thresholds)

        binding = self.learner.unbind(db, gate.id, "GENERAL", actor="ops@example.com")
        assert binding.status == "unbound"

        binding.demotion_count = 2
        db.commit()
        binding = self.learner.reset(db, gate.id, "GENERAL", actor="ops@example.com")
        assert binding.status == "probation"
        assert binding.demotion_count == 0

        actors = {t.actor for t in db.query(BindingTransition).all()}
        assert actors == {"ops@example.com"}

    def test_reset_requires_unbound(self, db, venue, add_scans, make_gate, thresholds):
        gate = make_gate(venue.id)
        add_scans(venue.id, 5, gate_id=gate.id)
        self.learner.learn(db, venue.id, thresholds)

        with pytest.raises(InvalidTransitionError):
            self.learner.reset(db, gate.id, "GENERAL")

    def test_unknown_binding(self, db, venue, make_gate):
        gate = make_gate(venue.id)
        with pytest.raises(NotFoundError):
            self.learner.unbind(db, gate.id, "VIP")
