"""
Category-Binding Learner - learns which ticket categories use which gate

Binding states:
- probation: observed, not enforced yet
- enforced: confidence >= hard threshold with enough samples
- unbound: disabled by an operator or after repeated demotions; ignored
  until an operator resets it

Confidence for (gate g, category c), with n samples of c at g and N samples
of c across the session:

    confidence = (n / N) * (n / (n + k))

The share term suppresses categories spread across competing gates; the
evidence term (prior strength k) keeps sparse pairs low. Consistent
repeated use approaches 1.0, and a new observation of a pair never lowers
that pair's confidence.

A check-in at a gate holding an effective binding is a violation when its
category has no probation or enforced binding there; it is charged to the
strongest effective binding. Validation uses the same is_effective rule.

Each check-in is counted at most once (learned_checkins ledger).
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.db.models import (
    BindingTransition, BindingViolation, CategoryBinding, CheckinEvent,
    Gate, LearnedCheckin, SessionCheckpoint
)
from gatewise.exceptions import InvalidTransitionError, NotFoundError
from gatewise.services.threshold_service import ThresholdValues

logger = logging.getLogger(__name__)

# Allowed status changes and the reasons that may cause them
ALLOWED_TRANSITIONS = {
    ("probation", "enforced"): {"promotion", "merge"},
    ("enforced", "probation"): {"demotion"},
    ("enforced", "unbound"): {"demotion", "operator_unbind", "merge"},
    ("probation", "unbound"): {"operator_unbind", "merge"},
    ("unbound", "probation"): {"operator_reset"},
}


def compute_confidence(gate_samples: int, category_total: int, prior_strength: float) -> float:
    if gate_samples <= 0 or category_total <= 0:
        return 0.0
    share = gate_samples / category_total
    evidence = gate_samples / (gate_samples + prior_strength)
    return round(min(1.0, share * evidence), 6)


def is_effective(binding: CategoryBinding, thresholds: ThresholdValues) -> bool:
    """An enforced binding whose confidence still clears the soft threshold"""
    return binding.status == "enforced" and binding.confidence >= thresholds.soft_threshold


def get_or_create_checkpoint(db: Session, session_id: int) -> SessionCheckpoint:
    checkpoint = db.query(SessionCheckpoint).filter(
        SessionCheckpoint.session_id == session_id
    ).first()
    if not checkpoint:
        checkpoint = SessionCheckpoint(
            session_id=session_id,
            accepted_scan_count=0,
            last_discovery_scan_count=0,
            last_learned_checkin_id=0
        )
        db.add(checkpoint)
        db.flush()
    return checkpoint


def ensure_checkpoint(db: Session, session_id: int) -> SessionCheckpoint:
    """Create the checkpoint row in its own commit; a concurrent creator may win"""
    try:
        checkpoint = get_or_create_checkpoint(db, session_id)
        db.commit()
        return checkpoint
    except IntegrityError:
        db.rollback()
        return db.query(SessionCheckpoint).filter(
            SessionCheckpoint.session_id == session_id
        ).one()


class BindingLearner:
    """Online learner for category-gate bindings"""

    def learn(
        self,
        db: Session,
        session_id: int,
        thresholds: ThresholdValues,
        batch_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Count one bounded batch of gated, successful check-ins.

        A check-in is picked up while it has no ledger row and its gate is
        active, so check-ins backfilled by an interrupted cycle or waiting on
        a deactivated gate are counted by a later run.
        """
        batch_size = batch_size or settings.LEARNING_BATCH_SIZE
        checkpoint = get_or_create_checkpoint(db, session_id)

        rows = db.query(CheckinEvent).join(
            Gate, Gate.id == CheckinEvent.gate_id
        ).outerjoin(
            LearnedCheckin, LearnedCheckin.checkin_id == CheckinEvent.id
        ).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.outcome == "success",
            Gate.status == "active",
            LearnedCheckin.checkin_id.is_(None)
        ).order_by(CheckinEvent.id).limit(batch_size).all()

        if not rows:
            return self._summary(0, 0, 0, [], [])

        bindings = self._load_bindings(db, session_id)

        now = datetime.utcnow()
        learned = 0
        violations = 0
        demoted: List[int] = []
        touched_categories: Set[str] = set()

        try:
            for checkin in rows:
                violated, demoted_id = self._observe(db, checkin, bindings, thresholds, now)
                violations += int(violated)
                if demoted_id:
                    demoted.append(demoted_id)
                touched_categories.add(checkin.category)
                learned += 1

            # High-water mark for reporting only; selection goes by the ledger
            checkpoint.last_learned_checkin_id = max(
                checkpoint.last_learned_checkin_id, rows[-1].id
            )

            db.flush()
            self._recompute_confidence(db, session_id, touched_categories, thresholds)
            promoted = self._apply_promotions(db, session_id, touched_categories, thresholds, now)
            db.commit()
        except Exception as e:
            logger.error(f"Binding learning failed for session {session_id}: {e}")
            db.rollback()
            raise

        if learned:
            logger.info(
                f"Session {session_id}: learned {learned} check-ins, {violations} violations, "
                f"{len(promoted)} promoted, {len(demoted)} demoted"
            )
        return self._summary(len(rows), learned, violations, promoted, demoted)

    def _summary(self, examined, learned, violations, promoted, demoted) -> Dict[str, Any]:
        return {
            "examined": examined,
            "learned": learned,
            "violations": violations,
            "promoted_binding_ids": promoted,
            "demoted_binding_ids": demoted,
        }

    def _load_bindings(self, db: Session, session_id: int) -> Dict[int, Dict[str, CategoryBinding]]:
        by_gate: Dict[int, Dict[str, CategoryBinding]] = {}
        for binding in db.query(CategoryBinding).filter(CategoryBinding.session_id == session_id).all():
            by_gate.setdefault(binding.gate_id, {})[binding.category] = binding
        return by_gate

    def _has_standing(self, binding: Optional[CategoryBinding]) -> bool:
        return binding is not None and binding.status in ("probation", "enforced")

    def _observe(
        self,
        db: Session,
        checkin: CheckinEvent,
        bindings: Dict[int, Dict[str, CategoryBinding]],
        thresholds: ThresholdValues,
        now: datetime
    ) -> Tuple[bool, Optional[int]]:
        gate_bindings = bindings.setdefault(checkin.gate_id, {})
        binding = gate_bindings.get(checkin.category)

        violated = False
        demoted_id = None
        enforced = [b for b in gate_bindings.values() if is_effective(b, thresholds)]
        if enforced and not self._has_standing(binding):
            strongest = max(enforced, key=lambda b: (b.confidence, b.sample_count, -b.id))
            strongest.violation_count += 1
            strongest.window_violations += 1
            strongest.last_violation_at = now
            db.add(BindingViolation(
                session_id=checkin.session_id,
                checkin_id=checkin.id,
                gate_id=checkin.gate_id,
                category=checkin.category,
                binding_id=strongest.id
            ))
            violated = True
            if self._should_demote(strongest, thresholds):
                self._demote(db, strongest, thresholds, now)
                demoted_id = strongest.id

        if binding is None:
            binding = CategoryBinding(
                session_id=checkin.session_id,
                gate_id=checkin.gate_id,
                category=checkin.category,
                sample_count=0,
                confidence=0.0,
                status="probation",
                violation_count=0,
                window_samples=0,
                window_violations=0,
                demotion_count=0,
                status_changed_at=now
            )
            db.add(binding)
            db.flush()
            gate_bindings[checkin.category] = binding

        binding.sample_count += 1
        binding.window_samples += 1

        db.add(LearnedCheckin(
            checkin_id=checkin.id,
            session_id=checkin.session_id,
            gate_id=checkin.gate_id,
            category=checkin.category
        ))
        return violated, demoted_id

    def _should_demote(self, binding: CategoryBinding, thresholds: ThresholdValues) -> bool:
        if binding.window_violations < thresholds.violation_demotion_count:
            return False
        observed = binding.window_violations + binding.window_samples
        rate = binding.window_violations / observed if observed else 0.0
        return rate >= thresholds.violation_rate_threshold

    def _demote(self, db: Session, binding: CategoryBinding, thresholds: ThresholdValues, now: datetime) -> None:
        binding.demotion_count += 1
        to_status = (
            "unbound" if binding.demotion_count >= thresholds.max_demotions_before_unbind
            else "probation"
        )
        logger.warning(
            f"Demoting binding {binding.id} ({binding.category} @ gate {binding.gate_id}) to {to_status} "
            f"after {binding.window_violations} violations"
        )
        self.transition(db, binding, to_status, "demotion", now=now)

    def transition(
        self,
        db: Session,
        binding: CategoryBinding,
        to_status: str,
        reason: str,
        actor: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> CategoryBinding:
        """Change binding status along an allowed edge and record it"""
        allowed = ALLOWED_TRANSITIONS.get((binding.status, to_status), set())
        if reason not in allowed:
            raise InvalidTransitionError(
                f"Cannot move binding {binding.id} from {binding.status} to {to_status} ({reason})"
            )
        db.add(BindingTransition(
            binding_id=binding.id,
            gate_id=binding.gate_id,
            category=binding.category,
            from_status=binding.status,
            to_status=to_status,
            reason=reason,
            confidence=binding.confidence,
            actor=actor
        ))
        binding.status = to_status
        binding.window_samples = 0
        binding.window_violations = 0
        binding.status_changed_at = now or datetime.utcnow()
        return binding

    def _recompute_confidence(
        self,
        db: Session,
        session_id: int,
        categories: Set[str],
        thresholds: ThresholdValues
    ) -> None:
        if not categories:
            return
        totals = dict(
            db.query(CategoryBinding.category, func.sum(CategoryBinding.sample_count)).filter(
                CategoryBinding.session_id == session_id,
                CategoryBinding.category.in_(categories)
            ).group_by(CategoryBinding.category).all()
        )
        for binding in db.query(CategoryBinding).filter(
            CategoryBinding.session_id == session_id,
            CategoryBinding.category.in_(categories)
        ).all():
            binding.confidence = compute_confidence(
                binding.sample_count,
                int(totals.get(binding.category) or 0),
                thresholds.confidence_prior_strength
            )

    def recompute_session_confidence(self, db: Session, session_id: int, thresholds: ThresholdValues) -> None:
        """Refresh every binding of a session (after merges or operator resets)"""
        categories = {
            r[0] for r in db.query(CategoryBinding.category).filter(
                CategoryBinding.session_id == session_id
            ).distinct().all()
        }
        self._recompute_confidence(db, session_id, categories, thresholds)

    def _apply_promotions(
        self,
        db: Session,
        session_id: int,
        categories: Set[str],
        thresholds: ThresholdValues,
        now: datetime
    ) -> List[int]:
        if not categories:
            return []
        promoted = []
        candidates = db.query(CategoryBinding).join(Gate, Gate.id == CategoryBinding.gate_id).filter(
            CategoryBinding.session_id == session_id,
            CategoryBinding.category.in_(categories),
            CategoryBinding.status == "probation",
            Gate.status == "active"
        ).order_by(CategoryBinding.id).all()

        for binding in candidates:
            if binding.confidence < thresholds.hard_threshold:
                continue
            if binding.sample_count < thresholds.min_effective_samples:
                continue
            # A demoted binding must earn its enforcement again with fresh samples
            if binding.demotion_count > 0 and binding.window_samples < thresholds.min_effective_samples:
                continue
            self.transition(db, binding, "enforced", "promotion", now=now)
            promoted.append(binding.id)
            logger.info(
                f"Promoted binding {binding.id} ({binding.category} @ gate {binding.gate_id}) "
                f"at confidence {binding.confidence:.3f}"
            )
        return promoted

    # ============================================================
    # OPERATOR OVERRIDES
    # ============================================================

    def unbind(self, db: Session, gate_id: int, category: str, actor: Optional[str] = None) -> CategoryBinding:
        binding = self._get_binding(db, gate_id, category)
        if binding.status == "unbound":
            return binding
        self.transition(db, binding, "unbound", "operator_unbind", actor=actor)
        db.commit()
        logger.info(f"Binding {binding.id} unbound by {actor or 'operator'}")
        return binding

    def reset(self, db: Session, gate_id: int, category: str, actor: Optional[str] = None) -> CategoryBinding:
        """Move an unbound binding back into probation with a clean demotion history"""
        binding = self._get_binding(db, gate_id, category)
        self.transition(db, binding, "probation", "operator_reset", actor=actor)
        binding.demotion_count = 0
        db.commit()
        logger.info(f"Binding {binding.id} reset to probation by {actor or 'operator'}")
        return binding

    def _get_binding(self, db: Session, gate_id: int, category: str) -> CategoryBinding:
        binding = db.query(CategoryBinding).filter(
            CategoryBinding.gate_id == gate_id,
            CategoryBinding.category == category
        ).first()
        if not binding:
            raise NotFoundError(f"No binding for category '{category}' at gate {gate_id}")
        return binding


binding_learner = BindingLearner()
