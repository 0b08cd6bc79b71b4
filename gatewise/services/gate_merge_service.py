"""
Gate Merge Service - review and atomic application of gate merges

A merge re-points every check-in, ledger row, violation and binding of the
source gate to the target gate, folds same-category bindings together,
recomputes the target's geometry and health, and deactivates the source.
A folded binding keeps the stronger status (unbound, then enforced), and a
status change is recorded as a "merge" transition.
All of it commits in one transaction or not at all.
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gatewise.db.models import (
    BindingTransition, BindingViolation, CategoryBinding, CheckinEvent,
    Gate, LearnedCheckin, MergeSuggestion
)
from gatewise.exceptions import NotFoundError, StaleStateError
from gatewise.services.binding_learner import binding_learner
from gatewise.services.gate_materializer import refresh_gate_geometry
from gatewise.services.threshold_service import threshold_service

logger = logging.getLogger(__name__)

# Surviving status when two bindings of one category are folded
STATUS_RANK = {"probation": 0, "enforced": 1, "unbound": 2}


def pair_key(gate_a_id: int, gate_b_id: int) -> str:
    low, high = sorted((gate_a_id, gate_b_id))
    return f"{low}:{high}"


class GateMergeService:
    """Approves, rejects and applies gate merges"""

    def approve(
        self,
        db: Session,
        suggestion_id: int,
        reviewed_by: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        suggestion = self._get_suggestion(db, suggestion_id)
        return self.apply_suggestion(db, suggestion, "approved", reviewed_by, reason)

    def reject(
        self,
        db: Session,
        suggestion_id: int,
        reviewed_by: str,
        reason: Optional[str] = None
    ) -> MergeSuggestion:
        suggestion = self._get_suggestion(db, suggestion_id, for_update=True)
        if suggestion.status != "pending":
            raise StaleStateError(f"Merge suggestion {suggestion_id} is already {suggestion.status}")
        suggestion.status = "rejected"
        suggestion.reviewed_by = reviewed_by
        suggestion.reviewed_at = datetime.utcnow()
        suggestion.review_reason = reason
        db.commit()
        logger.info(f"Merge suggestion {suggestion_id} rejected by {reviewed_by}")
        return suggestion

    def apply_suggestion(
        self,
        db: Session,
        suggestion: MergeSuggestion,
        final_status: str,
        actor: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Apply a pending suggestion; final_status is approved or auto_applied"""
        try:
            locked = self._get_suggestion(db, suggestion.id, for_update=True)
            if locked.status != "pending":
                raise StaleStateError(f"Merge suggestion {locked.id} is already {locked.status}")

            result = self._merge(db, locked.session_id, locked.target_gate_id, locked.source_gate_id, actor)

            locked.status = final_status
            locked.reviewed_by = actor
            locked.reviewed_at = datetime.utcnow()
            locked.review_reason = reason
            db.commit()
        except Exception as e:
            logger.error(f"Merge for suggestion {suggestion.id} failed: {e}")
            db.rollback()
            raise

        logger.info(
            f"Merged gate {result['source_gate_id']} into {result['target_gate_id']} "
            f"({final_status} by {actor})"
        )
        return {**result, "suggestion_id": suggestion.id, "status": final_status}

    def merge_gates(
        self,
        db: Session,
        session_id: int,
        target_gate_id: int,
        source_gate_id: int,
        actor: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Operator-initiated merge; closes a pending suggestion for the pair if there is one"""
        if target_gate_id == source_gate_id:
            raise StaleStateError("Cannot merge a gate into itself")

        pending = db.query(MergeSuggestion).filter(
            MergeSuggestion.session_id == session_id,
            MergeSuggestion.pair_key == pair_key(target_gate_id, source_gate_id),
            MergeSuggestion.status == "pending"
        ).first()

        try:
            result = self._merge(db, session_id, target_gate_id, source_gate_id, actor)
            if pending:
                pending.status = "approved"
                pending.reviewed_by = actor
                pending.reviewed_at = datetime.utcnow()
                pending.review_reason = reason or "manual merge"
                pending.target_gate_id = target_gate_id
                pending.source_gate_id = source_gate_id
            db.commit()
        except Exception as e:
            logger.error(f"Manual merge of gate {source_gate_id} into {target_gate_id} failed: {e}")
            db.rollback()
            raise

        logger.info(f"Gate {source_gate_id} manually merged into {target_gate_id} by {actor}")
        return {**result, "suggestion_id": pending.id if pending else None, "status": "merged"}

    def _merge(
        self,
        db: Session,
        session_id: int,
        target_gate_id: int,
        source_gate_id: int,
        actor: str
    ) -> Dict[str, Any]:
        """Merge body; the caller owns the transaction"""
        target = db.query(Gate).filter(
            Gate.id == target_gate_id, Gate.session_id == session_id
        ).with_for_update().first()
        source = db.query(Gate).filter(
            Gate.id == source_gate_id, Gate.session_id == session_id
        ).with_for_update().first()
        if not target or not source:
            raise NotFoundError("Gate not found in session")
        if target.status != "active" or source.status != "active":
            raise StaleStateError(
                f"Both gates must be active (target {target.status}, source {source.status})"
            )

        moved_checkins = db.query(CheckinEvent).filter(
            CheckinEvent.gate_id == source.id
        ).update(
            {CheckinEvent.gate_id: target.id, CheckinEvent.gate_resolution: "merge"},
            synchronize_session=False
        )
        db.query(LearnedCheckin).filter(
            LearnedCheckin.gate_id == source.id
        ).update({LearnedCheckin.gate_id: target.id}, synchronize_session=False)
        db.query(BindingViolation).filter(
            BindingViolation.gate_id == source.id
        ).update({BindingViolation.gate_id: target.id}, synchronize_session=False)

        folded, moved = self._merge_bindings(db, target, source, actor)

        thresholds = threshold_service.get_thresholds(db, session_id)
        db.flush()
        db.expire_all()
        target = db.query(Gate).filter(Gate.id == target_gate_id).first()
        source = db.query(Gate).filter(Gate.id == source_gate_id).first()

        refresh_gate_geometry(db, target, thresholds)
        source.status = "inactive"
        source.merged_into_id = target.id

        superseded = db.query(MergeSuggestion).filter(
            MergeSuggestion.session_id == session_id,
            MergeSuggestion.status == "pending",
            MergeSuggestion.pair_key != pair_key(target.id, source.id),
            or_(
                MergeSuggestion.source_gate_id == source.id,
                MergeSuggestion.target_gate_id == source.id
            )
        ).all()
        for other in superseded:
            other.status = "rejected"
            other.reviewed_by = actor
            other.reviewed_at = datetime.utcnow()
            other.review_reason = f"superseded: gate {source.id} merged into {target.id}"

        db.flush()
        binding_learner.recompute_session_confidence(db, session_id, thresholds)

        return {
            "target_gate_id": target.id,
            "source_gate_id": source.id,
            "moved_checkins": moved_checkins,
            "folded_bindings": folded,
            "moved_bindings": moved,
            "superseded_suggestions": [s.id for s in superseded],
        }

    def _merge_bindings(self, db: Session, target: Gate, source: Gate, actor: Optional[str] = None):
        target_bindings = {
            b.category: b for b in db.query(CategoryBinding).filter(CategoryBinding.gate_id == target.id).all()
        }
        folded = 0
        moved = 0
        for binding in db.query(CategoryBinding).filter(CategoryBinding.gate_id == source.id).all():
            existing = target_bindings.get(binding.category)
            if existing is None:
                binding.gate_id = target.id
                db.query(BindingTransition).filter(
                    BindingTransition.binding_id == binding.id
                ).update({BindingTransition.gate_id: target.id}, synchronize_session=False)
                moved += 1
                continue

            # Counts are combined; the stronger status survives
            existing.sample_count += binding.sample_count
            existing.window_samples += binding.window_samples
            existing.violation_count += binding.violation_count
            existing.window_violations += binding.window_violations
            if binding.last_violation_at and (
                not existing.last_violation_at or binding.last_violation_at > existing.last_violation_at
            ):
                existing.last_violation_at = binding.last_violation_at

            db.query(BindingViolation).filter(
                BindingViolation.binding_id == binding.id
            ).update({BindingViolation.binding_id: existing.id}, synchronize_session=False)
            db.query(BindingTransition).filter(
                BindingTransition.binding_id == binding.id
            ).update(
                {BindingTransition.binding_id: existing.id, BindingTransition.gate_id: target.id},
                synchronize_session=False
            )
            existing.demotion_count = max(existing.demotion_count, binding.demotion_count)
            if STATUS_RANK[binding.status] > STATUS_RANK[existing.status]:
                binding_learner.transition(db, existing, binding.status, "merge", actor=actor)
            db.delete(binding)
            folded += 1
        return folded, moved

    def _get_suggestion(self, db: Session, suggestion_id: int, for_update: bool = False) -> MergeSuggestion:
        query = db.query(MergeSuggestion).filter(MergeSuggestion.id == suggestion_id)
        if for_update:
            query = query.with_for_update()
        suggestion = query.first()
        if not suggestion:
            raise NotFoundError(f"Merge suggestion {suggestion_id} not found")
        return suggestion


gate_merge_service = GateMergeService()
