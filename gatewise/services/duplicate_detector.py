"""
Duplicate Gate Detector - finds gate pairs that are likely one physical entry

Similarity for two active gates within the distance envelope:

    0.5 * distance score      (1 - distance / envelope)
  + 0.3 * traffic overlap     (intersection of hour-of-day shares)
  + 0.2 * category overlap    (intersection of category mix shares)

Pairs at or above the review threshold get a pending MergeSuggestion.
Pairs at or above the auto-apply threshold are merged right away, but only
when the session allows auto-merge. Rejected pairs are never re-suggested.
"""
import logging
from typing import Dict, Any, List, Optional

import numpy as np
import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from gatewise.db.models import CheckinEvent, Gate, MergeSuggestion
from gatewise.services.gate_merge_service import gate_merge_service, pair_key
from gatewise.services.quality_service import haversine_m
from gatewise.services.threshold_service import ThresholdValues

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHTS = {
    "distance": 0.5,
    "traffic": 0.3,
    "category": 0.2,
}


def share_overlap(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """Histogram intersection of two count vectors, normalized to shares"""
    if a is None or b is None:
        return 0.0
    total_a, total_b = a.sum(), b.sum()
    if total_a <= 0 or total_b <= 0:
        return 0.0
    return float(np.minimum(a / total_a, b / total_b).sum())


class DuplicateDetector:
    """Scores gate pairs and emits merge suggestions"""

    def detect(self, db: Session, session_id: int, thresholds: ThresholdValues) -> Dict[str, Any]:
        """
        Evaluate every active gate pair of the session.

        Returns:
            {
                "evaluated_pairs": int,
                "suggestion_ids": [...],   # created or refreshed, still pending
                "auto_applied": [...],     # merge results
                "skipped_reviewed": int    # pairs already decided
            }
        """
        gates = db.query(Gate).filter(
            Gate.session_id == session_id,
            Gate.status == "active",
            Gate.latitude.isnot(None),
            Gate.longitude.isnot(None)
        ).order_by(Gate.id).all()

        result: Dict[str, Any] = {
            "evaluated_pairs": 0,
            "suggestion_ids": [],
            "auto_applied": [],
            "skipped_reviewed": 0,
        }
        if len(gates) < 2:
            return result

        hourly = self._hourly_profiles(db, session_id)
        categories = self._category_profiles(db, session_id)
        envelope = thresholds.duplicate_distance_meters
        merged_away = set()

        for i, gate_a in enumerate(gates):
            for gate_b in gates[i + 1:]:
                if gate_a.id in merged_away or gate_b.id in merged_away:
                    continue
                distance = haversine_m(gate_a.latitude, gate_a.longitude, gate_b.latitude, gate_b.longitude)
                if distance > envelope:
                    continue
                result["evaluated_pairs"] += 1

                distance_score = max(0.0, 1.0 - distance / envelope)
                traffic = share_overlap(hourly.get(gate_a.id), hourly.get(gate_b.id))
                category_mix = share_overlap(*self._aligned(categories.get(gate_a.id), categories.get(gate_b.id)))
                score = (
                    SIMILARITY_WEIGHTS["distance"] * distance_score +
                    SIMILARITY_WEIGHTS["traffic"] * traffic +
                    SIMILARITY_WEIGHTS["category"] * category_mix
                )
                if score < thresholds.merge_review_threshold:
                    continue

                target, source = self._choose_target(gate_a, gate_b)
                suggestion = self._upsert_suggestion(
                    db, session_id, target, source, distance, traffic, category_mix, score
                )
                if suggestion is None:
                    result["skipped_reviewed"] += 1
                    continue

                if thresholds.auto_merge_enabled and score >= thresholds.merge_auto_apply_threshold:
                    merge = gate_merge_service.apply_suggestion(
                        db, suggestion, "auto_applied", "system", reason="similarity above auto-apply threshold"
                    )
                    result["auto_applied"].append(merge)
                    merged_away.add(merge["source_gate_id"])
                else:
                    result["suggestion_ids"].append(suggestion.id)

        if result["suggestion_ids"] or result["auto_applied"]:
            logger.info(
                f"Session {session_id}: {len(result['suggestion_ids'])} merge suggestions pending, "
                f"{len(result['auto_applied'])} auto-applied"
            )
        return result

    def _choose_target(self, gate_a: Gate, gate_b: Gate):
        # Higher volume survives; ties go to the older gate
        if (gate_b.sample_count, -gate_b.id) > (gate_a.sample_count, -gate_a.id):
            return gate_b, gate_a
        return gate_a, gate_b

    def _upsert_suggestion(
        self,
        db: Session,
        session_id: int,
        target: Gate,
        source: Gate,
        distance: float,
        traffic: float,
        category_mix: float,
        score: float
    ) -> Optional[MergeSuggestion]:
        key = pair_key(target.id, source.id)
        suggestion = db.query(MergeSuggestion).filter(
            MergeSuggestion.session_id == session_id,
            MergeSuggestion.pair_key == key
        ).first()
        if suggestion and suggestion.status != "pending":
            return None

        if not suggestion:
            suggestion = MergeSuggestion(session_id=session_id, pair_key=key, status="pending")
            db.add(suggestion)

        suggestion.target_gate_id = target.id
        suggestion.source_gate_id = source.id
        suggestion.distance_m = round(distance, 2)
        suggestion.traffic_similarity = round(traffic, 4)
        suggestion.category_similarity = round(category_mix, 4)
        suggestion.confidence = round(score, 4)
        suggestion.reasoning = (
            f"Gates are within {distance:.1f}m of each other with "
            f"{traffic * 100:.0f}% hourly traffic overlap and "
            f"{category_mix * 100:.0f}% category mix overlap"
        )
        try:
            db.commit()
        except Exception as e:
            logger.error(f"Error saving merge suggestion for pair {key}: {e}")
            db.rollback()
            raise
        return suggestion

    def _hourly_profiles(self, db: Session, session_id: int) -> Dict[int, np.ndarray]:
        rows = db.query(CheckinEvent.gate_id, CheckinEvent.scanned_at).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.outcome == "success",
            CheckinEvent.gate_id.isnot(None)
        ).all()
        if not rows:
            return {}
        df = pd.DataFrame(rows, columns=["gate_id", "scanned_at"])
        df["hour"] = pd.to_datetime(df["scanned_at"]).dt.hour
        counts = df.groupby(["gate_id", "hour"]).size().unstack(fill_value=0)
        counts = counts.reindex(columns=range(24), fill_value=0)
        return {int(gate_id): row.to_numpy(dtype=float) for gate_id, row in counts.iterrows()}

    def _category_profiles(self, db: Session, session_id: int) -> Dict[int, Dict[str, int]]:
        rows = db.query(
            CheckinEvent.gate_id, CheckinEvent.category, func.count(CheckinEvent.id)
        ).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.outcome == "success",
            CheckinEvent.gate_id.isnot(None)
        ).group_by(CheckinEvent.gate_id, CheckinEvent.category).all()
        profiles: Dict[int, Dict[str, int]] = {}
        for gate_id, category, count in rows:
            profiles.setdefault(gate_id, {})[category] = count
        return profiles

    def _aligned(self, a: Optional[Dict[str, int]], b: Optional[Dict[str, int]]):
        if not a or not b:
            return None, None
        keys: List[str] = sorted(set(a) | set(b))
        return (
            np.array([a.get(k, 0) for k in keys], dtype=float),
            np.array([b.get(k, 0) for k in keys], dtype=float),
        )


duplicate_detector = DuplicateDetector()
