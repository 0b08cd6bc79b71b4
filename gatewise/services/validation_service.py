"""
Validation Service - synchronous gate/category decision at check-in time

Rules, first match wins:
1. Unknown gate, or gate not active            -> deny_out_of_range
2. Location given and farther than the gate's
   accepted radius by a wide margin            -> deny_out_of_range
3. Category holds an effective enforced binding -> allow
4. Another category holds one                   -> flag_mismatch
5. Otherwise (insufficient evidence)            -> allow

An enforced binding is effective while its confidence stays at or above the
soft threshold. The learner charges violations only against effective
bindings, using the same is_effective check. This is a pure read: no locks,
no writes.
"""
import logging
import math
from typing import Dict, Any, Optional

from sqlalchemy.orm import Session

from gatewise.db.models import CategoryBinding, Gate
from gatewise.services.binding_learner import is_effective
from gatewise.services.quality_service import haversine_m, is_valid_location
from gatewise.services.threshold_service import ThresholdValues, threshold_service

logger = logging.getLogger(__name__)


class ValidationService:
    """Decides allow / flag_mismatch / deny_out_of_range for one scan"""

    def accepted_radius_m(self, gate: Gate, thresholds: ThresholdValues) -> float:
        spread = 2 * math.sqrt(max(gate.spatial_variance or 0.0, 0.0))
        return max(thresholds.cluster_epsilon_meters, spread)

    def validate(
        self,
        db: Session,
        session_id: int,
        gate_id: int,
        category: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        accuracy_m: Optional[float] = None,
        thresholds: Optional[ThresholdValues] = None
    ) -> Dict[str, Any]:
        """
        Returns:
            {
                "decision": "allow" | "flag_mismatch" | "deny_out_of_range",
                "reason": str,
                "gate_id": int,
                "category": str,
                "binding_status": str | None,
                "confidence": float,
                "distance_m": float | None,
                "enforced_categories": [...]
            }
        """
        thresholds = thresholds or threshold_service.get_thresholds(db, session_id)
        result: Dict[str, Any] = {
            "gate_id": gate_id,
            "category": category,
            "binding_status": None,
            "confidence": 0.0,
            "distance_m": None,
            "enforced_categories": [],
        }

        gate = db.query(Gate).filter(Gate.id == gate_id, Gate.session_id == session_id).first()
        if not gate:
            return {**result, "decision": "deny_out_of_range", "reason": "unknown_gate"}
        if gate.status != "active":
            return {**result, "decision": "deny_out_of_range", "reason": f"gate_{gate.status}"}

        if (
            latitude is not None and longitude is not None
            and gate.latitude is not None and gate.longitude is not None
            and is_valid_location(latitude, longitude, accuracy_m or 1.0)
        ):
            distance = haversine_m(latitude, longitude, gate.latitude, gate.longitude)
            result["distance_m"] = round(distance, 2)
            # Give the scanner the benefit of its reported accuracy
            effective_distance = distance - (accuracy_m or 0.0)
            if effective_distance > self.accepted_radius_m(gate, thresholds) * thresholds.out_of_range_factor:
                return {**result, "decision": "deny_out_of_range", "reason": "location_out_of_range"}

        bindings = db.query(CategoryBinding).filter(CategoryBinding.gate_id == gate.id).all()
        own = next((b for b in bindings if b.category == category), None)
        if own:
            result["binding_status"] = own.status
            result["confidence"] = round(own.confidence, 4)

        effective = [b for b in bindings if is_effective(b, thresholds)]
        result["enforced_categories"] = sorted(b.category for b in effective)

        if own and own in effective:
            return {**result, "decision": "allow", "reason": "enforced_binding"}
        if effective:
            return {**result, "decision": "flag_mismatch", "reason": "category_not_bound_to_gate"}
        return {**result, "decision": "allow", "reason": "insufficient_evidence"}


validation_service = ValidationService()
