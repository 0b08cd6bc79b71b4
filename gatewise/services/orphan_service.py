"""
Orphan Assignment Service - backfills the gate of ungated check-ins

A check-in with no gate but a usable location is assigned to the nearest
active gate within the orphan distance. The assignment is a
compare-and-swap on `gate_id IS NULL`, so a check-in is never reassigned
and re-running the backfill is a no-op. No gate is ever created here.
"""
import logging
from typing import Dict, Any, Optional

from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.db.models import CheckinEvent, Gate
from gatewise.services.quality_service import haversine_m, is_valid_location
from gatewise.services.threshold_service import ThresholdValues

logger = logging.getLogger(__name__)


class OrphanService:
    """Assigns orphaned check-ins to discovered gates"""

    def assign_orphans(
        self,
        db: Session,
        session_id: int,
        thresholds: ThresholdValues,
        batch_size: Optional[int] = None,
        after_id: int = 0
    ) -> Dict[str, Any]:
        """
        Assign one bounded batch of orphans with ids above after_id, oldest
        first. Pass the returned last_id back in to continue past orphans
        that have no gate in range.

        Returns:
            {
                "examined": int,
                "assigned_checkin_ids": [...],
                "still_orphaned": int,
                "by_gate": {gate_id: count},
                "last_id": int
            }
        """
        batch_size = batch_size or settings.ORPHAN_BATCH_SIZE
        gates = db.query(Gate).filter(
            Gate.session_id == session_id,
            Gate.status == "active",
            Gate.latitude.isnot(None),
            Gate.longitude.isnot(None)
        ).order_by(Gate.id).all()

        result: Dict[str, Any] = {
            "examined": 0,
            "assigned_checkin_ids": [],
            "still_orphaned": 0,
            "by_gate": {},
            "last_id": after_id
        }
        if not gates:
            return result

        orphans = db.query(CheckinEvent).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.id > after_id,
            CheckinEvent.gate_id.is_(None),
            CheckinEvent.outcome == "success",
            CheckinEvent.latitude.isnot(None),
            CheckinEvent.longitude.isnot(None)
        ).order_by(CheckinEvent.id).limit(batch_size).all()

        gate_points = [(g.id, g.latitude, g.longitude) for g in gates]

        for checkin in orphans:
            result["examined"] += 1
            result["last_id"] = checkin.id
            if not is_valid_location(checkin.latitude, checkin.longitude, checkin.accuracy_m or 1.0):
                result["still_orphaned"] += 1
                continue

            nearest_id, nearest_distance = None, None
            for gate_id, lat, lon in gate_points:
                distance = haversine_m(checkin.latitude, checkin.longitude, lat, lon)
                if nearest_distance is None or distance < nearest_distance:
                    nearest_id, nearest_distance = gate_id, distance

            if nearest_distance is None or nearest_distance > thresholds.orphan_max_distance_meters:
                result["still_orphaned"] += 1
                continue

            swapped = db.query(CheckinEvent).filter(
                CheckinEvent.id == checkin.id,
                CheckinEvent.gate_id.is_(None)
            ).update(
                {
                    CheckinEvent.gate_id: nearest_id,
                    CheckinEvent.gate_resolution: "orphan_backfill",
                    CheckinEvent.assignment_distance_m: round(nearest_distance, 2)
                },
                synchronize_session=False
            )
            if swapped:
                result["assigned_checkin_ids"].append(checkin.id)
                result["by_gate"][nearest_id] = result["by_gate"].get(nearest_id, 0) + 1

        try:
            db.commit()
        except Exception as e:
            logger.error(f"Error assigning orphans for session {session_id}: {e}")
            db.rollback()
            raise

        # Objects loaded above are stale after the bulk updates
        db.expire_all()

        if result["assigned_checkin_ids"]:
            logger.info(
                f"Session {session_id}: assigned {len(result['assigned_checkin_ids'])} orphan check-ins, "
                f"{result['still_orphaned']} remain orphaned"
            )
        return result


orphan_service = OrphanService()
