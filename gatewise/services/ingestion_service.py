"""
Ingestion Service - stores scans and decides when discovery is due

Each scan is stamped with its GPS quality weight and, where possible, an
initial gate: the gate the scanner reported, or else the nearest active gate
within the orphan distance. Scans without a gate are picked up later by
orphan backfill.

Discovery is due at the first-run milestone of accepted scans and then every
refresh interval. Exactly one ingestion request claims each milestone.
"""
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatewise.db.models import CheckinEvent, Gate, SessionCheckpoint, VenueSession
from gatewise.exceptions import NotFoundError
from gatewise.services.binding_learner import ensure_checkpoint
from gatewise.services.gate_materializer import gate_materializer, resolve_merged_gate
from gatewise.services.quality_service import haversine_m, is_valid_location, quality_weight
from gatewise.services.threshold_service import ThresholdValues, threshold_service

logger = logging.getLogger(__name__)


def discovery_due(accepted: int, last_run_at_count: int, thresholds: ThresholdValues) -> bool:
    if last_run_at_count <= 0:
        return accepted >= thresholds.discovery_first_run_scans
    return accepted - last_run_at_count >= thresholds.discovery_refresh_scans


class IngestionService:
    """Writes check-in events"""

    def ingest(
        self,
        db: Session,
        session_id: int,
        wristband_id: str,
        category: str,
        scanned_at: Optional[datetime] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        accuracy_m: Optional[float] = None,
        gate_id: Optional[int] = None,
        outcome: str = "success",
        external_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Store one scan.

        Returns:
            {
                "checkin_id": int,
                "gate_id": int | None,
                "quality_weight": float,
                "duplicate": bool,
                "discovery_triggered": bool
            }
        """
        venue_session = db.query(VenueSession).filter(VenueSession.id == session_id).first()
        if not venue_session:
            raise NotFoundError(f"Session {session_id} not found")

        if external_id:
            existing = self._find_external(db, session_id, external_id)
            if existing:
                return self._response(existing, duplicate=True, triggered=False)

        # Committed on its own; the check-in transaction never inserts it
        checkpoint = ensure_checkpoint(db, session_id)

        thresholds = threshold_service.get_thresholds(db, session_id)
        weight = quality_weight(latitude, longitude, accuracy_m)
        resolved_gate_id, distance = self._resolve_gate(
            db, session_id, gate_id, latitude, longitude, accuracy_m, thresholds
        )

        checkin = CheckinEvent(
            session_id=session_id,
            wristband_id=wristband_id,
            category=category,
            scanned_at=scanned_at or datetime.utcnow(),
            latitude=latitude,
            longitude=longitude,
            accuracy_m=accuracy_m,
            quality_weight=weight,
            gate_id=resolved_gate_id,
            outcome=outcome,
            external_id=external_id,
            gate_resolution="ingestion" if resolved_gate_id else None,
            assignment_distance_m=round(distance, 2) if distance is not None else None
        )
        db.add(checkin)

        accepted = outcome == "success" and weight > 0 and weight >= thresholds.min_quality_weight
        try:
            if accepted:
                db.query(SessionCheckpoint).filter(
                    SessionCheckpoint.session_id == session_id
                ).update(
                    {SessionCheckpoint.accepted_scan_count: SessionCheckpoint.accepted_scan_count + 1},
                    synchronize_session=False
                )
            db.commit()
        except IntegrityError:
            db.rollback()
            if external_id:
                existing = self._find_external(db, session_id, external_id)
                if existing:
                    return self._response(existing, duplicate=True, triggered=False)
            raise
        except Exception as e:
            logger.error(f"Error storing check-in for session {session_id}: {e}")
            db.rollback()
            raise

        triggered = False
        if accepted and venue_session.is_active:
            db.refresh(checkpoint)
            triggered = self._claim_discovery(db, checkpoint, thresholds)

        return self._response(checkin, duplicate=False, triggered=triggered)

    def _claim_discovery(self, db: Session, checkpoint: SessionCheckpoint, thresholds: ThresholdValues) -> bool:
        accepted = checkpoint.accepted_scan_count
        last = checkpoint.last_discovery_scan_count
        if not discovery_due(accepted, last, thresholds):
            return False
        claimed = db.query(SessionCheckpoint).filter(
            SessionCheckpoint.session_id == checkpoint.session_id,
            SessionCheckpoint.last_discovery_scan_count == last
        ).update(
            {SessionCheckpoint.last_discovery_scan_count: accepted},
            synchronize_session=False
        )
        db.commit()
        if claimed:
            logger.info(
                f"Session {checkpoint.session_id}: discovery due at {accepted} accepted scans"
            )
        return bool(claimed)

    def _resolve_gate(
        self,
        db: Session,
        session_id: int,
        gate_id: Optional[int],
        latitude: Optional[float],
        longitude: Optional[float],
        accuracy_m: Optional[float],
        thresholds: ThresholdValues
    ):
        has_location = is_valid_location(latitude, longitude, accuracy_m or 1.0)
        if gate_id is not None:
            gate = db.query(Gate).filter(Gate.id == gate_id, Gate.session_id == session_id).first()
            gate = resolve_merged_gate(db, gate)
            if gate and gate.status == "active":
                distance = None
                if has_location and gate.latitude is not None:
                    distance = haversine_m(latitude, longitude, gate.latitude, gate.longitude)
                return gate.id, distance
            logger.warning(f"Scanner-reported gate {gate_id} is not an active gate of session {session_id}")

        if has_location:
            match = gate_materializer.find_nearest_gate(
                db, session_id, latitude, longitude, thresholds.orphan_max_distance_meters
            )
            if match:
                return match[0].id, match[1]
        return None, None

    def _find_external(self, db: Session, session_id: int, external_id: str) -> Optional[CheckinEvent]:
        return db.query(CheckinEvent).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.external_id == external_id
        ).first()

    def _response(self, checkin: CheckinEvent, duplicate: bool, triggered: bool) -> Dict[str, Any]:
        return {
            "checkin_id": checkin.id,
            "gate_id": checkin.gate_id,
            "quality_weight": checkin.quality_weight,
            "duplicate": duplicate,
            "discovery_triggered": triggered,
        }


ingestion_service = IngestionService()
