"""
Gate Service - sessions, gate listings and operator overrides
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatewise.db.models import CategoryBinding, CheckinEvent, Gate, VenueSession
from gatewise.exceptions import NotFoundError, StaleStateError
from gatewise.services.gate_materializer import centroid_key, compute_health_score, health_label
from gatewise.services.threshold_service import threshold_service

logger = logging.getLogger(__name__)

GATE_STATUSES = ("active", "inactive", "maintenance")


class GateService:
    """Session lifecycle and gate administration"""

    # ============================================================
    # SESSIONS
    # ============================================================

    def create_session(
        self,
        db: Session,
        name: str,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None
    ) -> VenueSession:
        venue_session = VenueSession(name=name, is_active=True, starts_at=starts_at, ends_at=ends_at)
        db.add(venue_session)
        db.commit()
        db.refresh(venue_session)
        logger.info(f"Created session {venue_session.id} '{name}'")
        return venue_session

    def get_session(self, db: Session, session_id: int) -> VenueSession:
        venue_session = db.query(VenueSession).filter(VenueSession.id == session_id).first()
        if not venue_session:
            raise NotFoundError(f"Session {session_id} not found")
        return venue_session

    def deactivate_session(self, db: Session, session_id: int) -> VenueSession:
        """Stops background cycles for the session; validation keeps working"""
        venue_session = self.get_session(db, session_id)
        venue_session.is_active = False
        db.commit()
        logger.info(f"Session {session_id} deactivated")
        return venue_session

    def active_session_ids(self, db: Session) -> List[int]:
        return [
            r[0] for r in db.query(VenueSession.id).filter(
                VenueSession.is_active.is_(True)
            ).order_by(VenueSession.id).all()
        ]

    # ============================================================
    # GATES
    # ============================================================

    def get_gate(self, db: Session, gate_id: int) -> Gate:
        gate = db.query(Gate).filter(Gate.id == gate_id).first()
        if not gate:
            raise NotFoundError(f"Gate {gate_id} not found")
        return gate

    def list_gates(
        self,
        db: Session,
        session_id: int,
        include_inactive: bool = False
    ) -> List[Dict[str, Any]]:
        """Gates with health, status, check-in counts and current bindings"""
        self.get_session(db, session_id)
        query = db.query(Gate).filter(Gate.session_id == session_id)
        if not include_inactive:
            query = query.filter(Gate.status != "inactive")
        gates = query.order_by(Gate.sample_count.desc(), Gate.id).all()

        counts = dict(
            db.query(CheckinEvent.gate_id, func.count(CheckinEvent.id)).filter(
                CheckinEvent.session_id == session_id,
                CheckinEvent.gate_id.isnot(None)
            ).group_by(CheckinEvent.gate_id).all()
        )
        bindings: Dict[int, List[CategoryBinding]] = {}
        for binding in db.query(CategoryBinding).filter(
            CategoryBinding.session_id == session_id
        ).order_by(CategoryBinding.confidence.desc()).all():
            bindings.setdefault(binding.gate_id, []).append(binding)

        return [self.gate_to_dict(g, counts.get(g.id, 0), bindings.get(g.id, [])) for g in gates]

    def gate_to_dict(
        self,
        gate: Gate,
        checkin_count: int = 0,
        bindings: Optional[List[CategoryBinding]] = None
    ) -> Dict[str, Any]:
        return {
            "id": gate.id,
            "session_id": gate.session_id,
            "name": gate.name,
            "latitude": gate.latitude,
            "longitude": gate.longitude,
            "status": gate.status,
            "approval_status": gate.approval_status,
            "derivation_method": gate.derivation_method,
            "auto_created": gate.auto_created,
            "health_score": gate.health_score,
            "health_status": health_label(gate.health_score),
            "spatial_variance": gate.spatial_variance,
            "sample_count": gate.sample_count,
            "checkin_count": checkin_count,
            "merged_into_id": gate.merged_into_id,
            "first_seen_at": gate.first_seen_at,
            "last_seen_at": gate.last_seen_at,
            "bindings": [
                {
                    "id": b.id,
                    "category": b.category,
                    "status": b.status,
                    "confidence": round(b.confidence, 4),
                    "sample_count": b.sample_count,
                    "violation_count": b.violation_count,
                    "last_violation_at": b.last_violation_at,
                }
                for b in bindings or []
            ],
        }

    def create_manual_gate(
        self,
        db: Session,
        session_id: int,
        name: str,
        latitude: float,
        longitude: float,
        created_by: Optional[str] = None
    ) -> Gate:
        """Operator-placed gate; approved on creation"""
        self.get_session(db, session_id)
        thresholds = threshold_service.get_thresholds(db, session_id)
        gate = Gate(
            session_id=session_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            centroid_key=centroid_key(latitude, longitude),
            derivation_method="manual",
            status="active",
            approval_status="approved",
            approved_by=created_by,
            approved_at=datetime.utcnow(),
            spatial_variance=0.0,
            sample_count=0,
            auto_created=False
        )
        gate.health_score = compute_health_score(gate, thresholds.min_effective_samples)
        db.add(gate)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise StaleStateError("A gate already exists at this location") from e
        logger.info(f"Manual gate {gate.id} '{name}' created by {created_by or 'operator'}")
        return gate

    def update_gate(
        self,
        db: Session,
        gate_id: int,
        name: Optional[str] = None,
        status: Optional[str] = None
    ) -> Gate:
        gate = self.get_gate(db, gate_id)
        if status is not None:
            if status not in GATE_STATUSES:
                raise ValueError(f"Unknown gate status '{status}'")
            if gate.merged_into_id and status != "inactive":
                raise StaleStateError(f"Gate {gate_id} was merged into gate {gate.merged_into_id}")
            gate.status = status
        if name:
            gate.name = name
        db.commit()
        return gate

    def approve_gate(self, db: Session, gate_id: int, approved_by: str) -> Gate:
        gate = self.get_gate(db, gate_id)
        if gate.status == "inactive":
            raise StaleStateError(f"Gate {gate_id} is inactive")
        gate.approval_status = "approved"
        gate.approved_by = approved_by
        gate.approved_at = datetime.utcnow()
        db.commit()
        logger.info(f"Gate {gate_id} approved by {approved_by}")
        return gate


gate_service = GateService()
