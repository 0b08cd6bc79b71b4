"""
Cycle Service - background discovery, enforcement and duplicate scans

Cycles of one session never overlap: each takes a lease on the session's
checkpoint row with a compare-and-swap update and skips if another worker
holds it. A cycle that finds its session deactivated stops after the stage
it is in.

Discovery:   cluster -> materialize gates -> backfill orphans -> learn unledgered check-ins
Enforcement: learn the next batch of gated check-ins
Duplicates:  score gate pairs, emit or auto-apply merges
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.db.models import Gate, SessionCheckpoint, VenueSession
from gatewise.exceptions import NotFoundError
from gatewise.services.binding_learner import (
    binding_learner, ensure_checkpoint, get_or_create_checkpoint
)
from gatewise.services.clustering_service import clustering_service
from gatewise.services.duplicate_detector import duplicate_detector
from gatewise.services.gate_materializer import gate_materializer, refresh_gate_geometry
from gatewise.services.orphan_service import orphan_service
from gatewise.services.threshold_service import ThresholdValues, threshold_service

logger = logging.getLogger(__name__)

# Orphan batches per discovery cycle
MAX_ORPHAN_BATCHES = 10


class CycleService:
    """Runs the per-session background cycles"""

    # ============================================================
    # LEASE
    # ============================================================

    def acquire_lease(self, db: Session, session_id: int, owner: str, ttl_sec: Optional[int] = None) -> bool:
        ttl_sec = ttl_sec or settings.CYCLE_LEASE_TTL_SEC
        ensure_checkpoint(db, session_id)

        now = datetime.utcnow()
        taken = db.query(SessionCheckpoint).filter(
            SessionCheckpoint.session_id == session_id,
            or_(
                SessionCheckpoint.lease_owner.is_(None),
                SessionCheckpoint.lease_expires_at < now
            )
        ).update(
            {
                SessionCheckpoint.lease_owner: owner,
                SessionCheckpoint.lease_expires_at: now + timedelta(seconds=ttl_sec)
            },
            synchronize_session=False
        )
        db.commit()
        return taken == 1

    def release_lease(self, db: Session, session_id: int, owner: str) -> None:
        db.query(SessionCheckpoint).filter(
            SessionCheckpoint.session_id == session_id,
            SessionCheckpoint.lease_owner == owner
        ).update(
            {SessionCheckpoint.lease_owner: None, SessionCheckpoint.lease_expires_at: None},
            synchronize_session=False
        )
        db.commit()

    def _run_leased(
        self,
        db: Session,
        session_id: int,
        cycle: str,
        body: Callable[[ThresholdValues], Dict[str, Any]]
    ) -> Dict[str, Any]:
        venue_session = db.query(VenueSession).filter(VenueSession.id == session_id).first()
        if not venue_session:
            raise NotFoundError(f"Session {session_id} not found")
        if not venue_session.is_active:
            return {"session_id": session_id, "cycle": cycle, "status": "cancelled", "reason": "session_inactive"}

        owner = uuid.uuid4().hex
        if not self.acquire_lease(db, session_id, owner):
            logger.warning(f"Session {session_id}: {cycle} cycle skipped, another cycle holds the lease")
            return {"session_id": session_id, "cycle": cycle, "status": "skipped", "reason": "cycle_in_flight"}

        try:
            thresholds = threshold_service.get_thresholds(db, session_id)
            result = body(thresholds)
            self._record(db, session_id, cycle, error=None)
            return {"session_id": session_id, "cycle": cycle, **result}
        except Exception as e:
            logger.error(f"Session {session_id}: {cycle} cycle failed: {e}")
            db.rollback()
            self._record(db, session_id, cycle, error=f"{type(e).__name__}: {e}")
            raise
        finally:
            self.release_lease(db, session_id, owner)

    def _record(self, db: Session, session_id: int, cycle: str, error=None) -> None:
        checkpoint = get_or_create_checkpoint(db, session_id)
        checkpoint.last_error = error
        if error is None:
            stamp = {
                "discovery": "last_discovery_at",
                "enforcement": "last_enforcement_at",
                "duplicates": "last_duplicate_scan_at",
            }[cycle]
            setattr(checkpoint, stamp, datetime.utcnow())
        db.commit()

    def _session_active(self, db: Session, session_id: int) -> bool:
        row = db.query(VenueSession.is_active).filter(VenueSession.id == session_id).first()
        return bool(row and row[0])

    # ============================================================
    # CYCLES
    # ============================================================

    def run_discovery_cycle(self, db: Session, session_id: int) -> Dict[str, Any]:
        def body(thresholds: ThresholdValues) -> Dict[str, Any]:
            clusters = clustering_service.discover(db, session_id, thresholds)
            materialized = gate_materializer.materialize(db, session_id, clusters, thresholds)
            result: Dict[str, Any] = {
                "status": "completed",
                "clusters": len(clusters),
                "gates_created": materialized["created"],
                "gates_updated": materialized["updated"],
                "orphans_assigned": 0,
                "learned": 0,
            }
            if not self._session_active(db, session_id):
                result["status"] = "cancelled"
                return result

            assigned, touched_gates = self._backfill_orphans(db, session_id, thresholds)
            result["orphans_assigned"] = len(assigned)
            if not self._session_active(db, session_id):
                result["status"] = "cancelled"
                return result

            # Learn everything not yet in the ledger, including check-ins
            # backfilled by an earlier cycle that stopped before learning
            promoted = []
            while True:
                learned = binding_learner.learn(db, session_id, thresholds)
                result["learned"] += learned["learned"]
                promoted.extend(learned["promoted_binding_ids"])
                if learned["examined"] < settings.LEARNING_BATCH_SIZE:
                    break
                if not self._session_active(db, session_id):
                    result["status"] = "cancelled"
                    break
            result["promoted_binding_ids"] = promoted
            return result

        return self._run_leased(db, session_id, "discovery", body)

    def _backfill_orphans(self, db: Session, session_id: int, thresholds: ThresholdValues):
        assigned = []
        touched_gates: Set[int] = set()
        after_id = 0
        for _ in range(MAX_ORPHAN_BATCHES):
            batch = orphan_service.assign_orphans(db, session_id, thresholds, after_id=after_id)
            assigned.extend(batch["assigned_checkin_ids"])
            touched_gates.update(batch["by_gate"].keys())
            if batch["examined"] < settings.ORPHAN_BATCH_SIZE:
                break
            after_id = batch["last_id"]

        if touched_gates:
            for gate in db.query(Gate).filter(Gate.id.in_(touched_gates)).all():
                refresh_gate_geometry(db, gate, thresholds)
            db.commit()
        return assigned, touched_gates

    def run_enforcement_cycle(self, db: Session, session_id: int) -> Dict[str, Any]:
        def body(thresholds: ThresholdValues) -> Dict[str, Any]:
            learned = binding_learner.learn(db, session_id, thresholds)
            return {"status": "completed", **learned}

        return self._run_leased(db, session_id, "enforcement", body)

    def run_duplicate_detection(self, db: Session, session_id: int) -> Dict[str, Any]:
        def body(thresholds: ThresholdValues) -> Dict[str, Any]:
            detected = duplicate_detector.detect(db, session_id, thresholds)
            return {"status": "completed", **detected}

        return self._run_leased(db, session_id, "duplicates", body)


cycle_service = CycleService()
