"""
Gate Materializer - reconciles discovered clusters into persistent gates

For each cluster:
1. An active gate within the match tolerance absorbs it (centroid, variance,
   sample count, activity window and health are refreshed).
2. Otherwise a gate is created, keyed by its rounded centroid. The
   (session_id, centroid_key) unique constraint guarantees one gate per
   physical cluster; a worker that loses the insert race updates the
   winner instead.

Running it twice over the same clusters leaves the same gates behind.
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatewise.db.models import CheckinEvent, Gate
from gatewise.services.clustering_service import ScanCluster, spatial_variance_m2
from gatewise.services.quality_service import haversine_m, is_valid_location
from gatewise.services.threshold_service import ThresholdValues

logger = logging.getLogger(__name__)

CENTROID_KEY_DECIMALS = 4

# Health score components
HEALTH_SCORE = {
    "base": 50,
    "volume_tiers": [(100, 30), (50, 20), (10, 10)],  # (more than N check-ins, bonus)
    "location_bonus": 15,
    "activity_tiers": [(24, 10), (6, 5)],  # (more than N hours active, bonus)
    "sparse_auto_penalty": 20,
}

GATE_TIER_NAMES = {
    "main": "Main Gate",
    "secondary": "Secondary Gate",
    "access": "Access Point",
}


def centroid_key(latitude: float, longitude: float) -> str:
    """Rounded centroid identity used by the uniqueness constraint"""
    return f"{round(latitude, CENTROID_KEY_DECIMALS):.{CENTROID_KEY_DECIMALS}f}:{round(longitude, CENTROID_KEY_DECIMALS):.{CENTROID_KEY_DECIMALS}f}"


def compute_health_score(gate: Gate, min_effective_samples: int) -> int:
    """0-100 health from volume, location, sustained activity and provenance"""
    score = HEALTH_SCORE["base"]

    for min_count, bonus in HEALTH_SCORE["volume_tiers"]:
        if gate.sample_count > min_count:
            score += bonus
            break

    if gate.latitude is not None and gate.longitude is not None:
        score += HEALTH_SCORE["location_bonus"]

    if gate.first_seen_at and gate.last_seen_at:
        hours_active = (gate.last_seen_at - gate.first_seen_at).total_seconds() / 3600
        for min_hours, bonus in HEALTH_SCORE["activity_tiers"]:
            if hours_active > min_hours:
                score += bonus
                break

    if gate.auto_created and gate.sample_count < min_effective_samples:
        score -= HEALTH_SCORE["sparse_auto_penalty"]

    return max(0, min(100, score))


def health_label(health_score: int) -> str:
    if health_score < 50:
        return "critical"
    if health_score < 70:
        return "warning"
    return "healthy"


def resolve_merged_gate(db: Session, gate: Optional[Gate]) -> Optional[Gate]:
    """Follow merged_into links to the surviving gate"""
    seen = set()
    while gate is not None and gate.merged_into_id and gate.id not in seen:
        seen.add(gate.id)
        gate = db.query(Gate).filter(Gate.id == gate.merged_into_id).first()
    return gate


def refresh_gate_geometry(
    db: Session,
    gate: Gate,
    thresholds: ThresholdValues,
    extra_points: Optional[List[Tuple[int, float, float, datetime]]] = None
) -> Gate:
    """
    Recompute centroid, variance, sample count and activity window from the
    gate's accepted check-ins plus any not-yet-assigned cluster members.

    Scans already assigned to the gate are counted once even when they also
    appear in extra_points. Manually placed gates keep their coordinates.
    """
    assigned = db.query(
        CheckinEvent.id, CheckinEvent.latitude, CheckinEvent.longitude, CheckinEvent.scanned_at
    ).filter(
        CheckinEvent.gate_id == gate.id,
        CheckinEvent.outcome == "success",
        CheckinEvent.quality_weight >= thresholds.min_quality_weight,
        CheckinEvent.quality_weight > 0
    ).all()

    samples: Dict[int, Tuple[float, float, datetime]] = {
        row.id: (row.latitude, row.longitude, row.scanned_at) for row in assigned
    }
    for point_id, lat, lon, scanned_at in extra_points or []:
        samples.setdefault(point_id, (lat, lon, scanned_at))

    if not samples:
        gate.health_score = compute_health_score(gate, thresholds.min_effective_samples)
        return gate

    lats = np.array([s[0] for s in samples.values()])
    lons = np.array([s[1] for s in samples.values()])
    times = [s[2] for s in samples.values()]

    if gate.derivation_method != "manual" or gate.latitude is None:
        gate.latitude = float(np.mean(lats))
        gate.longitude = float(np.mean(lons))
    gate.spatial_variance = spatial_variance_m2(lats, lons, gate.latitude, gate.longitude)
    gate.sample_count = len(samples)
    gate.first_seen_at = min(times + ([gate.first_seen_at] if gate.first_seen_at else []))
    gate.last_seen_at = max(times + ([gate.last_seen_at] if gate.last_seen_at else []))
    gate.health_score = compute_health_score(gate, thresholds.min_effective_samples)
    return gate


class GateMaterializer:
    """Turns clusters into gates, idempotently"""

    def materialize(
        self,
        db: Session,
        session_id: int,
        clusters: List[ScanCluster],
        thresholds: ThresholdValues
    ) -> Dict[str, Any]:
        """
        Reconcile clusters with the session's gates.

        Returns:
            {"created": [...gate ids], "updated": [...gate ids]}
        """
        created: List[int] = []
        updated: List[int] = []
        names = self._tier_names(clusters)

        for cluster, tier_name in zip(clusters, names):
            gate_id, action = self._reconcile_cluster(db, session_id, cluster, tier_name, thresholds)
            if action == "created":
                created.append(gate_id)
            elif gate_id not in updated:
                updated.append(gate_id)

        if created or updated:
            logger.info(
                f"Session {session_id}: materialized {len(created)} new gates, updated {len(updated)}"
            )
        return {"created": created, "updated": updated}

    def _reconcile_cluster(
        self,
        db: Session,
        session_id: int,
        cluster: ScanCluster,
        tier_name: str,
        thresholds: ThresholdValues
    ) -> Tuple[int, str]:
        match = self.find_nearest_gate(
            db, session_id, cluster.latitude, cluster.longitude,
            thresholds.gate_match_tolerance_meters, statuses=("active", "maintenance")
        )
        if match:
            gate, _ = match
            self._absorb_cluster(db, gate, cluster, thresholds)
            db.commit()
            return gate.id, "updated"

        gate = Gate(
            session_id=session_id,
            name=self._unique_name(db, session_id, tier_name),
            latitude=cluster.latitude,
            longitude=cluster.longitude,
            centroid_key=centroid_key(cluster.latitude, cluster.longitude),
            derivation_method="gps_clustering",
            status="active",
            approval_status="pending",
            spatial_variance=cluster.spatial_variance,
            sample_count=cluster.size,
            auto_created=True,
            first_seen_at=cluster.first_seen_at,
            last_seen_at=cluster.last_seen_at
        )
        gate.health_score = compute_health_score(gate, thresholds.min_effective_samples)
        db.add(gate)
        try:
            db.commit()
            logger.info(f"Created gate {gate.id} '{gate.name}' from {cluster.size} scans")
            return gate.id, "created"
        except IntegrityError:
            # Another worker created this gate first; fold into theirs
            db.rollback()
            key = centroid_key(cluster.latitude, cluster.longitude)
            winner = db.query(Gate).filter(
                Gate.session_id == session_id,
                Gate.centroid_key == key
            ).first()
            winner = resolve_merged_gate(db, winner)
            if winner is None:
                raise
            logger.warning(f"Gate insert lost race for key {key}; updating gate {winner.id}")
            self._absorb_cluster(db, winner, cluster, thresholds)
            db.commit()
            return winner.id, "updated"

    def _absorb_cluster(
        self,
        db: Session,
        gate: Gate,
        cluster: ScanCluster,
        thresholds: ThresholdValues
    ) -> None:
        extra = [(p.id, p.latitude, p.longitude, p.scanned_at) for p in cluster.points]
        refresh_gate_geometry(db, gate, thresholds, extra_points=extra)

    def find_nearest_gate(
        self,
        db: Session,
        session_id: int,
        latitude: float,
        longitude: float,
        max_distance_m: float,
        statuses: Tuple[str, ...] = ("active",)
    ) -> Optional[Tuple[Gate, float]]:
        """Closest gate with one of the given statuses within max_distance_m"""
        if not is_valid_location(latitude, longitude, 1.0):
            return None
        gates = db.query(Gate).filter(
            Gate.session_id == session_id,
            Gate.status.in_(statuses),
            Gate.latitude.isnot(None),
            Gate.longitude.isnot(None)
        ).order_by(Gate.id).all()

        best: Optional[Tuple[Gate, float]] = None
        for gate in gates:
            distance = haversine_m(latitude, longitude, gate.latitude, gate.longitude)
            if distance <= max_distance_m and (best is None or distance < best[1]):
                best = (gate, distance)
        return best

    def _tier_names(self, clusters: List[ScanCluster]) -> List[str]:
        if not clusters:
            return []
        top = clusters[0].size
        names = []
        for idx, cluster in enumerate(clusters):
            if idx == 0:
                names.append(GATE_TIER_NAMES["main"])
            elif cluster.size >= top / 2:
                names.append(GATE_TIER_NAMES["secondary"])
            else:
                names.append(GATE_TIER_NAMES["access"])
        return names

    def _unique_name(self, db: Session, session_id: int, base_name: str) -> str:
        existing = {
            row.name for row in db.query(Gate.name).filter(Gate.session_id == session_id).all()
        }
        if base_name not in existing:
            return base_name
        n = 2
        while f"{base_name} {n}" in existing:
            n += 1
        return f"{base_name} {n}"


gate_materializer = GateMaterializer()
