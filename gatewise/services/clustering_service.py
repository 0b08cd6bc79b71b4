"""
Clustering Service - groups geotagged scans into candidate gate locations

Density-based grouping over haversine distance with chained membership:
two scans within epsilon of each other share a cluster, so a scan that is
within epsilon of two groups joins them. Groups smaller than the session's
minimum sample size, or too spatially diffuse, are dropped.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
from sklearn.cluster import DBSCAN
from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.db.models import CheckinEvent
from gatewise.services.quality_service import EARTH_RADIUS_M
from gatewise.services.threshold_service import ThresholdValues

logger = logging.getLogger(__name__)


@dataclass
class ScanPoint:
    id: int
    latitude: float
    longitude: float
    weight: float
    category: str
    scanned_at: datetime
    accuracy_m: Optional[float] = None


@dataclass
class ScanCluster:
    member_ids: List[int]
    latitude: float
    longitude: float
    spatial_variance: float
    category_counts: Dict[str, int]
    hourly_histogram: List[int]
    first_seen_at: datetime
    last_seen_at: datetime
    avg_accuracy_m: Optional[float] = None
    avg_weight: float = 0.0
    points: List[ScanPoint] = field(default_factory=list, repr=False)

    @property
    def size(self) -> int:
        return len(self.member_ids)


def spatial_variance_m2(lats: np.ndarray, lons: np.ndarray, center_lat: float, center_lon: float) -> float:
    """Mean squared haversine distance (m^2) of points from a center"""
    if len(lats) == 0:
        return 0.0
    lat1 = np.radians(lats)
    lat2 = np.radians(center_lat)
    dlat = lat2 - lat1
    dlon = np.radians(center_lon) - np.radians(lons)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    d = 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))
    return float(np.mean(d ** 2))


class ClusteringService:
    """Spatial clustering of accepted scans"""

    def cluster_points(
        self,
        points: List[ScanPoint],
        epsilon_m: float,
        min_samples: int,
        max_variance_m2: float
    ) -> List[ScanCluster]:
        """
        Group points into clusters.

        Identical input always yields the identical clusters in the same
        order (size descending, then lowest member id).
        """
        if not points:
            return []

        ordered = sorted(points, key=lambda p: p.id)
        coords = np.radians(np.array([[p.latitude, p.longitude] for p in ordered]))

        # min_samples=1 makes every point a core point, so labels are the
        # epsilon-connected components of the scan graph.
        labels = DBSCAN(
            eps=epsilon_m / EARTH_RADIUS_M,
            min_samples=1,
            metric="haversine",
            algorithm="ball_tree"
        ).fit_predict(coords)

        groups: Dict[int, List[ScanPoint]] = {}
        for point, label in zip(ordered, labels):
            groups.setdefault(int(label), []).append(point)

        clusters = []
        for members in groups.values():
            if len(members) < min_samples:
                continue
            cluster = self._summarize(members)
            if cluster.spatial_variance > max_variance_m2:
                logger.debug(
                    f"Dropping diffuse cluster of {cluster.size} scans "
                    f"(variance {cluster.spatial_variance:.1f} m^2)"
                )
                continue
            clusters.append(cluster)

        clusters.sort(key=lambda c: (-c.size, c.member_ids[0]))
        return clusters

    def _summarize(self, members: List[ScanPoint]) -> ScanCluster:
        lats = np.array([p.latitude for p in members])
        lons = np.array([p.longitude for p in members])
        center_lat = float(np.mean(lats))
        center_lon = float(np.mean(lons))

        category_counts: Dict[str, int] = {}
        hourly = [0] * 24
        for p in members:
            category_counts[p.category] = category_counts.get(p.category, 0) + 1
            hourly[p.scanned_at.hour] += 1

        accuracies = [p.accuracy_m for p in members if p.accuracy_m is not None]

        return ScanCluster(
            member_ids=sorted(p.id for p in members),
            latitude=center_lat,
            longitude=center_lon,
            spatial_variance=spatial_variance_m2(lats, lons, center_lat, center_lon),
            category_counts=category_counts,
            hourly_histogram=hourly,
            first_seen_at=min(p.scanned_at for p in members),
            last_seen_at=max(p.scanned_at for p in members),
            avg_accuracy_m=float(np.mean(accuracies)) if accuracies else None,
            avg_weight=float(np.mean([p.weight for p in members])),
            points=sorted(members, key=lambda p: p.id)
        )

    def load_discovery_points(
        self,
        db: Session,
        session_id: int,
        thresholds: ThresholdValues,
        max_points: Optional[int] = None
    ) -> List[ScanPoint]:
        """
        Accepted successful scans inside the discovery window, which ends at
        the newest accepted scan of the session.
        """
        max_points = max_points or settings.DISCOVERY_MAX_POINTS
        base = db.query(CheckinEvent).filter(
            CheckinEvent.session_id == session_id,
            CheckinEvent.outcome == "success",
            CheckinEvent.quality_weight >= thresholds.min_quality_weight,
            CheckinEvent.quality_weight > 0,
            CheckinEvent.latitude.isnot(None),
            CheckinEvent.longitude.isnot(None)
        )

        newest = base.order_by(CheckinEvent.scanned_at.desc()).first()
        if not newest:
            return []
        window_start = newest.scanned_at - timedelta(hours=thresholds.discovery_window_hours)

        rows = base.filter(
            CheckinEvent.scanned_at >= window_start
        ).order_by(CheckinEvent.id.desc()).limit(max_points).all()

        return [
            ScanPoint(
                id=row.id,
                latitude=row.latitude,
                longitude=row.longitude,
                weight=row.quality_weight,
                category=row.category,
                scanned_at=row.scanned_at,
                accuracy_m=row.accuracy_m
            )
            for row in rows
        ]

    def discover(self, db: Session, session_id: int, thresholds: ThresholdValues) -> List[ScanCluster]:
        """Load the discovery window and cluster it"""
        points = self.load_discovery_points(db, session_id, thresholds)
        clusters = self.cluster_points(
            points,
            epsilon_m=thresholds.cluster_epsilon_meters,
            min_samples=thresholds.min_samples_for_gate,
            max_variance_m2=thresholds.max_spatial_variance_m2
        )
        logger.info(
            f"Session {session_id}: clustered {len(points)} scans into {len(clusters)} candidate gates"
        )
        return clusters


clustering_service = ClusteringService()
