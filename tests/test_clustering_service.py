"""
Tests for spatial clustering of accepted scans.
"""
from datetime import timedelta

from gatewise.services.clustering_service import ClusteringService, ScanPoint
from tests.conftest import BASE_TIME, JITTER, VENUE_LAT, VENUE_LON, offset


def _points(start_id, count, lat=VENUE_LAT, lon=VENUE_LON, category="GENERAL"):
    points = []
    for i in range(count):
        north, east = JITTER[i % len(JITTER)]
        p_lat, p_lon = offset(lat, lon, north, east)
        points.append(ScanPoint(
            id=start_id + i,
            latitude=p_lat,
            longitude=p_lon,
            weight=1.0,
            category=category,
            scanned_at=BASE_TIME + timedelta(minutes=i),
            accuracy_m=8.0
        ))
    return points


class TestClusterPoints:

    def setup_method(self):
        self.service = ClusteringService()

    def test_two_separate_groups(self):
        far_lat, far_lon = offset(VENUE_LAT, VENUE_LON, north_m=300)
        points = _points(1, 12) + _points(100, 6, far_lat, far_lon, category="VIP")

        clusters = self.service.cluster_points(points, epsilon_m=25, min_samples=5, max_variance_m2=900)

        assert [c.size for c in clusters] == [12, 6]
        assert clusters[0].category_counts == {"GENERAL": 12}
        assert clusters[1].category_counts == {"VIP": 6}
        assert abs(clusters[1].latitude - far_lat) < 0.0001

    def test_small_groups_are_dropped(self):
        far_lat, far_lon = offset(VENUE_LAT, VENUE_LON, north_m=300)
        points = _points(1, 10) + _points(100, 3, far_lat, far_lon)

        clusters = self.service.cluster_points(points, epsilon_m=25, min_samples=5, max_variance_m2=900)

        assert len(clusters) == 1
        assert clusters[0].size == 10

    def test_chained_membership_joins_groups(self):
        # A at 0 m, B at 40 m, bridge scans at 20 m: B joins A through the bridge
        b_lat, b_lon = offset(VENUE_LAT, VENUE_LON, east_m=40)
        bridge_lat, bridge_lon = offset(VENUE_LAT, VENUE_LON, east_m=20)
        points = _points(1, 6) + _points(50, 6, b_lat, b_lon) + _points(90, 1, bridge_lat, bridge_lon)

        clusters = self.service.cluster_points(points, epsilon_m=25, min_samples=5, max_variance_m2=900)

        assert len(clusters) == 1
        assert clusters[0].size == 13

    def test_diffuse_cluster_rejected(self):
        b_lat, b_lon = offset(VENUE_LAT, VENUE_LON, east_m=40)
        bridge_lat, bridge_lon = offset(VENUE_LAT, VENUE_LON, east_m=20)
        points = _points(1, 6) + _points(50, 6, b_lat, b_lon) + _points(90, 1, bridge_lat, bridge_lon)

        clusters = self.service.cluster_points(points, epsilon_m=25, min_samples=5, max_variance_m2=50)

        assert clusters == []

    def test_identical_input_gives_identical_output(self):
        far_lat, far_lon = offset(VENUE_LAT, VENUE_LON, north_m=300)
        points = _points(1, 8) + _points(100, 8, far_lat, far_lon)

        first = self.service.cluster_points(points, epsilon_m=25, min_samples=5, max_variance_m2=900)
        second = self.service.cluster_points(list(reversed(points)), epsilon_m=25, min_samples=5, max_variance_m2=900)

        assert [c.member_ids for c in first] == [c.member_ids for c in second]
        assert [(c.latitude, c.longitude) for c in first] == [(c.latitude, c.longitude) for c in second]
        # Equal sizes fall back to lowest member id
        assert first[0].member_ids[0] == 1

    def test_hourly_histogram(self):
        clusters = self.service.cluster_points(_points(1, 6), epsilon_m=25, min_samples=5, max_variance_m2=900)
        assert clusters[0].hourly_histogram[12] == 6
        assert sum(clusters[0].hourly_histogram) == 6

    def test_empty_input(self):
        assert self.service.cluster_points([], epsilon_m=25, min_samples=5, max_variance_m2=900) == []


class TestDiscoveryPoints:

    def test_excludes_low_quality_failed_and_stale_scans(self, db, venue, add_scans, thresholds):
        good = add_scans(venue.id, 6)
        add_scans(venue.id, 4, accuracy_m=80.0)                 # weight 0.4
        add_scans(venue.id, 3, outcome="denied")
        add_scans(venue.id, 5, start=BASE_TIME - timedelta(hours=10))  # outside the window

        points = ClusteringService().load_discovery_points(db, venue.id, thresholds)

        assert sorted(p.id for p in points) == good

    def test_discover_creates_nothing_without_scans(self, db, venue, thresholds):
        assert ClusteringService().discover(db, venue.id, thresholds) == []
