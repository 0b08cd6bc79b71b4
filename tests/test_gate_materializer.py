"""
Tests for reconciling clusters into gates.
"""
import threading
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.orm import sessionmaker

from gatewise.db.database import Base, build_engine
from gatewise.db.models import Gate, VenueSession
from gatewise.services.clustering_service import ScanCluster, ScanPoint, clustering_service
from gatewise.services.gate_materializer import (
    GateMaterializer, centroid_key, compute_health_score, health_label, resolve_merged_gate
)
from tests.conftest import BASE_TIME, JITTER, VENUE_LAT, VENUE_LON, offset


def _discover_and_materialize(db, session_id, thresholds):
    clusters = clustering_service.discover(db, session_id, thresholds)
    return GateMaterializer().materialize(db, session_id, clusters, thresholds)


class TestMaterialize:

    def test_creates_one_gate_per_cluster(self, db, venue, add_scans, thresholds):
        north_lat, north_lon = offset(VENUE_LAT, VENUE_LON, north_m=200)
        add_scans(venue.id, 30)
        add_scans(venue.id, 10, north_lat, north_lon, category="VIP")

        result = _discover_and_materialize(db, venue.id, thresholds)

        assert len(result["created"]) == 2
        assert result["updated"] == []
        gates = db.query(Gate).filter(Gate.session_id == venue.id).order_by(Gate.id).all()
        assert [g.name for g in gates] == ["Main Gate", "Access Point"]
        assert gates[0].sample_count == 30
        assert gates[0].derivation_method == "gps_clustering"
        assert gates[0].approval_status == "pending"
        assert gates[0].auto_created is True
        assert gates[0].centroid_key == centroid_key(gates[0].latitude, gates[0].longitude)

    def test_rerun_is_idempotent(self, db, venue, add_scans, thresholds):
        add_scans(venue.id, 20)
        first = _discover_and_materialize(db, venue.id, thresholds)
        gate = db.query(Gate).one()
        snapshot = (gate.latitude, gate.longitude, gate.sample_count, gate.spatial_variance)

        second = _discover_and_materialize(db, venue.id, thresholds)

        db.refresh(gate)
        assert second == {"created": [], "updated": first["created"]}
        assert db.query(Gate).count() == 1
        assert (gate.latitude, gate.longitude, gate.sample_count, gate.spatial_variance) == snapshot

    def test_new_scans_update_existing_gate(self, db, venue, add_scans, thresholds):
        add_scans(venue.id, 10)
        _discover_and_materialize(db, venue.id, thresholds)
        add_scans(venue.id, 10, start=BASE_TIME + timedelta(hours=1))

        result = _discover_and_materialize(db, venue.id, thresholds)

        gate = db.query(Gate).one()
        assert result["created"] == []
        assert gate.sample_count == 20
        assert gate.last_seen_at > gate.first_seen_at

    def test_lost_insert_race_updates_winner(self, db, venue, add_scans, make_gate, thresholds):
        add_scans(venue.id, 10)
        clusters = clustering_service.discover(db, venue.id, thresholds)
        cluster = clusters[0]
        # Another worker already inserted the gate for this centroid
        winner = make_gate(venue.id, cluster.latitude, cluster.longitude, name="Main Gate")

        materializer = GateMaterializer()
        with patch.object(materializer, "find_nearest_gate", return_value=None):
            result = materializer.materialize(db, venue.id, clusters, thresholds)

        assert result == {"created": [], "updated": [winner.id]}
        assert db.query(Gate).count() == 1
        db.refresh(winner)
        assert winner.sample_count == 10

    def test_lost_race_follows_merge_link(self, db, venue, add_scans, make_gate, thresholds):
        add_scans(venue.id, 10)
        clusters = clustering_service.discover(db, venue.id, thresholds)
        survivor_lat, survivor_lon = offset(VENUE_LAT, VENUE_LON, east_m=15)
        survivor = make_gate(venue.id, survivor_lat, survivor_lon, name="Survivor")
        make_gate(
            venue.id, clusters[0].latitude, clusters[0].longitude, name="Merged",
            status="inactive", merged_into_id=survivor.id
        )

        materializer = GateMaterializer()
        with patch.object(materializer, "find_nearest_gate", return_value=None):
            result = materializer.materialize(db, venue.id, clusters, thresholds)

        assert result["updated"] == [survivor.id]

    def test_manual_gate_keeps_its_location(self, db, venue, add_scans, make_gate, thresholds):
        manual_lat, manual_lon = offset(VENUE_LAT, VENUE_LON, north_m=5)
        gate = make_gate(venue.id, manual_lat, manual_lon, derivation_method="manual", auto_created=False)
        add_scans(venue.id, 10)

        result = _discover_and_materialize(db, venue.id, thresholds)

        db.refresh(gate)
        assert result["updated"] == [gate.id]
        assert (gate.latitude, gate.longitude) == (manual_lat, manual_lon)
        assert gate.sample_count == 10

    def test_inactive_gates_do_not_absorb(self, db, venue, add_scans, make_gate, thresholds):
        lat, lon = offset(VENUE_LAT, VENUE_LON, north_m=6)
        make_gate(venue.id, lat, lon, status="inactive")
        add_scans(venue.id, 10)

        result = _discover_and_materialize(db, venue.id, thresholds)

        assert len(result["created"]) == 1

    def test_unique_names(self, db, venue, add_scans, make_gate, thresholds):
        far_lat, far_lon = offset(VENUE_LAT, VENUE_LON, north_m=500)
        make_gate(venue.id, far_lat, far_lon, name="Main Gate")
        add_scans(venue.id, 10)

        _discover_and_materialize(db, venue.id, thresholds)

        names = sorted(g.name for g in db.query(Gate).all())
        assert names == ["Main Gate", "Main Gate 2"]


class TestNearestGate:

    def test_picks_closest_within_range(self, db, venue, make_gate):
        near = make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=10), name="Near")
        make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=30), name="Far")

        gate, distance = GateMaterializer().find_nearest_gate(db, venue.id, VENUE_LAT, VENUE_LON, 50)

        assert gate.id == near.id
        assert 9 < distance < 11

    def test_nothing_in_range(self, db, venue, make_gate):
        make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=80))
        assert GateMaterializer().find_nearest_gate(db, venue.id, VENUE_LAT, VENUE_LON, 50) is None


class TestHealth:

    def test_sparse_auto_gate_is_penalized(self):
        gate = Gate(sample_count=5, latitude=1.0, longitude=1.0, auto_created=True)
        # base 50 + location 15 - sparse 20
        assert compute_health_score(gate, min_effective_samples=20) == 45

    def test_busy_long_running_gate(self):
        gate = Gate(
            sample_count=150, latitude=1.0, longitude=1.0, auto_created=True,
            first_seen_at=BASE_TIME, last_seen_at=BASE_TIME + timedelta(hours=30)
        )
        assert compute_health_score(gate, min_effective_samples=20) == 100

    def test_labels(self):
        assert health_label(45) == "critical"
        assert health_label(65) == "warning"
        assert health_label(85) == "healthy"


def test_resolve_merged_gate_chain(db, venue, make_gate):
    final = make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=100), name="C")
    middle = make_gate(venue.id, *offset(VENUE_LAT, VENUE_LON, east_m=50), name="B",
                       status="inactive", merged_into_id=final.id)
    first = make_gate(venue.id, name="A", status="inactive", merged_into_id=middle.id)

    assert resolve_merged_gate(db, first).id == final.id
    assert resolve_merged_gate(db, final).id == final.id
    assert resolve_merged_gate(db, None) is None


def _cluster(lat, lon, count):
    points = []
    for i in range(count):
        p_lat, p_lon = offset(lat, lon, *JITTER[i % len(JITTER)])
        points.append(ScanPoint(
            id=i + 1, latitude=p_lat, longitude=p_lon, weight=1.0,
            category="GENERAL", scanned_at=BASE_TIME + timedelta(seconds=30 * i), accuracy_m=8.0
        ))
    return ScanCluster(
        member_ids=[p.id for p in points],
        latitude=lat,
        longitude=lon,
        spatial_variance=4.0,
        category_counts={"GENERAL": count},
        hourly_histogram=[0] * 24,
        first_seen_at=points[0].scanned_at,
        last_seen_at=points[-1].scanned_at,
        avg_accuracy_m=8.0,
        avg_weight=1.0,
        points=points
    )


class TestConcurrentMaterialize:

    def test_two_workers_on_one_cluster_create_one_gate(self, tmp_path, thresholds):
        file_engine = build_engine(f"sqlite:///{tmp_path / 'materialize.db'}")
        Base.metadata.create_all(bind=file_engine)
        WorkerSession = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

        setup = WorkerSession()
        venue_session = VenueSession(name="Race", is_active=True)
        setup.add(venue_session)
        setup.commit()
        session_id = venue_session.id
        setup.close()

        clusters = [_cluster(VENUE_LAT, VENUE_LON, 10)]
        # Both workers finish their lookup before either inserts
        barrier = threading.Barrier(2, timeout=10)
        results, errors = [], []

        def worker():
            materializer = GateMaterializer()
            lookup = materializer.find_nearest_gate

            def lookup_then_wait(*args, **kwargs):
                found = lookup(*args, **kwargs)
                barrier.wait()
                return found

            materializer.find_nearest_gate = lookup_then_wait
            db = WorkerSession()
            try:
                results.append(materializer.materialize(db, session_id, clusters, thresholds))
            except Exception as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        check = WorkerSession()
        try:
            gate_ids = [g.id for g in check.query(Gate).filter(Gate.session_id == session_id).all()]
        finally:
            check.close()
            file_engine.dispose()

        assert errors == []
        assert len(gate_ids) == 1
        assert sorted(len(r["created"]) for r in results) == [0, 1]
        assert {gid for r in results for gid in r["created"] + r["updated"]} == set(gate_ids)
