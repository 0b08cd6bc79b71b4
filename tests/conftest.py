"""
Pytest configuration shared by the Gatewise tests.

The service is pointed at an in-memory SQLite database and Celery runs
tasks eagerly, so no Postgres, Redis or worker is needed.
"""
import math
import os
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["REDIS_URL"] = "redis://localhost:1/0"
os.environ["API_KEY"] = "test-api-key"

import pytest

from gatewise.db.database import Base, SessionLocal, engine
from gatewise.db import models  # noqa: F401
from gatewise.db.models import CheckinEvent, Gate, VenueSession
from gatewise.services.gate_materializer import centroid_key
from gatewise.services.quality_service import quality_weight
from gatewise.services.threshold_service import ThresholdValues

API_KEY = "test-api-key"

# Reference venue location
VENUE_LAT = 51.5033
VENUE_LON = -0.1195
BASE_TIME = datetime(2026, 7, 4, 12, 0, 0)


def offset(lat: float, lon: float, north_m: float = 0.0, east_m: float = 0.0):
    """Move a point by meters north/east"""
    dlat = north_m / 111320.0
    dlon = east_m / (111320.0 * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon


# Small deterministic jitter ring, all within ~4 m of the center
JITTER = [(0, 0), (2, 1), (-2, 1), (1, -2), (-1, -2), (3, 0), (-3, 0), (0, 3), (0, -3), (2, 2)]


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def thresholds():
    return ThresholdValues()


@pytest.fixture
def venue(db):
    venue_session = VenueSession(name="Summer Festival", is_active=True)
    db.add(venue_session)
    db.commit()
    return venue_session


@pytest.fixture
def add_scans(db):
    """Insert scans around a point; returns their ids in insert order"""
    def _add(
        session_id: int,
        count: int,
        lat: float = VENUE_LAT,
        lon: float = VENUE_LON,
        category: str = "GENERAL",
        accuracy_m: float = 8.0,
        start: datetime = BASE_TIME,
        spacing_sec: int = 30,
        gate_id=None,
        outcome: str = "success"
    ):
        ids = []
        for i in range(count):
            north, east = JITTER[i % len(JITTER)]
            p_lat, p_lon = offset(lat, lon, north, east)
            checkin = CheckinEvent(
                session_id=session_id,
                wristband_id=f"WB-{category}-{i}",
                category=category,
                scanned_at=start + timedelta(seconds=i * spacing_sec),
                latitude=p_lat,
                longitude=p_lon,
                accuracy_m=accuracy_m,
                quality_weight=quality_weight(p_lat, p_lon, accuracy_m),
                gate_id=gate_id,
                outcome=outcome,
                gate_resolution="ingestion" if gate_id else None
            )
            db.add(checkin)
            db.flush()
            ids.append(checkin.id)
        db.commit()
        return ids
    return _add


@pytest.fixture
def make_gate(db):
    """Insert an active gate directly"""
    def _make(session_id: int, lat: float = VENUE_LAT, lon: float = VENUE_LON, name: str = "Gate", **kwargs):
        values = dict(
            session_id=session_id,
            name=name,
            latitude=lat,
            longitude=lon,
            centroid_key=centroid_key(lat, lon),
            derivation_method="gps_clustering",
            status="active",
            approval_status="pending",
            spatial_variance=4.0,
            sample_count=0,
            auto_created=True,
            health_score=50,
        )
        values.update(kwargs)
        gate = Gate(**values)
        db.add(gate)
        db.commit()
        return gate
    return _make


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from gatewise.main import app

    return TestClient(app, headers={"X-API-Key": API_KEY})
