"""
Tests for the Celery task wrappers (run eagerly).
"""
import threading

from celery import current_app

from gatewise.db.models import Gate, VenueSession
from gatewise.worker.celery_app import celery_app
from gatewise.worker.tasks import CYCLE_TASKS, run_discovery_cycle, sweep_sessions


def test_beat_schedule_covers_every_cycle():
    cycles = {entry["args"][0] for entry in celery_app.conf.beat_schedule.values()}
    assert cycles == set(CYCLE_TASKS)


def test_tasks_belong_to_gatewise_app():
    for task in list(CYCLE_TASKS.values()) + [sweep_sessions]:
        assert task.app is celery_app
        assert task.name in celery_app.tasks


def test_discovery_task_runs_cycle(db, venue, add_scans):
    add_scans(venue.id, 12)

    result = run_discovery_cycle.delay(venue.id).get()

    assert result["status"] == "completed"
    assert db.query(Gate).count() == 1


def test_delay_from_fresh_thread_runs_eagerly(db, venue, add_scans):
    add_scans(venue.id, 12)
    seen = {}

    def produce():
        seen["app"] = current_app._get_current_object()
        seen["result"] = run_discovery_cycle.delay(venue.id).get()

    producer = threading.Thread(target=produce)
    producer.start()
    producer.join()

    assert seen["app"] is celery_app
    assert seen["result"]["status"] == "completed"
    assert db.query(Gate).count() == 1


def test_sweep_enqueues_active_sessions_only(db, venue):
    closed = VenueSession(name="Closed", is_active=False)
    db.add(closed)
    db.commit()

    result = sweep_sessions.delay("enforcement").get()

    assert result == {"cycle": "enforcement", "enqueued": [venue.id], "failed": []}
