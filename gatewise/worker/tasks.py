"""
Celery Tasks for background gate discovery and binding enforcement
"""
import logging
from typing import Dict, Any

from gatewise.db.database import SessionLocal
from gatewise.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@celery_app.task(
    bind=True, name="gatewise.worker.tasks.run_discovery_cycle", max_retries=3, default_retry_delay=60
)
def run_discovery_cycle(self, session_id: int):
    """
    Discover gates for one session.

    - Clusters accepted scans in the discovery window
    - Creates or updates gates
    - Backfills orphan check-ins and learns from them
    """
    from gatewise.services.cycle_service import cycle_service

    db = get_db_session()
    try:
        result = cycle_service.run_discovery_cycle(db, session_id)
        logger.info(f"Discovery cycle for session {session_id}: {result.get('status')}")
        return result
    except Exception as e:
        logger.error(f"Discovery cycle failed for session {session_id}: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@celery_app.task(
    bind=True, name="gatewise.worker.tasks.run_enforcement_cycle", max_retries=3, default_retry_delay=30
)
def run_enforcement_cycle(self, session_id: int):
    """
    Learn category bindings from the next batch of gated check-ins.
    """
    from gatewise.services.cycle_service import cycle_service

    db = get_db_session()
    try:
        result = cycle_service.run_enforcement_cycle(db, session_id)
        logger.info(f"Enforcement cycle for session {session_id}: {result.get('status')}")
        return result
    except Exception as e:
        logger.error(f"Enforcement cycle failed for session {session_id}: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@celery_app.task(
    bind=True, name="gatewise.worker.tasks.run_duplicate_detection", max_retries=3, default_retry_delay=60
)
def run_duplicate_detection(self, session_id: int):
    """
    Score nearby gate pairs and emit merge suggestions.
    """
    from gatewise.services.cycle_service import cycle_service

    db = get_db_session()
    try:
        result = cycle_service.run_duplicate_detection(db, session_id)
        logger.info(f"Duplicate detection for session {session_id}: {result.get('status')}")
        return result
    except Exception as e:
        logger.error(f"Duplicate detection failed for session {session_id}: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


CYCLE_TASKS = {
    "discovery": run_discovery_cycle,
    "enforcement": run_enforcement_cycle,
    "duplicates": run_duplicate_detection,
}


@celery_app.task(bind=True, name="gatewise.worker.tasks.sweep_sessions")
def sweep_sessions(self, cycle: str) -> Dict[str, Any]:
    """
    Enqueue one cycle task per active session.

    A failure to enqueue one session does not stop the others.
    """
    from gatewise.services.gate_service import gate_service

    task = CYCLE_TASKS[cycle]

    db = get_db_session()
    try:
        session_ids = gate_service.active_session_ids(db)
    finally:
        db.close()

    enqueued, failed = [], []
    for session_id in session_ids:
        try:
            task.delay(session_id)
            enqueued.append(session_id)
        except Exception as e:
            logger.error(f"Could not enqueue {cycle} cycle for session {session_id}: {e}")
            failed.append(session_id)

    logger.info(f"{cycle} sweep: enqueued {len(enqueued)} sessions, {len(failed)} failed")
    return {"cycle": cycle, "enqueued": enqueued, "failed": failed}
