"""
System Router - Health checks and monitoring
"""
import logging
from datetime import datetime
from fastapi import APIRouter, Depends
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.dependencies import get_db

logger = logging.getLogger(__name__)
router = APIRouter()

CYCLE_QUEUES = ("discovery", "enforcement", "default")


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Health of the database, Redis broker and worker queues.
    Returns machine-readable JSON.
    """
    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    redis_status = "unhealthy"
    queue_depths = {}
    try:
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        r.ping()
        redis_status = "healthy"
        queue_depths = {queue: r.llen(queue) or 0 for queue in CYCLE_QUEUES}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")

    return {
        "database": database_status,
        "redis": redis_status,
        "worker_queue_depths": queue_depths,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
