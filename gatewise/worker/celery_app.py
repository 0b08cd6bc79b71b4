"""
Celery Application Configuration
"""
from celery import Celery
from gatewise.config import settings

# Create Celery app
celery_app = Celery(
    "gatewise_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "gatewise.worker.tasks"
    ]
)

# Producers in any thread resolve tasks against this app
celery_app.set_default()

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max
    task_soft_time_limit=540,  # 9 minutes soft limit
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=settings.CELERY_TASK_ALWAYS_EAGER,
)

# Task routing
celery_app.conf.task_routes = {
    "gatewise.worker.tasks.run_discovery_cycle": {"queue": "discovery"},
    "gatewise.worker.tasks.run_enforcement_cycle": {"queue": "enforcement"},
    "gatewise.worker.tasks.run_duplicate_detection": {"queue": "discovery"},
    "gatewise.worker.tasks.*": {"queue": "default"},
}

# Periodic sweeps fan out one task per active session
celery_app.conf.beat_schedule = {
    "gate-discovery-sweep": {
        "task": "gatewise.worker.tasks.sweep_sessions",
        "schedule": float(settings.DISCOVERY_SWEEP_INTERVAL_SEC),
        "args": ("discovery",),
    },
    "binding-enforcement-sweep": {
        "task": "gatewise.worker.tasks.sweep_sessions",
        "schedule": float(settings.ENFORCEMENT_SWEEP_INTERVAL_SEC),
        "args": ("enforcement",),
    },
    "duplicate-gate-sweep": {
        "task": "gatewise.worker.tasks.sweep_sessions",
        "schedule": float(settings.DUPLICATE_SWEEP_INTERVAL_SEC),
        "args": ("duplicates",),
    },
}
