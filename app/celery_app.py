"""Celery application instance shared across the backend.

Start a worker with:
    celery -A app.celery_app worker -Q evaluation,escalation -l info --concurrency=2
and the orphan sweep with:
    celery -A app.celery_app beat -l info
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("noshow_backend", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds
celery_app.conf.enable_utc = True

celery_app.conf.task_routes = {
    "app.workers.escalation.evaluate": {"queue": "evaluation"},
    "app.workers.escalation.derisk": {"queue": "evaluation"},
    "app.workers.escalation.send_confirmation": {"queue": "evaluation"},
    "app.workers.escalation.fire_check": {"queue": "escalation"},
    "app.workers.escalation.sweep_orphans": {"queue": "escalation"},
}

# Beat schedule: re-issue read checks whose timers never arrived
celery_app.conf.beat_schedule = {
    "sweep-orphaned-read-checks": {
        "task": "app.workers.escalation.sweep_orphans",
        "schedule": settings.ORPHAN_SWEEP_INTERVAL_SECONDS,
    }
}

# --- Ensure tasks are registered ---
import app.workers.escalation  # noqa: E402,F401
