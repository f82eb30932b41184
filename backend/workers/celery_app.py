"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "orderops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.payments", "workers.fulfillment"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.payments.*": {"queue": "payments"},
        "workers.fulfillment.*": {"queue": "fulfillment"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Orders with no gateway session yet are revisited on every run
        # until they resolve or age past the staleness window.
        "sweep-pending-payments": {
            "task": "workers.payments.sweep_pending_payments",
            "schedule": crontab(minute=f"*/{settings.payment_sweep_interval_minutes}"),
            "options": {"queue": "payments"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
