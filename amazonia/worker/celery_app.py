"""
Celery Application Configuration
"""
from celery import Celery
from amazonia.config import settings

# Create Celery app
celery_app = Celery(
    "amazonia_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "amazonia.worker.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=270,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

# Task routing
celery_app.conf.task_routes = {
    "amazonia.worker.tasks.send_user_notification": {"queue": "notifications"},
    "amazonia.worker.tasks.reconcile_ledgers": {"queue": "audit"},
    "amazonia.worker.tasks.*": {"queue": "default"},
}

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "reconcile-amacoin-ledgers": {
        "task": "amazonia.worker.tasks.reconcile_ledgers",
        "schedule": 86400.0,  # Daily
    },
}
