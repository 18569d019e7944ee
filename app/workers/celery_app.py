"""
Celery application configuration.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "foodbridge",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.workers.expiry_sweep",
        "app.workers.otp_email",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Expire posted/requested donations past their expiry date
    "donation-expiry-sweep": {
        "task": "app.workers.expiry_sweep.expire_stale_donations",
        "schedule": crontab(minute=f"*/{settings.expiry_sweep_minutes}"),
    },
}
