import logging

from celery import Celery
from celery.schedules import crontab

from kfsync.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "kfsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.cron_timezone,
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


def crontab_from_expression(expression: str) -> crontab:
    """Build a celery crontab from a 5-field cron expression (m h dom mon dow)."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


# ─── Scheduled tasks ──────────────────────────
if settings.cron_enabled:
    celery_app.conf.beat_schedule = {
        "kashflow-sync": {
            "task": "kfsync.services.runs.run_scheduled_sync",
            "schedule": crontab_from_expression(settings.cron_schedule),
        },
    }
    logger.info("KashFlow sync scheduled: %s (%s)", settings.cron_schedule, settings.cron_timezone)
else:
    celery_app.conf.beat_schedule = {}

# Explicitly include task modules so the worker registers them on startup.
celery_app.conf.include = [
    "kfsync.services.runs",
]
