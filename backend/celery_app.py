"""
Celery application configuration for scheduled tasks.
"""
import os
from celery import Celery
from celery.schedules import crontab

# Redis URL for broker and backend
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
RECURRING_QUEUE_NAME = os.getenv("RECURRING_QUEUE_NAME", "recurring")

# Create Celery app
celery_app = Celery(
    "finance_tasks",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "tasks.recurring_tasks",
        "tasks.goal_tasks",
        "tasks.investment_tasks",
        "tasks.subscription_tasks",
    ],
)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _build_beat_schedule() -> dict:
    schedule = {}

    if _env_bool("RECURRING_SCHEDULE_ENABLED", default=True):
        schedule["recurring-transactions-hourly"] = {
            "task": "tasks.recurring_tasks.process_recurring_transactions",
            "schedule": crontab(minute=0),
            "options": {"queue": RECURRING_QUEUE_NAME},
        }
        schedule["recurring-job-history-cleanup"] = {
            "task": "tasks.recurring_tasks.cleanup_job_history",
            "schedule": crontab(minute=0, hour=2),
            "options": {"queue": RECURRING_QUEUE_NAME},
        }

    schedule["subscriptions-advance-daily"] = {
        "task": "tasks.subscription_tasks.advance_subscription_payments",
        "schedule": crontab(minute=0, hour=1),
    }
    schedule["goals-progress-daily"] = {
        "task": "tasks.goal_tasks.update_all_goal_progress",
        "schedule": crontab(minute=0, hour=3),
    }
    schedule["investment-quotes-refresh"] = {
        "task": "tasks.investment_tasks.refresh_investment_quotes",
        "schedule": crontab(minute=0, hour="*/2"),
    }

    return schedule

# Celery configuration
celery_app.conf.update(
    # Task result settings
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=3600,  # 1 hour max per task
    task_soft_time_limit=3300,  # Soft limit at 55 minutes
    task_routes={
        "tasks.recurring_tasks.*": {"queue": RECURRING_QUEUE_NAME},
    },

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Beat schedule for periodic tasks
    beat_schedule=_build_beat_schedule(),
)

celery_app.autodiscover_tasks(["tasks"])


if __name__ == "__main__":
    celery_app.start()
