"""
Recurring transaction job queue helpers.

Jobs run on Celery with Redis as broker. Job outcomes are recorded in
Redis sorted sets (scored by completion time) so that queue statistics
and history cleanup do not depend on the result backend.
"""
import logging
import os
import time
from typing import Optional

import redis

logger = logging.getLogger(__name__)

COMPLETED_KEY = "recurring_jobs:completed"
FAILED_KEY = "recurring_jobs:failed"
COMPLETED_RETENTION_SECONDS = 24 * 60 * 60
FAILED_RETENTION_SECONDS = 7 * 24 * 60 * 60


def get_queue_name() -> str:
    return os.getenv("RECURRING_QUEUE_NAME", "recurring")


def _routing_key(task: dict) -> Optional[str]:
    return (task.get("delivery_info") or {}).get("routing_key")


class RecurringJobTracker:
    """Records job outcomes and reports waiting/active/completed/failed/delayed counts."""

    def __init__(self, redis_url: Optional[str] = None, celery=None):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._redis: Optional[redis.Redis] = None
        self._celery = celery

    @property
    def redis(self) -> redis.Redis:
        """Lazy-load Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    @property
    def celery(self):
        if self._celery is None:
            from celery_app import celery_app
            self._celery = celery_app
        return self._celery

    def record_completed(self, job_id: str, now: Optional[float] = None) -> None:
        self._record(COMPLETED_KEY, job_id, now)

    def record_failed(self, job_id: str, now: Optional[float] = None) -> None:
        self._record(FAILED_KEY, job_id, now)

    def _record(self, key: str, job_id: str, now: Optional[float]) -> None:
        try:
            self.redis.zadd(key, {job_id: now if now is not None else time.time()})
        except redis.RedisError as e:
            logger.warning(f"[RECURRING] Could not record job {job_id} in {key}: {e}")

    def cleanup(self, now: Optional[float] = None) -> dict:
        """
        Drop completed jobs older than 24h and failed jobs older than 7 days.

        Returns:
            Number of removed records per outcome
        """
        now = now if now is not None else time.time()
        removed_completed = self.redis.zremrangebyscore(
            COMPLETED_KEY, "-inf", now - COMPLETED_RETENTION_SECONDS
        )
        removed_failed = self.redis.zremrangebyscore(
            FAILED_KEY, "-inf", now - FAILED_RETENTION_SECONDS
        )
        return {"completed": removed_completed, "failed": removed_failed}

    def _inspect_counts(self) -> tuple[int, int]:
        """Active and delayed (ETA/countdown) recurring jobs reported by workers."""
        try:
            inspector = self.celery.control.inspect(timeout=1.0)
            active = inspector.active() or {}
            scheduled = inspector.scheduled() or {}
        except Exception as e:
            logger.warning(f"[RECURRING] Worker inspection failed: {e}")
            return 0, 0
        queue = get_queue_name()
        return (
            sum(1 for tasks in active.values() for task in tasks if _routing_key(task) == queue),
            # Scheduled entries wrap the task request.
            sum(1 for tasks in scheduled.values() for entry in tasks
                if _routing_key(entry.get("request") or {}) == queue),
        )

    def stats(self) -> dict:
        waiting = completed = failed = 0
        try:
            waiting = self.redis.llen(get_queue_name())
            completed = self.redis.zcard(COMPLETED_KEY)
            failed = self.redis.zcard(FAILED_KEY)
        except redis.RedisError as e:
            logger.warning(f"[RECURRING] Could not read queue stats from Redis: {e}")

        active, delayed = self._inspect_counts()
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }
