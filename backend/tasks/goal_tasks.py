"""Celery tasks for goal progress tracking."""

import logging

from celery_app import celery_app
from app.database import SessionLocal
from app.services.goal_service import GoalProgressService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, name="tasks.goal_tasks.update_all_goal_progress")
def update_all_goal_progress(self):
    """Recompute current_amount for every active goal and send milestone notifications."""
    logger.info("[GOALS] Starting daily goal progress update")
    db = SessionLocal()
    try:
        result = GoalProgressService(db).update_all_active()
        logger.info(
            f"[GOALS] Updated {result['updated']} goals, "
            f"{result['completed']} completed, {result['failed']} failed"
        )
        return result
    except Exception as e:
        logger.error(f"[GOALS] Goal progress update failed: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()
