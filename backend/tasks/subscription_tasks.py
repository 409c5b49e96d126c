"""Celery tasks for subscription payment schedules."""

import logging

from celery_app import celery_app
from app.database import SessionLocal
from app.services.subscription_service import SubscriptionScheduler

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, name="tasks.subscription_tasks.advance_subscription_payments")
def advance_subscription_payments(self):
    """Roll next_payment_date forward and send upcoming payment reminders."""
    logger.info("[SUBSCRIPTIONS] Starting subscription schedule update")
    db = SessionLocal()
    try:
        return SubscriptionScheduler(db).advance()
    except Exception as e:
        logger.error(f"[SUBSCRIPTIONS] Subscription schedule update failed: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()
