"""Celery tasks that materialize recurring transactions."""

import logging
from typing import Optional

from celery_app import celery_app
from app.database import SessionLocal
from app.services.recurring_queue import RecurringJobTracker
from app.services.recurring_service import RecurringTransactionService

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


def _backoff_seconds(retries: int) -> int:
    return 2 * 2 ** retries


def _job_id(task) -> str:
    return str(task.request.id or task.name)


@celery_app.task(bind=True, max_retries=MAX_RETRIES, name="tasks.recurring_tasks.process_recurring_transactions")
def process_recurring_transactions(self) -> dict:
    """Process every due recurring transaction."""
    logger.info("[RECURRING] Starting recurring transactions run")
    tracker = RecurringJobTracker()
    db = SessionLocal()
    try:
        result = RecurringTransactionService(db).process_all_due()
        tracker.record_completed(_job_id(self))
        return result
    except Exception as exc:
        logger.exception("[RECURRING] Recurring transactions run failed: %s", exc)
        if self.request.retries >= self.max_retries:
            tracker.record_failed(_job_id(self))
            raise
        raise self.retry(exc=exc, countdown=_backoff_seconds(self.request.retries))
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=MAX_RETRIES, name="tasks.recurring_tasks.process_single_recurring")
def process_single_recurring(self, transaction_id: str) -> dict:
    """Process one recurring transaction by id."""
    logger.info(f"[RECURRING] Processing recurring transaction {transaction_id}")
    tracker = RecurringJobTracker()
    db = SessionLocal()
    try:
        created = RecurringTransactionService(db).process_by_id(transaction_id)
        tracker.record_completed(_job_id(self))
        return {"transaction_id": transaction_id, "created": created}
    except LookupError as exc:
        # Deleted or cancelled in the meantime; retrying cannot help.
        logger.warning(f"[RECURRING] {exc}")
        tracker.record_failed(_job_id(self))
        return {"transaction_id": transaction_id, "created": 0, "skipped": True}
    except Exception as exc:
        logger.exception("[RECURRING] Failed to process %s: %s", transaction_id, exc)
        if self.request.retries >= self.max_retries:
            tracker.record_failed(_job_id(self))
            raise
        raise self.retry(exc=exc, countdown=_backoff_seconds(self.request.retries))
    finally:
        db.close()


@celery_app.task(bind=True, name="tasks.recurring_tasks.cleanup_job_history")
def cleanup_job_history(self, now: Optional[float] = None) -> dict:
    """Remove old completed and failed job records."""
    removed = RecurringJobTracker().cleanup(now)
    logger.info(
        f"[RECURRING] Cleaned up job history: {removed['completed']} completed, {removed['failed']} failed"
    )
    return removed
