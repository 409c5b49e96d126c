"""Celery tasks for investment quote refreshes."""

import logging
from typing import Optional

from celery_app import celery_app
from app.database import SessionLocal
from app.services.portfolio_service import PortfolioService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, name="tasks.investment_tasks.refresh_investment_quotes")
def refresh_investment_quotes(self, user_id: Optional[str] = None):
    """
    Fetch fresh quotes and update current_price.

    Args:
        user_id: Restrict the refresh to one user's investments
    """
    scope = f"user {user_id}" if user_id else "all users"
    logger.info(f"[QUOTES] Refreshing investment quotes for {scope}")
    db = SessionLocal()
    service = PortfolioService(db)
    try:
        return service.refresh_prices(user_id)
    except Exception as e:
        db.rollback()
        logger.error(f"[QUOTES] Quote refresh failed for {scope}: {e}")
        raise self.retry(exc=e, countdown=300)
    finally:
        service.close()
        db.close()
