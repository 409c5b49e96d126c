"""
Subscription payment schedule maintenance.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from app.models import Subscription
from app.services.notification_service import NotificationService
from app.services.recurring_service import Rule, calculate_next_date

logger = logging.getLogger(__name__)

REMINDER_DAYS = 3
MAX_ADVANCE_STEPS = 1000

# Multipliers converting one payment into its monthly equivalent.
MONTHLY_FACTORS = {
    "daily": Decimal("30.44"),
    "weekly": Decimal("52") / Decimal("12"),
    "monthly": Decimal("1"),
    "yearly": Decimal("1") / Decimal("12"),
}


def monthly_equivalent(amount, frequency: str) -> Decimal:
    value = Decimal(amount or 0) * MONTHLY_FACTORS.get(frequency, Decimal("1"))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def roll_forward(next_payment_date: datetime, frequency: str, until: datetime) -> datetime:
    """Advance a payment date by its frequency until it is not before `until`."""
    rule = Rule(frequency=frequency, interval=1)
    steps = 0
    while next_payment_date < until and steps < MAX_ADVANCE_STEPS:
        next_payment_date = calculate_next_date(next_payment_date, rule)
        steps += 1
    return next_payment_date


class SubscriptionScheduler:
    """Keeps next_payment_date current and reminds users about upcoming payments."""

    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService(db)

    def _remind(self, subscription: Subscription) -> bool:
        # One reminder per payment date.
        due_key = subscription.next_payment_date.date().isoformat()
        metadata = dict(subscription.metadata_ or {})
        if metadata.get("last_reminder_for") == due_key:
            return False

        self.notifier.notify(
            subscription.user_id,
            title="Upcoming payment",
            message=(
                f"{subscription.name} ({subscription.amount} {subscription.currency}) "
                f"is due on {due_key}."
            ),
            notification_type="warning",
            category="subscription",
            link=f"/subscriptions/{subscription.id}",
            data={"subscription_id": str(subscription.id), "due_date": due_key},
        )
        metadata["last_reminder_for"] = due_key
        subscription.metadata_ = metadata
        return True

    def advance(self, now: Optional[datetime] = None) -> dict:
        """
        Roll past-due payment dates forward, deactivate ended subscriptions
        and send reminders for payments due within REMINDER_DAYS.

        Returns:
            {"advanced": n, "deactivated": n, "reminders": n, "failed": n}
        """
        now = now or datetime.utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        advanced = deactivated = reminders = failed = 0

        subscriptions = self.db.query(Subscription).filter(
            Subscription.is_active == True  # noqa: E712
        ).all()
        for subscription in subscriptions:
            try:
                if subscription.next_payment_date < today:
                    subscription.next_payment_date = roll_forward(
                        subscription.next_payment_date, subscription.frequency, today
                    )
                    advanced += 1

                if subscription.end_date and subscription.next_payment_date > subscription.end_date:
                    subscription.is_active = False
                    deactivated += 1
                elif subscription.next_payment_date <= today + timedelta(days=REMINDER_DAYS):
                    if self._remind(subscription):
                        reminders += 1

                self.db.commit()
            except Exception as e:
                self.db.rollback()
                failed += 1
                logger.error(f"[SUBSCRIPTIONS] Failed to update subscription {subscription.id}: {e}")

        logger.info(
            f"[SUBSCRIPTIONS] Advanced {advanced}, deactivated {deactivated}, "
            f"sent {reminders} reminders, {failed} failed"
        )
        return {"advanced": advanced, "deactivated": deactivated, "reminders": reminders, "failed": failed}
