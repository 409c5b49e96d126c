"""
Subscription cost normalization and payment schedule maintenance.
"""
from datetime import datetime
from decimal import Decimal

from app.models import Notification, Subscription
from app.services.subscription_service import SubscriptionScheduler, monthly_equivalent, roll_forward

NOW = datetime(2024, 3, 5, 6, 0)


def make_subscription(db, name, next_payment_date, frequency="monthly", end_date=None):
    subscription = Subscription(
        user_id="user-1",
        name=name,
        amount=Decimal("39.90"),
        currency="BRL",
        frequency=frequency,
        next_payment_date=next_payment_date,
        start_date=datetime(2023, 1, 1),
        end_date=end_date,
        is_active=True,
    )
    db.add(subscription)
    db.commit()
    return subscription


def test_monthly_equivalent_per_frequency():
    assert monthly_equivalent(Decimal("120"), "yearly") == Decimal("10.00")
    assert monthly_equivalent(Decimal("12"), "weekly") == Decimal("52.00")
    assert monthly_equivalent(Decimal("1"), "daily") == Decimal("30.44")
    assert monthly_equivalent(Decimal("39.90"), "monthly") == Decimal("39.90")


def test_roll_forward_keeps_clamped_month_end():
    assert roll_forward(datetime(2024, 1, 31), "monthly", datetime(2024, 4, 15)) == datetime(2024, 4, 29)
    assert roll_forward(datetime(2024, 5, 1), "monthly", datetime(2024, 4, 15)) == datetime(2024, 5, 1)


def test_advance_rolls_reminds_and_deactivates(db, user, publisher):
    overdue = make_subscription(db, "Streaming", datetime(2024, 1, 10))
    due_soon = make_subscription(db, "Gym", datetime(2024, 3, 7))
    ended = make_subscription(db, "Magazine", datetime(2024, 1, 15), end_date=datetime(2024, 2, 1))

    result = SubscriptionScheduler(db).advance(NOW)

    assert result == {"advanced": 2, "deactivated": 1, "reminders": 1, "failed": 0}
    db.refresh(overdue)
    db.refresh(due_soon)
    db.refresh(ended)
    assert overdue.next_payment_date == datetime(2024, 3, 10)
    assert overdue.is_active is True
    assert ended.is_active is False
    assert due_soon.metadata_ == {"last_reminder_for": "2024-03-07"}

    reminder = db.query(Notification).filter(Notification.category == "subscription").one()
    assert reminder.type == "warning"
    assert "Gym" in reminder.message
    assert publisher.events[0][1] == "user-1"


def test_reminder_is_sent_once_per_due_date(db, user):
    make_subscription(db, "Gym", datetime(2024, 3, 7))
    scheduler = SubscriptionScheduler(db)

    scheduler.advance(NOW)
    second = scheduler.advance(NOW)

    assert second["reminders"] == 0
    assert db.query(Notification).count() == 1
