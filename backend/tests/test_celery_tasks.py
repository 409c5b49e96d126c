"""
Background tasks run directly against the test database.
"""
import json
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

import tasks.goal_tasks as goal_tasks
import tasks.investment_tasks as investment_tasks
import tasks.recurring_tasks as recurring_tasks
import tasks.subscription_tasks as subscription_tasks
from app.models import Goal, Investment, Subscription, Transaction
from app.services.portfolio_service import PortfolioService
from app.services.quotes_service import QuoteError
from app.services.recurring_queue import COMPLETED_KEY, FAILED_KEY, RecurringJobTracker


class FakeTracker:
    def __init__(self):
        self.completed = []
        self.failed = []

    def record_completed(self, job_id, now=None):
        self.completed.append(job_id)

    def record_failed(self, job_id, now=None):
        self.failed.append(job_id)

    def cleanup(self, now=None):
        return {"completed": 3, "failed": 1}


class FakeQuotes:
    def __init__(self, prices):
        self.prices = prices
        self.closed = False

    def get_quote(self, symbol, investment_type):
        if symbol not in self.prices:
            raise QuoteError(f"No quote available for {symbol}")
        return {"symbol": symbol, "price": self.prices[symbol]}

    def close(self):
        self.closed = True


@pytest.fixture
def tracker(monkeypatch, session_factory):
    fake = FakeTracker()
    monkeypatch.setattr(recurring_tasks, "RecurringJobTracker", lambda: fake)
    for module in (recurring_tasks, goal_tasks, investment_tasks, subscription_tasks):
        monkeypatch.setattr(module, "SessionLocal", session_factory)
    return fake


def make_parent(db, rule, date=datetime(2024, 1, 1)):
    parent = Transaction(
        user_id="user-1",
        type="expense",
        amount=Decimal("80"),
        description="Internet",
        date=date,
        is_recurring=True,
        recurring_rule=json.dumps(rule),
    )
    db.add(parent)
    db.commit()
    return parent


def children_of(db, parent):
    return db.query(Transaction).filter(Transaction.parent_transaction_id == parent.id).all()


def test_process_single_recurring_creates_due_occurrences(db, user, tracker):
    parent = make_parent(db, {"frequency": "monthly", "end_date": "2024-03-15T00:00:00"})

    result = recurring_tasks.process_single_recurring(str(parent.id))

    assert result == {"transaction_id": str(parent.id), "created": 2}
    assert sorted(child.date for child in children_of(db, parent)) == [datetime(2024, 2, 1), datetime(2024, 3, 1)]
    assert len(tracker.completed) == 1


def test_process_single_recurring_skips_missing_parent(db, user, tracker):
    missing = str(uuid.uuid4())

    result = recurring_tasks.process_single_recurring(missing)

    assert result == {"transaction_id": missing, "created": 0, "skipped": True}
    assert len(tracker.failed) == 1
    assert tracker.completed == []


def test_process_recurring_transactions_runs_every_due_parent(db, user, tracker):
    first = make_parent(db, {"frequency": "weekly", "end_date": "2024-01-10T00:00:00"})
    second = make_parent(db, {"frequency": "daily", "end_date": "2024-01-03T00:00:00"})

    result = recurring_tasks.process_recurring_transactions()

    assert result == {"processed": 2, "failed": 0}
    assert len(children_of(db, first)) == 1
    assert len(children_of(db, second)) == 2


def test_cleanup_job_history(tracker):
    assert recurring_tasks.cleanup_job_history() == {"completed": 3, "failed": 1}


def test_update_all_goal_progress_completes_reached_goals(db, user, tracker, publisher):
    db.add(Investment(
        user_id="user-1",
        symbol="IVVB11",
        name="iShares S&P 500",
        type="etf",
        currency="BRL",
        quantity=Decimal("10"),
        average_price=Decimal("100"),
        current_price=Decimal("120"),
    ))
    goal = Goal(
        user_id="user-1",
        name="First thousand",
        type="investment",
        target_amount=Decimal("1000"),
        current_amount=Decimal("0"),
        is_active=True,
        last_milestone=0,
    )
    db.add(goal)
    db.commit()

    result = goal_tasks.update_all_goal_progress()

    assert result == {"updated": 1, "completed": 1, "failed": 0}
    db.refresh(goal)
    assert goal.is_active is False
    assert goal.completed_at is not None


def test_advance_subscription_payments(db, user, tracker):
    subscription = Subscription(
        user_id="user-1",
        name="Music",
        amount=Decimal("21.90"),
        currency="BRL",
        frequency="monthly",
        next_payment_date=datetime.utcnow() - timedelta(days=40),
        start_date=datetime.utcnow() - timedelta(days=400),
        is_active=True,
    )
    db.add(subscription)
    db.commit()

    result = subscription_tasks.advance_subscription_payments()

    assert result["advanced"] == 1
    assert result["failed"] == 0
    db.refresh(subscription)
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    assert subscription.next_payment_date >= today


def test_refresh_investment_quotes_for_one_user(db, user, tracker, monkeypatch):
    quotes = FakeQuotes({"PETR4": Decimal("38.50")})
    monkeypatch.setattr(investment_tasks, "PortfolioService", lambda session: PortfolioService(session, quotes=quotes))
    for user_id, symbol in (("user-1", "PETR4"), ("user-1", "GONE3"), ("user-2", "PETR4")):
        db.add(Investment(
            user_id=user_id,
            symbol=symbol,
            name=symbol,
            type="stock",
            currency="BRL",
            quantity=Decimal("1"),
            average_price=Decimal("30"),
        ))
    db.commit()

    result = investment_tasks.refresh_investment_quotes("user-1")

    assert result == {"updated": 1, "failed": 1}
    assert quotes.closed is True
    prices = {
        (inv.user_id, inv.symbol): inv.current_price
        for inv in db.query(Investment).all()
    }
    assert Decimal(str(prices[("user-1", "PETR4")])) == Decimal("38.50")
    assert prices[("user-2", "PETR4")] is None


class FakeRedis:
    def __init__(self, lists=None, sets=None):
        self.lists = lists or {}
        self.sets = sets or {}

    def llen(self, key):
        return self.lists.get(key, 0)

    def zcard(self, key):
        return len(self.sets.get(key, {}))


class FakeInspector:
    def active(self):
        return {"worker-1": [
            {"id": "a", "delivery_info": {"routing_key": "recurring"}},
            {"id": "b", "delivery_info": {"routing_key": "celery"}},
        ]}

    def scheduled(self):
        return {"worker-1": [
            {"eta": "2024-01-01T00:00:00", "request": {"id": "c", "delivery_info": {"routing_key": "recurring"}}},
            {"eta": "2024-01-01T00:00:00", "request": {"id": "d", "delivery_info": {"routing_key": "recurring"}}},
            {"eta": "2024-01-01T00:00:00", "request": {"id": "e", "delivery_info": {"routing_key": "celery"}}},
        ]}


def test_job_tracker_stats_count_only_the_recurring_queue():
    celery = SimpleNamespace(control=SimpleNamespace(inspect=lambda timeout: FakeInspector()))
    job_tracker = RecurringJobTracker(celery=celery)
    job_tracker._redis = FakeRedis(
        lists={"recurring": 4},
        sets={COMPLETED_KEY: {"j1": 1.0, "j2": 2.0}, FAILED_KEY: {"j3": 3.0}},
    )

    assert job_tracker.stats() == {"waiting": 4, "active": 1, "completed": 2, "failed": 1, "delayed": 2}


def test_job_tracker_stats_without_workers():
    celery = SimpleNamespace(control=SimpleNamespace(
        inspect=lambda timeout: SimpleNamespace(active=lambda: None, scheduled=lambda: None)
    ))
    job_tracker = RecurringJobTracker(celery=celery)
    job_tracker._redis = FakeRedis()

    assert job_tracker.stats() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
