"""
Recurring rule arithmetic and occurrence materialization.
"""
import json
from datetime import datetime
from decimal import Decimal

import pytest

from app.models import Notification, Transaction
from app.services.recurring_service import (
    MAX_OCCURRENCES_PER_RUN,
    RecurringRuleError,
    RecurringTransactionService,
    Rule,
    calculate_next_date,
    parse_rule,
    preview_dates,
)


def make_parent(db, user, rule, date=datetime(2024, 1, 1), description="Rent"):
    parent = Transaction(
        user_id=user.id,
        type="expense",
        amount=Decimal("1500.00"),
        description=description,
        date=date,
        tags=json.dumps(["home"]),
        is_recurring=True,
        recurring_rule=rule if isinstance(rule, str) else json.dumps(rule),
    )
    db.add(parent)
    db.commit()
    return parent


def test_monthly_step_clamps_to_month_end_and_keeps_clamped_day():
    rule = Rule(frequency="monthly", interval=1)
    feb = calculate_next_date(datetime(2024, 1, 31), rule)
    assert feb == datetime(2024, 2, 29)
    assert calculate_next_date(feb, rule) == datetime(2024, 3, 29)
    assert calculate_next_date(datetime(2023, 1, 31), rule) == datetime(2023, 2, 28)


def test_yearly_step_from_leap_day():
    rule = Rule(frequency="yearly", interval=1)
    assert calculate_next_date(datetime(2024, 2, 29), rule) == datetime(2025, 2, 28)


def test_daily_and_weekly_intervals():
    start = datetime(2024, 3, 1, 9, 30)
    assert calculate_next_date(start, Rule(frequency="daily", interval=3)) == datetime(2024, 3, 4, 9, 30)
    assert calculate_next_date(start, Rule(frequency="weekly", interval=2)) == datetime(2024, 3, 15, 9, 30)


@pytest.mark.parametrize("raw", [
    None,
    "",
    "not json",
    '["monthly"]',
    {"frequency": "hourly"},
    {"frequency": "monthly", "interval": 0},
    {"frequency": "monthly", "interval": 366},
    {"frequency": "monthly", "interval": True},
    {"frequency": "monthly", "end_date": "someday"},
])
def test_parse_rule_rejects_invalid_rules(raw):
    with pytest.raises(RecurringRuleError):
        parse_rule(raw)


def test_parse_rule_normalizes_aware_dates_to_naive_utc():
    rule = parse_rule({"frequency": "weekly", "end_date": "2024-06-01T12:00:00+02:00"})
    assert rule.interval == 1
    assert rule.end_date == datetime(2024, 6, 1, 10, 0)


def test_preview_dates_honors_end_date():
    rule = Rule(frequency="monthly", interval=1)
    assert preview_dates(datetime(2024, 1, 31), rule, 3) == [
        datetime(2024, 1, 31),
        datetime(2024, 2, 29),
        datetime(2024, 3, 29),
    ]

    rule.end_date = datetime(2024, 2, 29)
    assert preview_dates(datetime(2024, 1, 31), rule, 5) == [
        datetime(2024, 1, 31),
        datetime(2024, 2, 29),
    ]


def test_process_creates_every_missed_occurrence(db, user, publisher):
    parent = make_parent(db, user, {"frequency": "monthly", "interval": 1})
    service = RecurringTransactionService(db)

    created = service.process(parent, now=datetime(2024, 4, 15))
    db.commit()

    assert [child.date for child in created] == [
        datetime(2024, 2, 1),
        datetime(2024, 3, 1),
        datetime(2024, 4, 1),
    ]
    for child in created:
        assert child.parent_transaction_id == parent.id
        assert child.is_recurring is False
        assert child.amount == Decimal("1500.00")
        assert child.tag_list == ["home"]
        assert child.metadata_["generated_from"] == str(parent.id)

    assert parse_rule(parent.recurring_rule).next_date == datetime(2024, 5, 1)
    assert db.query(Notification).filter(Notification.category == "recurring").count() == 1
    assert publisher.events[0][0] == "notification"


def test_process_is_idempotent_for_the_same_moment(db, user):
    parent = make_parent(db, user, {"frequency": "monthly"})
    service = RecurringTransactionService(db)
    now = datetime(2024, 3, 10)

    assert len(service.process(parent, now=now)) == 2
    db.commit()
    assert service.process(parent, now=now) == []
    db.commit()

    assert db.query(Transaction).filter(Transaction.parent_transaction_id == parent.id).count() == 2


def test_process_stops_at_end_date(db, user):
    parent = make_parent(db, user, {"frequency": "monthly", "end_date": "2024-03-15T00:00:00"})
    service = RecurringTransactionService(db)

    created = service.process(parent, now=datetime(2024, 12, 31))
    db.commit()

    assert [child.date for child in created] == [datetime(2024, 2, 1), datetime(2024, 3, 1)]
    assert service.get_due(datetime(2025, 6, 1)) == []


def test_process_caps_occurrences_per_run(db, user):
    parent = make_parent(db, user, {"frequency": "daily"}, date=datetime(2020, 1, 1))
    service = RecurringTransactionService(db)

    created = service.process(parent, now=datetime(2024, 1, 1))
    db.commit()

    assert len(created) == MAX_OCCURRENCES_PER_RUN
    assert parse_rule(parent.recurring_rule).next_date == datetime(2021, 1, 2)


def test_process_all_due_skips_unreadable_rules(db, user):
    make_parent(db, user, {"frequency": "monthly"}, description="Rent")
    make_parent(db, user, '{"frequency": "hourly"}', description="Broken")
    make_parent(db, user, {"frequency": "monthly", "next_date": "2030-01-01T00:00:00"}, description="Later")

    result = RecurringTransactionService(db).process_all_due(now=datetime(2024, 2, 15))

    assert result == {"processed": 1, "failed": 0}
    children = db.query(Transaction).filter(Transaction.parent_transaction_id.isnot(None)).all()
    assert [child.description for child in children] == ["Rent"]


def test_process_by_id_requires_active_recurring_parent(db, user):
    parent = make_parent(db, user, {"frequency": "weekly"})
    service = RecurringTransactionService(db)

    assert service.process_by_id(parent.id, now=datetime(2024, 1, 20)) == 2

    parent.is_recurring = False
    db.commit()
    with pytest.raises(LookupError):
        service.process_by_id(parent.id, now=datetime(2024, 2, 20))
