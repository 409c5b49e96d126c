"""
Recurring transaction endpoints and job enqueueing.
"""
from datetime import datetime
from types import SimpleNamespace
from uuid import UUID

import pytest
import redis

import app.routes.recurring as recurring_routes
import tasks.recurring_tasks as recurring_tasks
from app.models import Transaction
from app.services.recurring_queue import RecurringJobTracker
from app.services.recurring_service import RecurringTransactionService


@pytest.fixture
def enqueued(monkeypatch):
    calls = []

    def fake_apply_async(args=None, **options):
        calls.append({"args": args, **options})
        return SimpleNamespace(id=f"job-{len(calls)}")

    monkeypatch.setattr(recurring_tasks.process_recurring_transactions, "apply_async", fake_apply_async)
    monkeypatch.setattr(recurring_tasks.process_single_recurring, "apply_async", fake_apply_async)
    return calls


def create_recurring(client, rule=None, **overrides):
    payload = {
        "type": "expense",
        "amount": "1500",
        "description": "Rent",
        "date": "2024-01-31T09:00:00",
        "is_recurring": True,
        "recurring_rule": rule or {"frequency": "monthly", "interval": 1},
    }
    payload.update(overrides)
    response = client.post("/api/transactions/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_creating_recurring_transaction_sets_next_date(client):
    tx = create_recurring(client)
    assert tx["recurring_rule"]["next_date"].startswith("2024-02-29T09:00:00")

    listing = client.get("/api/recurring/").json()
    assert len(listing) == 1
    assert listing[0]["next_date"].startswith("2024-02-29")
    assert listing[0]["is_active"] is True
    assert listing[0]["occurrence_count"] == 0


def test_preview_follows_clamped_dates_and_end_date(client):
    tx = create_recurring(client, rule={"frequency": "monthly", "end_date": "2024-04-15T00:00:00"})

    preview = client.get(f"/api/recurring/{tx['id']}/preview?count=5").json()
    assert [d[:10] for d in preview["dates"]] == ["2024-02-29", "2024-03-29"]


def test_invalid_rules_are_rejected(client):
    base = {"type": "expense", "amount": "10", "description": "Gym", "date": "2024-01-01T00:00:00", "is_recurring": True}
    assert client.post("/api/transactions/", json={**base, "recurring_rule": {"frequency": "hourly"}}).status_code == 422
    assert client.post(
        "/api/transactions/", json={**base, "recurring_rule": {"frequency": "weekly", "interval": 0}}
    ).status_code == 422


def test_update_rule_recomputes_next_date(client):
    tx = create_recurring(client)

    response = client.patch(f"/api/recurring/{tx['id']}", json={
        "recurring_rule": {"frequency": "weekly", "interval": 2},
        "amount": "1600",
    })
    assert response.status_code == 200
    body = response.json()
    assert body["next_date"].startswith("2024-02-14")
    assert body["recurring_rule"]["frequency"] == "weekly"


def test_cancel_keeps_row_but_stops_schedule(client):
    tx = create_recurring(client)

    assert client.delete(f"/api/recurring/{tx['id']}").status_code == 204
    assert client.get("/api/recurring/").json() == []
    assert client.get(f"/api/recurring/{tx['id']}/preview").status_code == 404
    assert client.get(f"/api/transactions/{tx['id']}").json()["is_recurring"] is False


def test_recurring_endpoints_are_private(client, other_user_headers, enqueued):
    tx = create_recurring(client)

    assert client.get(f"/api/recurring/{tx['id']}/occurrences", headers=other_user_headers).status_code == 404
    assert client.post(f"/api/recurring/{tx['id']}/process", headers=other_user_headers).status_code == 404
    assert enqueued == []


def test_manual_processing_is_enqueued(client, enqueued):
    tx = create_recurring(client)

    response = client.post(f"/api/recurring/{tx['id']}/process?delay_seconds=30")
    assert response.status_code == 202
    assert response.json() == {"task_id": "job-1"}
    assert enqueued[0]["args"] == [tx["id"]]
    assert enqueued[0]["countdown"] == 30
    assert enqueued[0]["queue"] == "recurring"

    response = client.post("/api/recurring/process")
    assert response.status_code == 202
    assert response.json() == {"task_id": "job-2"}


def test_plain_transactions_are_not_recurring(client):
    tx = client.post("/api/transactions/", json={
        "type": "expense", "amount": "10", "description": "Once", "date": "2024-01-01T00:00:00",
    }).json()
    assert client.get(f"/api/recurring/{tx['id']}/occurrences").status_code == 404


def child_dates(db, parent_id):
    rows = db.query(Transaction.date).filter(Transaction.parent_transaction_id == UUID(parent_id)).all()
    return sorted(row[0] for row in rows)


def test_rule_update_does_not_regenerate_recorded_occurrences(client, db, user):
    tx = create_recurring(client, date="2024-01-10T00:00:00")
    RecurringTransactionService(db).process_all_due(now=datetime(2024, 4, 15))

    response = client.patch(f"/api/recurring/{tx['id']}", json={
        "recurring_rule": {"frequency": "monthly", "interval": 1, "end_date": "2025-01-01T00:00:00"},
    })
    assert response.status_code == 200
    assert response.json()["next_date"].startswith("2024-05-10")

    db.expire_all()
    RecurringTransactionService(db).process_all_due(now=datetime(2024, 4, 15))

    assert child_dates(db, tx["id"]) == [datetime(2024, 2, 10), datetime(2024, 3, 10), datetime(2024, 4, 10)]


def test_new_cadence_starts_after_last_occurrence(client, db, user):
    tx = create_recurring(client, date="2024-01-10T00:00:00")
    RecurringTransactionService(db).process_all_due(now=datetime(2024, 4, 15))

    response = client.patch(f"/api/transactions/{tx['id']}", json={
        "recurring_rule": {"frequency": "weekly", "interval": 1},
    })
    assert response.status_code == 200
    assert response.json()["recurring_rule"]["next_date"].startswith("2024-04-17")

    db.expire_all()
    RecurringTransactionService(db).process_all_due(now=datetime(2024, 4, 30))

    assert child_dates(db, tx["id"])[2:] == [datetime(2024, 4, 10), datetime(2024, 4, 17), datetime(2024, 4, 24)]


class UnreachableRedis:
    def llen(self, key):
        raise redis.ConnectionError("connection refused")

    zcard = llen


def test_queue_stats(client, monkeypatch):
    monkeypatch.setattr(recurring_routes, "RecurringJobTracker", lambda: SimpleNamespace(stats=lambda: {
        "waiting": 2, "active": 1, "completed": 7, "failed": 0, "delayed": 3,
    }))

    response = client.get("/api/recurring/queue/stats")

    assert response.status_code == 200
    assert response.json() == {"waiting": 2, "active": 1, "completed": 7, "failed": 0, "delayed": 3}


def test_queue_stats_report_zeroes_when_backends_are_down(client, monkeypatch):
    def down_tracker():
        def inspect(timeout):
            raise ConnectionError("no broker")

        tracker = RecurringJobTracker(celery=SimpleNamespace(control=SimpleNamespace(inspect=inspect)))
        tracker._redis = UnreachableRedis()
        return tracker

    monkeypatch.setattr(recurring_routes, "RecurringJobTracker", down_tracker)

    response = client.get("/api/recurring/queue/stats")

    assert response.status_code == 200
    assert response.json() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
