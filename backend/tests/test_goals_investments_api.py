"""
Goal and investment endpoints.
"""
from decimal import Decimal
from types import SimpleNamespace

import pytest

import app.services.portfolio_service as portfolio_service
import tasks.investment_tasks as investment_tasks
from app.services.portfolio_service import PortfolioService
from app.services.quotes_service import QuoteError, QuotesService


@pytest.fixture
def quoted(monkeypatch):
    monkeypatch.setattr(PortfolioService, "price_from_quote", lambda self, symbol, investment_type: Decimal("120"))


def create_investment(client, **overrides):
    payload = {
        "symbol": "aapl",
        "name": "Apple Inc.",
        "type": "stock",
        "quantity": "10",
        "average_price": "100",
        "sector": "Technology",
    }
    payload.update(overrides)
    response = client.post("/api/investments/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def create_goal(client, **overrides):
    payload = {
        "name": "Portfolio",
        "type": "investment",
        "target_amount": "2000",
        "target_date": "2099-01-01T00:00:00",
    }
    payload.update(overrides)
    response = client.post("/api/goals/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_goal_target_date_must_be_in_the_future(client):
    response = client.post("/api/goals/", json={
        "name": "Late", "type": "savings", "target_amount": "100", "target_date": "2001-01-01T00:00:00",
    })
    assert response.status_code == 400

    assert client.post("/api/goals/", json={"name": "Zero", "type": "savings", "target_amount": "0"}).status_code == 422


def test_goal_includes_progress(client):
    goal = create_goal(client, current_amount="500")

    assert goal["progress"]["progress_percentage"] == 25.0
    assert Decimal(goal["progress"]["remaining_amount"]) == Decimal("1500")
    assert goal["is_active"] is True


def test_update_progress_values_investments_and_notifies_milestones(client, quoted, publisher):
    create_investment(client)
    goal = create_goal(client)

    response = client.post(f"/api/goals/{goal['id']}/update-progress")
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["current_amount"]) == Decimal("1200")
    assert body["progress"]["progress_percentage"] == 60.0

    notifications = client.get("/api/notifications/").json()["data"]
    assert len(notifications) == 2

    # Milestones already reached are not sent again.
    client.post(f"/api/goals/{goal['id']}/update-progress")
    assert client.get("/api/notifications/").json()["meta"]["total"] == 2


def test_goal_insights_and_summary(client):
    goal = create_goal(client, current_amount="100")

    insights = client.get(f"/api/goals/{goal['id']}/insights").json()
    assert insights["goal_id"] == goal["id"]
    assert insights["progress"]["status"] in ("behind", "on_track", "ahead")

    summary = client.get("/api/goals/summary").json()
    assert summary["total_goals"] == 1
    assert summary["active_goals"] == 1
    assert Decimal(str(summary["total_target"])) == Decimal("2000")


def test_goals_are_private(client, other_user_headers):
    goal = create_goal(client)

    assert client.get(f"/api/goals/{goal['id']}", headers=other_user_headers).status_code == 404
    assert client.post(f"/api/goals/{goal['id']}/update-progress", headers=other_user_headers).status_code == 404
    assert client.get("/api/goals/", headers=other_user_headers).json() == []


def test_goal_update_and_delete(client):
    goal = create_goal(client)

    response = client.patch(f"/api/goals/{goal['id']}", json={"name": None, "target_amount": "4000"})
    assert response.status_code == 200
    assert response.json()["name"] == "Portfolio"
    assert Decimal(response.json()["target_amount"]) == Decimal("4000")

    assert client.patch(f"/api/goals/{goal['id']}", json={"target_date": "2001-01-01T00:00:00"}).status_code == 400
    assert client.delete(f"/api/goals/{goal['id']}").status_code == 204
    assert client.get(f"/api/goals/{goal['id']}").status_code == 404


def test_create_investment_records_initial_purchase(client, quoted):
    investment = create_investment(client)

    assert investment["symbol"] == "AAPL"
    assert investment["currency"] == "BRL"
    assert Decimal(investment["current_price"]) == Decimal("120")
    assert Decimal(investment["current_value"]) == Decimal("1200")
    assert Decimal(investment["gain_loss"]) == Decimal("200")
    assert investment["gain_loss_percentage"] == 20.0
    assert [t["type"] for t in investment["transactions"]] == ["buy"]

    duplicate = client.post("/api/investments/", json={
        "symbol": "AAPL", "name": "Apple", "type": "stock", "quantity": "1", "average_price": "1",
    })
    assert duplicate.status_code == 400


def test_investment_transactions_update_position(client, quoted):
    investment = create_investment(client)
    url = f"/api/investments/{investment['id']}/transactions"

    assert client.post(url, json={"type": "sell", "quantity": "20", "price": "130"}).status_code == 400

    response = client.post(url, json={"type": "sell", "quantity": "5", "price": "130"})
    assert response.status_code == 201

    detail = client.get(f"/api/investments/{investment['id']}").json()
    assert Decimal(detail["quantity"]) == Decimal("5")
    assert Decimal(detail["average_price"]) == Decimal("100")
    assert len(detail["transactions"]) == 2

    # History beyond the initial purchase blocks deletion.
    assert client.delete(f"/api/investments/{investment['id']}").status_code == 400


def test_investment_without_history_can_be_deleted(client, quoted, other_user_headers):
    investment = create_investment(client)

    assert client.delete(f"/api/investments/{investment['id']}", headers=other_user_headers).status_code == 404
    assert client.delete(f"/api/investments/{investment['id']}").status_code == 204
    assert client.get("/api/investments/").json() == []


def test_portfolio_summary_and_rebalance(client, quoted):
    create_investment(client)
    create_investment(client, symbol="BTC", name="Bitcoin", type="crypto", quantity="1", average_price="800")

    summary = client.get("/api/investments/portfolio/summary").json()
    assert summary["investment_count"] == 2
    assert Decimal(str(summary["total_value"])) == Decimal("1320")
    assert Decimal(str(summary["total_cost"])) == Decimal("1800")
    assert summary["holdings"][0]["symbol"] == "AAPL"

    bad = client.post("/api/investments/portfolio/rebalance", json={"target_allocation": {"stock": 50, "crypto": 10}})
    assert bad.status_code == 400

    plan = client.post(
        "/api/investments/portfolio/rebalance", json={"target_allocation": {"stock": 50, "crypto": 50}}
    ).json()
    actions = {r["type"]: r["action"] for r in plan["recommendations"]}
    assert actions == {"stock": "sell", "crypto": "buy"}


def test_quote_errors_are_bad_requests(client, monkeypatch):
    def failing_quote(self, symbol, investment_type="stock"):
        raise QuoteError(f"No quote for {symbol}")

    monkeypatch.setattr(QuotesService, "get_quote", failing_quote)

    response = client.get("/api/investments/quotes/NOPE")
    assert response.status_code == 400
    assert response.json()["detail"] == "No quote for NOPE"


def test_quote_refresh_is_enqueued(client, monkeypatch):
    calls = []

    def fake_delay(user_id):
        calls.append(user_id)
        return SimpleNamespace(id="quotes-1")

    monkeypatch.setattr(investment_tasks.refresh_investment_quotes, "delay", fake_delay)

    response = client.post("/api/investments/quotes/refresh")
    assert response.status_code == 202
    assert response.json() == {"task_id": "quotes-1"}
    assert calls == ["user-1"]


def test_create_investment_closes_quote_client(client, monkeypatch):
    opened = []

    class RecordingQuotes:
        def __init__(self):
            self.closed = False
            opened.append(self)

        def get_quote(self, symbol, investment_type):
            return {"symbol": symbol, "price": Decimal("95")}

        def close(self):
            self.closed = True

    monkeypatch.setattr(portfolio_service, "QuotesService", RecordingQuotes)

    investment = create_investment(client)

    assert Decimal(investment["current_price"]) == Decimal("95")
    assert len(opened) == 1
    assert opened[0].closed is True
