"""
Transaction anomaly scoring, risk score and anomaly alerts.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pandas as pd

from app.models import Account, Notification, Transaction
from app.services.anomaly_service import AnomalyDetectionService, BehaviorProfile, build_profile
from app.services.notification_service import NotificationService

NOW = datetime(2024, 6, 10, 12, 0)

# Monday 2024-06-10, 03:00
UNUSUAL = {
    "type": "expense",
    "amount": Decimal("5000"),
    "description": "Luxury Store",
    "date": datetime(2024, 6, 10, 3, 0),
    "location": "Lisbon",
}


def add_history(db):
    for day in range(1, 11):
        db.add(Transaction(
            user_id="user-1",
            type="expense",
            amount=Decimal("40") if day % 2 else Decimal("60"),
            description="Market weekly",
            location="Sao Paulo",
            date=datetime(2024, 5, day, 12, 0),
        ))
    db.commit()


def test_profile_defaults_without_history():
    profile = build_profile(pd.DataFrame(columns=["date", "amount", "description", "location"]))

    assert profile == BehaviorProfile()


def test_profile_from_history(db, user):
    add_history(db)

    profile = AnomalyDetectionService(db).profile("user-1", now=NOW)

    assert profile.average_amount == 50.0
    assert profile.std_dev == 10.0
    assert profile.common_merchants == ["MARKET"]
    assert profile.common_locations == ["Sao Paulo"]
    assert profile.typical_hours == [12]
    assert profile.transaction_count == 10


def test_unusual_transaction_raises_critical_alert(db, user, publisher):
    add_history(db)

    result = AnomalyDetectionService(db).analyze("user-1", dict(UNUSUAL), now=NOW)
    db.commit()

    assert result["is_anomaly"] is True
    assert result["severity"] == "critical"
    assert result["anomaly_type"] == "pattern"
    assert result["risk_score"] == 93
    assert "Transaction completely outside your normal behaviour" in result["reasons"]
    assert "Consider verifying this transaction with your bank" in result["recommendations"]

    alert = db.query(Notification).filter(Notification.id == result["alert_id"]).one()
    assert alert.category == "anomaly"
    assert alert.type == "error"
    assert alert.data["severity"] == "critical"
    assert alert.data["transaction"]["amount"] == 5000.0
    assert publisher.events[0][0] == "notification"


def test_ordinary_transaction_is_not_flagged(db, user):
    add_history(db)
    candidate = {
        "type": "expense",
        "amount": Decimal("55"),
        "description": "Market",
        "date": datetime(2024, 6, 10, 12, 0),
        "location": "Sao Paulo",
    }

    result = AnomalyDetectionService(db).analyze("user-1", candidate, now=NOW)

    assert result["is_anomaly"] is False
    assert result["severity"] == "low"
    assert result["reasons"] == []
    assert result["alert_id"] is None
    assert db.query(Notification).count() == 0


def test_burst_of_transactions_counts_towards_velocity(db, user):
    add_history(db)
    when = datetime(2024, 6, 10, 12, 0)
    for minute in range(11):
        db.add(Transaction(
            user_id="user-1", type="expense", amount=Decimal("45"), description="Market",
            location="Sao Paulo", date=when - timedelta(minutes=minute * 5),
        ))
    db.commit()

    service = AnomalyDetectionService(db)
    features = service.extract_features(
        "user-1", {"amount": Decimal("45"), "description": "Market", "date": when}, service.profile("user-1", NOW)
    )

    assert features.recent_count == 11
    assert features.hours_since_last == 0.0
    assert features.merchant == "MARKET"


def test_risk_score_components(db, user):
    add_history(db)
    db.add(Transaction(
        user_id="user-1", type="expense", amount=Decimal("500"), description="Hotel night",
        location="Lisbon", date=datetime(2024, 6, 8, 23, 30),
    ))
    db.add(Transaction(
        user_id="user-1", type="expense", amount=Decimal("50"), description="Market",
        location="Sao Paulo", date=datetime(2024, 6, 9, 12, 0),
    ))
    db.add(Account(user_id="user-1", name="Checking", type="checking", last_sync_at=None))
    db.add(Account(user_id="user-1", name="Card", type="credit_card", last_sync_at=datetime(2024, 5, 1)))
    db.commit()

    risk = AnomalyDetectionService(db).risk_score("user-1", now=NOW)

    assert risk == {
        "transaction_risk": 15,
        "behavior_risk": 46,
        "account_risk": 35,
        "time_risk": 50,
        "location_risk": 0,
        "overall_risk": 28,
    }


def test_risk_score_for_new_user(db, user):
    risk = AnomalyDetectionService(db).risk_score("user-1", now=NOW)

    assert risk["overall_risk"] == 10
    assert risk["behavior_risk"] == 50


def analyze(client, **overrides):
    payload = {
        "type": "expense",
        "amount": "5000",
        "description": "Luxury Store",
        "date": "2024-06-10T03:00:00",
        "location": "Lisbon",
    }
    payload.update(overrides)
    response = client.post("/api/anomaly-detection/analyze-transaction", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_alert_lifecycle(client, user, other_user_headers):
    result = analyze(client)
    assert result["is_anomaly"] is True
    assert result["severity"] == "critical"

    alerts = client.get("/api/anomaly-detection/alerts").json()
    assert [a["id"] for a in alerts] == [result["alert_id"]]
    assert alerts[0]["is_acknowledged"] is False
    assert client.get("/api/anomaly-detection/alerts", headers=other_user_headers).json() == []

    url = f"/api/anomaly-detection/alerts/{result['alert_id']}/acknowledge"
    assert client.post(url, headers=other_user_headers).status_code == 404
    acknowledged = client.post(url)
    assert acknowledged.status_code == 200
    assert acknowledged.json()["is_acknowledged"] is True
    assert acknowledged.json()["acknowledged_at"] is not None

    assert client.get("/api/anomaly-detection/alerts").json() == []
    history = client.get("/api/anomaly-detection/anomalies?severity=critical").json()
    assert history["total"] == 1
    assert history["data"][0]["is_acknowledged"] is True
    assert client.get("/api/anomaly-detection/anomalies?severity=low").json()["total"] == 0


def test_other_notifications_cannot_be_acknowledged_as_alerts(client, db, user):
    notification = NotificationService(db).notify("user-1", title="Hello", message="Hi")
    db.commit()

    response = client.post(f"/api/anomaly-detection/alerts/{notification.id}/acknowledge")

    assert response.status_code == 404


def test_analyze_rejects_non_positive_amount(client):
    response = client.post("/api/anomaly-detection/analyze-transaction", json={
        "type": "expense", "amount": "0", "description": "Nothing", "date": "2024-06-10T03:00:00",
    })
    assert response.status_code == 422


def test_risk_score_endpoint(client):
    response = client.get("/api/anomaly-detection/risk-score")

    assert response.status_code == 200
    assert set(response.json()) == {
        "transaction_risk", "behavior_risk", "account_risk", "time_risk", "location_risk", "overall_risk",
    }
