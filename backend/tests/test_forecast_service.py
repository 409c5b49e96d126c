"""
Trend fitting, anomaly detection and the monthly forecast.
"""
from datetime import datetime
from decimal import Decimal

import pandas as pd
import pytest

from app.models import Category, Transaction
from app.services.analytics_service import AnalyticsService
from app.services.forecast_service import (
    ForecastService,
    InsufficientDataError,
    detect_anomalies,
    fit_trend,
    growth_rate,
    trend_direction,
)

NOW = datetime(2024, 10, 15)


def test_fit_trend_on_a_straight_line():
    slope, intercept = fit_trend([1.0, 2.0, 3.0, 4.0])
    assert slope == pytest.approx(1.0)
    assert intercept == pytest.approx(1.0)


def test_trend_direction_uses_relative_slope():
    assert trend_direction([100, 120, 140, 160]) == "increasing"
    assert trend_direction([160, 140, 120, 100]) == "decreasing"
    assert trend_direction([100, 101, 100, 101]) == "stable"
    assert growth_rate([42]) == 0.0


def test_detect_anomalies_flags_spikes():
    history = [{"month": f"2024-{m:02d}", "expenses": 100} for m in range(1, 11)]
    history.append({"month": "2024-11", "expenses": 1000})

    anomalies = detect_anomalies(history)

    assert len(anomalies) == 1
    assert anomalies[0]["month"] == "2024-11"
    assert anomalies[0]["type"] == "spike"
    assert anomalies[0]["severity"] == "high"


def test_detect_anomalies_ignores_flat_history():
    history = [{"month": f"2024-{m:02d}", "expenses": 100} for m in range(1, 7)]
    assert detect_anomalies(history) == []


def seed_history(db, months):
    groceries = Category(user_id="user-1", name="Groceries")
    db.add(groceries)
    db.flush()
    for index, month in enumerate(months):
        db.add(Transaction(
            user_id="user-1", type="income", amount=Decimal("6000"),
            description="Salary", date=datetime(2024, month, 5),
        ))
        db.add(Transaction(
            user_id="user-1", type="expense", amount=Decimal(3000 + index * 300),
            description="Living costs", date=datetime(2024, month, 10),
            category_id=groceries.id,
        ))
    db.commit()


def test_forecast_requires_six_months_of_history(db, user):
    seed_history(db, [6, 7, 8, 9])
    with pytest.raises(InsufficientDataError):
        ForecastService(db).forecast("user-1", now=NOW)


def test_forecast_extends_the_linear_trend(db, user):
    seed_history(db, [2, 3, 4, 5, 6, 7, 8, 9])

    result = ForecastService(db).forecast("user-1", months=3, now=NOW)

    assert result["history_months"] == 8
    months = [p["month"] for p in result["spending_predictions"]]
    assert months == ["2024-10", "2024-11", "2024-12"]
    first = result["spending_predictions"][0]
    assert first["predicted_amount"] == pytest.approx(5400.0)
    assert first["lower_bound"] == pytest.approx(first["predicted_amount"])
    assert result["spending_predictions"][0]["confidence"] > result["spending_predictions"][2]["confidence"]
    assert result["income_predictions"][0]["predicted_amount"] == pytest.approx(6000.0)
    assert result["summary"]["spending_trend"] == "increasing"
    assert result["summary"]["income_trend"] == "stable"

    assert len(result["category_forecasts"]) == 1
    assert result["category_forecasts"][0]["category_name"] == "Groceries"
    assert result["category_forecasts"][0]["trend"] == "increasing"


def test_monthly_frame_fills_months_without_transactions(db, user):
    seed_history(db, [2, 3, 5])

    frame = AnalyticsService(db).monthly_frame("user-1", datetime(2024, 1, 15), datetime(2024, 6, 1))

    assert [month.strftime("%Y-%m") for month in frame.index] == ["2024-01", "2024-02", "2024-03", "2024-04", "2024-05"]
    assert frame.loc[pd.Timestamp(2024, 4, 1), "count"] == 0
    assert frame.loc[pd.Timestamp(2024, 4, 1), "expenses"] == 0.0
    assert frame.loc[pd.Timestamp(2024, 5, 1), "expenses"] == 3600.0
    assert frame["income"].sum() == 18000.0
