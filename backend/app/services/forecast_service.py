"""
Spending and income forecasting from monthly history.

Each series is modelled as a least-squares linear trend plus a seasonal
offset (mean residual for the calendar month, used only when that month
has been observed at least twice). Prediction bounds are +/- 1.96 standard
errors of the remaining residuals.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from app.models import Category, Transaction
from app.services.analytics_service import AnalyticsService, month_start

logger = logging.getLogger(__name__)

HISTORY_MONTHS = 24
MIN_MONTHS_WITH_DATA = 6
ANOMALY_Z_THRESHOLD = 2.5
HIGH_SEVERITY_Z = 3.0
TREND_THRESHOLD = 0.05
MIN_CATEGORY_MONTHS = 3


class InsufficientDataError(ValueError):
    """Raised when there is not enough history to forecast."""


def fit_trend(values: Sequence[float]) -> tuple[float, float]:
    """Return (slope, intercept) of the least-squares line over x = 0..n-1."""
    if len(values) < 2:
        return 0.0, float(values[0]) if len(values) else 0.0
    slope, intercept = np.polyfit(np.arange(len(values)), np.asarray(values, dtype=float), 1)
    return float(slope), float(intercept)


def growth_rate(values: Sequence[float]) -> float:
    """Trend slope relative to the series mean."""
    if len(values) < 2:
        return 0.0
    slope, _ = fit_trend(values)
    mean = float(np.mean(values))
    return slope / mean if mean > 0 else 0.0


def trend_direction(values: Sequence[float]) -> str:
    rate = growth_rate(values)
    if rate > TREND_THRESHOLD:
        return "increasing"
    if rate < -TREND_THRESHOLD:
        return "decreasing"
    return "stable"


def volatility(values: Sequence[float]) -> float:
    """Standard deviation of month-over-month relative changes."""
    series = pd.Series(values, dtype=float)
    previous = series.shift(1)
    changes = ((series - previous) / previous)[previous > 0]
    if len(changes) < 2:
        return 0.0
    return float(changes.std(ddof=0))


def seasonal_offsets(residuals: pd.Series) -> Dict[int, float]:
    """Mean residual per calendar month seen at least twice. `residuals` is indexed by month start."""
    grouped = residuals.groupby(residuals.index.month).agg(["mean", "count"])
    return {int(month): float(row["mean"]) for month, row in grouped.iterrows() if row["count"] >= 2}


def predict_series(
    series: pd.Series,
    steps: int,
    min_confidence: float,
    confidence_decay: float,
) -> List[Dict]:
    """Project a month-start indexed series `steps` months past its last entry."""
    slope, intercept = fit_trend(series.to_numpy())
    positions = np.arange(len(series))
    trend = pd.Series(intercept + slope * positions, index=series.index)
    seasonal = seasonal_offsets(series - trend)

    residuals = series - trend - series.index.month.map(lambda m: seasonal.get(m, 0.0)).to_numpy()
    standard_error = float(residuals.std(ddof=0)) if len(residuals) > 1 else 0.0

    future = pd.date_range(series.index[-1], periods=steps + 1, freq="MS")[1:]
    predictions = []
    for step, month in enumerate(future, start=1):
        trend_value = intercept + slope * (len(series) - 1 + step)
        predicted = max(0.0, trend_value + seasonal.get(month.month, 0.0))
        predictions.append({
            "month": month.strftime("%Y-%m"),
            "predicted_amount": round(predicted, 2),
            "lower_bound": round(max(0.0, predicted - 1.96 * standard_error), 2),
            "upper_bound": round(predicted + 1.96 * standard_error, 2),
            "confidence": round(max(min_confidence, 1 - step * confidence_decay), 2),
        })
    return predictions


def detect_anomalies(history: Sequence[Dict], field: str = "expenses") -> List[Dict]:
    """Months whose `field` lies more than ANOMALY_Z_THRESHOLD deviations from the mean."""
    if len(history) < 2:
        return []
    frame = pd.DataFrame(list(history))
    values = frame[field].astype(float)
    mean = values.mean()
    std_dev = values.std(ddof=0)
    if std_dev == 0:
        return []

    frame["value"] = values
    frame["z_score"] = ((values - mean) / std_dev).abs()
    flagged = frame[frame["z_score"] > ANOMALY_Z_THRESHOLD]

    anomalies = [
        {
            "month": row["month"],
            "actual_amount": round(row["value"], 2),
            "expected_amount": round(mean, 2),
            "deviation": round(row["value"] - mean, 2),
            "z_score": round(row["z_score"], 2),
            "severity": "high" if row["z_score"] > HIGH_SEVERITY_Z else "medium",
            "type": "spike" if row["value"] > mean else "drop",
        }
        for _, row in flagged.iterrows()
    ]
    return sorted(anomalies, key=lambda a: a["month"], reverse=True)


class ForecastService:
    """Builds forecasts from the user's monthly transaction history."""

    def __init__(self, db: Session):
        self.db = db
        self.analytics = AnalyticsService(db)

    def _history(self, user_id: str, now: datetime) -> pd.DataFrame:
        end = month_start(now)
        start = (pd.Timestamp(end) - pd.DateOffset(months=HISTORY_MONTHS)).to_pydatetime()
        history = self.analytics.monthly_frame(user_id, start, end)

        # Leading months before the first recorded transaction are not history.
        active = history.index[history["count"] > 0]
        if active.empty:
            return history.iloc[0:0]
        return history.loc[active[0]:]

    def _category_forecasts(self, user_id: str, history: pd.DataFrame) -> List[Dict]:
        if history.empty:
            return []
        start = history.index[0].to_pydatetime()
        end = (history.index[-1] + pd.DateOffset(months=1)).to_pydatetime()

        rows = self.db.query(Transaction.category_id, Transaction.date, Transaction.amount).filter(
            Transaction.user_id == user_id,
            Transaction.type == "expense",
            Transaction.category_id.isnot(None),
            Transaction.date >= start,
            Transaction.date < end,
        ).all()
        if not rows:
            return []

        df = pd.DataFrame([tuple(row) for row in rows], columns=["category_id", "date", "amount"])
        df["amount"] = df["amount"].astype(float)
        df["month"] = pd.to_datetime(df["date"]).dt.to_period("M").dt.to_timestamp()
        by_category = df.pivot_table(
            index="month", columns="category_id", values="amount", aggfunc="sum", fill_value=0.0
        ).reindex(history.index, fill_value=0.0)

        names = {
            row.id: row.name
            for row in self.db.query(Category.id, Category.name).filter(
                Category.id.in_(list(by_category.columns))
            ).all()
        }

        forecasts = []
        for category_id in by_category.columns:
            values = by_category[category_id]
            if int((values > 0).sum()) < MIN_CATEGORY_MONTHS:
                continue
            slope, intercept = fit_trend(values.to_numpy())
            predicted = max(0.0, intercept + slope * len(values))
            average = float(values.mean())
            vol = volatility(values.to_numpy())
            forecasts.append({
                "category_id": category_id,
                "category_name": names.get(category_id, "Unknown"),
                "predicted_amount": round(predicted, 2),
                "historical_average": round(average, 2),
                "volatility": round(vol, 4),
                "confidence": round(max(0.2, 1 - vol), 2),
                "trend": trend_direction(values.to_numpy()),
                "recommended_budget": round(max(predicted, average) * (1 + vol * 0.5), 2),
            })
        return sorted(forecasts, key=lambda f: f["predicted_amount"], reverse=True)

    def forecast(self, user_id: str, months: int = 3, now: Optional[datetime] = None) -> Dict:
        """
        Raises:
            InsufficientDataError: With fewer than MIN_MONTHS_WITH_DATA months of history
        """
        now = now or datetime.utcnow()
        history = self._history(user_id, now)
        months_with_data = int((history["count"] > 0).sum())
        if months_with_data < MIN_MONTHS_WITH_DATA:
            raise InsufficientDataError(
                f"At least {MIN_MONTHS_WITH_DATA} months of transaction history are required for forecasting"
            )

        expenses = history["expenses"]
        incomes = history["income"]
        spending = predict_series(expenses, months, 0.3, 0.08)
        income = predict_series(incomes, months, 0.4, 0.06)

        predicted_spending = sum(p["predicted_amount"] for p in spending)
        predicted_income = sum(p["predicted_amount"] for p in income)
        insights = []
        spending_trend = trend_direction(expenses.to_numpy())
        if spending_trend == "increasing":
            insights.append("Your spending has been trending upward over recent months.")
        elif spending_trend == "decreasing":
            insights.append("Your spending has been trending downward over recent months.")
        if predicted_income > 0:
            savings_rate = (predicted_income - predicted_spending) / predicted_income
            if savings_rate < 0.1:
                insights.append("Consider increasing your savings rate. Aim for at least 10% of your income.")
            elif savings_rate > 0.2:
                insights.append("You are on track to save over 20% of your income.")

        monthly_expenses = [
            {"month": month.strftime("%Y-%m"), "expenses": value} for month, value in expenses.items()
        ]

        logger.info(f"Generated {months}-month forecast for user {user_id} from {len(history)} months")
        return {
            "generated_at": now,
            "history_months": len(history),
            "spending_predictions": spending,
            "income_predictions": income,
            "category_forecasts": self._category_forecasts(user_id, history),
            "anomalies": detect_anomalies(monthly_expenses),
            "summary": {
                "average_monthly_expenses": round(float(expenses.mean()), 2),
                "average_monthly_income": round(float(incomes.mean()), 2),
                "spending_trend": spending_trend,
                "income_trend": trend_direction(incomes.to_numpy()),
                "predicted_total_spending": round(predicted_spending, 2),
                "predicted_total_income": round(predicted_income, 2),
                "predicted_net": round(predicted_income - predicted_spending, 2),
            },
            "insights": insights,
        }
