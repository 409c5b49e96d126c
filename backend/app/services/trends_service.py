"""
Long-range trend reports: monthly history with projections, and spending
patterns by weekday, calendar month and category.
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy.orm import Session

from app.models import Category, Transaction
from app.services.analytics_service import AnalyticsService, DateRange, month_start
from app.services.forecast_service import growth_rate

logger = logging.getLogger(__name__)

TREND_THRESHOLD = 0.05
CATEGORY_CHANGE_THRESHOLD = 10.0
MIN_PROJECTION_MONTHS = 3
MIN_CATEGORY_MONTHS = 3
SEASONAL_MONTHS = 24
PATTERN_MONTHS = 12


def trend_label(rate: float) -> str:
    if rate > TREND_THRESHOLD:
        return "positive"
    if rate < -TREND_THRESHOLD:
        return "negative"
    return "stable"


def seasonal_pattern(income: float, expenses: float) -> str:
    ratio = income / expenses if expenses > 0 else 0.0
    if ratio > 1.2:
        return "high-savings"
    if ratio > 0.9:
        return "balanced"
    if ratio > 0.7:
        return "moderate-spending"
    return "high-spending"


def half_split_change(values: pd.Series) -> float:
    """Percent change between the mean of the later half and the earlier half."""
    middle = len(values) // 2
    first = float(values.iloc[:middle].mean())
    second = float(values.iloc[middle:].mean())
    if first <= 0:
        return 0.0
    return (second - first) / first * 100


def _month_frame_rows(frame: pd.DataFrame) -> List[Dict]:
    cumulative = 0.0
    rows = []
    for month, row in frame.iterrows():
        net = float(row["income"]) - float(row["expenses"])
        cumulative += net
        rows.append({
            "month": month.strftime("%Y-%m"),
            "income": round(float(row["income"]), 2),
            "expenses": round(float(row["expenses"]), 2),
            "net": round(net, 2),
            "balance": round(cumulative, 2),
            "transaction_count": int(row["count"]),
        })
    return rows


class TrendsService:
    def __init__(self, db: Session):
        self.db = db
        self.analytics = AnalyticsService(db)

    def _months_with_data(self, user_id: str, start: datetime, end: datetime) -> pd.DataFrame:
        # monthly_frame excludes its end bound.
        frame = self.analytics.monthly_frame(user_id, start, end + timedelta(microseconds=1))
        return frame[frame["count"] > 0]

    def trend_analysis(
        self,
        user_id: str,
        date_range: DateRange,
        months_ahead: int = 6,
        now: Optional[datetime] = None,
    ) -> Dict:
        """
        Monthly history for the range, income and expense trends, projections
        for the coming months and seasonal patterns from the last two years.

        Projections need at least MIN_PROJECTION_MONTHS months with data.
        """
        now = now or datetime.utcnow()
        history = self._months_with_data(user_id, date_range.start, date_range.end)
        incomes = history["income"].to_numpy()
        expenses = history["expenses"].to_numpy()
        income_rate = growth_rate(incomes)
        expense_rate = growth_rate(expenses)

        projections = []
        if len(history) >= MIN_PROJECTION_MONTHS:
            last_income = float(incomes[-1])
            last_expenses = float(expenses[-1])
            future = pd.date_range(history.index[-1], periods=months_ahead + 1, freq="MS")[1:]
            for step, month in enumerate(future, start=1):
                income = last_income * (1 + income_rate) ** step
                spending = last_expenses * (1 + expense_rate) ** step
                projections.append({
                    "month": month.strftime("%Y-%m"),
                    "projected_income": round(income, 2),
                    "projected_expenses": round(spending, 2),
                    "projected_net": round(income - spending, 2),
                    "confidence": round(max(0.3, 1 - step * 0.1), 2),
                })

        logger.info(f"Trend analysis for user {user_id}: {len(history)} months, {len(projections)} projected")
        return {
            "historical_data": _month_frame_rows(history),
            "trends": {
                "income_trend": trend_label(income_rate),
                "expense_trend": trend_label(expense_rate),
                "income_growth_rate": round(income_rate * 100, 2),
                "expense_growth_rate": round(expense_rate * 100, 2),
            },
            "projections": projections,
            "seasonal_patterns": self.seasonal_patterns(user_id, now),
        }

    def seasonal_patterns(self, user_id: str, now: datetime) -> List[Dict]:
        start = (pd.Timestamp(month_start(now)) - pd.DateOffset(months=SEASONAL_MONTHS)).to_pydatetime()
        history = self._months_with_data(user_id, start, now)
        if history.empty:
            return []

        by_month = history.groupby(history.index.month)[["income", "expenses"]].mean()
        return [
            {
                "month": calendar.month_name[int(month)],
                "average_income": round(float(row["income"]), 2),
                "average_expenses": round(float(row["expenses"]), 2),
                "pattern": seasonal_pattern(float(row["income"]), float(row["expenses"])),
            }
            for month, row in by_month.iterrows()
        ]

    def _expenses(self, user_id: str, start: datetime, end: datetime) -> pd.DataFrame:
        rows = self.db.query(Transaction.date, Transaction.amount, Transaction.category_id).filter(
            Transaction.user_id == user_id,
            Transaction.type == "expense",
            Transaction.date >= start,
            Transaction.date <= end,
        ).all()
        df = pd.DataFrame([tuple(row) for row in rows], columns=["date", "amount", "category_id"])
        df["amount"] = df["amount"].astype(float)
        df["date"] = pd.to_datetime(df["date"])
        return df

    def spending_patterns(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        """
        Expense habits over the last twelve months.

        Category trends compare the two halves of each category's monthly
        series and are listed by the size of the change.
        """
        now = now or datetime.utcnow()
        start = (pd.Timestamp(now) - pd.DateOffset(months=PATTERN_MONTHS)).to_pydatetime()
        expenses = self._expenses(user_id, start, now)
        if expenses.empty:
            return {"daily_averages": [], "monthly_patterns": [], "category_trends": []}

        weekdays = expenses.groupby(expenses["date"].dt.dayofweek)["amount"].agg(["sum", "count", "mean"])
        daily_averages = [
            {
                "day": calendar.day_name[int(day)],
                "total": round(float(row["sum"]), 2),
                "transaction_count": int(row["count"]),
                "average": round(float(row["mean"]), 2),
            }
            for day, row in weekdays.iterrows()
        ]

        months = expenses.groupby(expenses["date"].dt.month)["amount"].agg(["sum", "count", "mean"])
        monthly_patterns = [
            {
                "month": calendar.month_name[int(month)],
                "total": round(float(row["sum"]), 2),
                "transaction_count": int(row["count"]),
                "average": round(float(row["mean"]), 2),
            }
            for month, row in months.iterrows()
        ]

        return {
            "daily_averages": daily_averages,
            "monthly_patterns": monthly_patterns,
            "category_trends": self._category_trends(expenses),
        }

    def _category_trends(self, expenses: pd.DataFrame) -> List[Dict]:
        categorized = expenses.dropna(subset=["category_id"])
        if categorized.empty:
            return []
        monthly = categorized.assign(
            month=categorized["date"].dt.to_period("M").dt.to_timestamp()
        ).pivot_table(index="month", columns="category_id", values="amount", aggfunc="sum")

        names = {
            row.id: row.name
            for row in self.db.query(Category.id, Category.name).filter(
                Category.id.in_(list(monthly.columns))
            ).all()
        }

        trends = []
        for category_id in monthly.columns:
            values = monthly[category_id].dropna()
            if len(values) < MIN_CATEGORY_MONTHS:
                continue
            change = half_split_change(values)
            if change > CATEGORY_CHANGE_THRESHOLD:
                direction = "increasing"
            elif change < -CATEGORY_CHANGE_THRESHOLD:
                direction = "decreasing"
            else:
                direction = "stable"
            trends.append({
                "category_id": category_id,
                "category_name": names.get(category_id, "Unknown"),
                "trend": direction,
                "change_percentage": round(change, 2),
                "monthly_average": round(float(values.mean()), 2),
                "months": len(values),
            })
        return sorted(trends, key=lambda t: abs(t["change_percentage"]), reverse=True)
