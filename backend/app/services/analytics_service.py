"""
Analytics over a user's ledger: period summaries, grouped totals, cash flow
and period comparisons.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd
from sqlalchemy.orm import Session

from app.models import Account, Category, Goal, Subscription, Transaction

logger = logging.getLogger(__name__)

PERIODS = (
    "last_7_days",
    "last_30_days",
    "last_90_days",
    "last_year",
    "current_month",
    "current_year",
    "custom",
)
GROUP_BY = ("day", "week", "month", "quarter", "year")

ZERO = Decimal("0")
CENT = Decimal("0.01")


class PeriodError(ValueError):
    """Raised for an unknown period or an invalid custom range."""


@dataclass
class DateRange:
    start: datetime
    end: datetime
    # Previous periods stop just before the range that follows them.
    include_end: bool = True

    @property
    def days(self) -> int:
        return max((self.end - self.start).days, 1)

    def previous(self) -> "DateRange":
        span = self.end - self.start
        return DateRange(start=self.start - span, end=self.start, include_end=False)


def resolve_period(
    period: str = "last_30_days",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DateRange:
    """Translate a period preset (or custom bounds) into a date range."""
    now = now or datetime.utcnow()
    if period == "custom":
        if not start_date or not end_date:
            raise PeriodError("Custom period requires start_date and end_date")
        if start_date >= end_date:
            raise PeriodError("start_date must be before end_date")
        return DateRange(start=start_date, end=end_date)

    if period == "last_7_days":
        return DateRange(start=now - timedelta(days=7), end=now)
    if period == "last_30_days":
        return DateRange(start=now - timedelta(days=30), end=now)
    if period == "last_90_days":
        return DateRange(start=now - timedelta(days=90), end=now)
    if period == "last_year":
        return DateRange(start=now - timedelta(days=365), end=now)
    if period == "current_month":
        return DateRange(start=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), end=now)
    if period == "current_year":
        return DateRange(start=now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0), end=now)
    raise PeriodError(f"Unsupported period: {period}")


def period_key(value: datetime, group_by: str) -> str:
    if group_by == "day":
        return value.strftime("%Y-%m-%d")
    if group_by == "week":
        year, week, _ = value.isocalendar()
        return f"{year}-W{week:02d}"
    if group_by == "month":
        return value.strftime("%Y-%m")
    if group_by == "quarter":
        return f"{value.year}-Q{(value.month - 1) // 3 + 1}"
    if group_by == "year":
        return str(value.year)
    raise PeriodError(f"Unsupported group_by: {group_by}")


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def to_money(value) -> Decimal:
    return Decimal(str(round(float(value), 2))).quantize(CENT)


def ledger_totals(transactions: Iterable[Transaction]) -> Dict[str, Decimal]:
    income = ZERO
    expenses = ZERO
    count = 0
    for tx in transactions:
        count += 1
        if tx.type == "income":
            income += Decimal(tx.amount)
        elif tx.type == "expense":
            expenses += Decimal(tx.amount)
    return {"income": income, "expenses": expenses, "net": income - expenses, "count": count}


def _percent_change(current: Decimal, previous: Decimal) -> Optional[float]:
    if not previous:
        return None
    return round(float((current - previous) / previous * 100), 2)


class AnalyticsService:
    """Read-only aggregates for reports and dashboards."""

    def __init__(self, db: Session):
        self.db = db

    def transactions_in_range(
        self,
        user_id: str,
        date_range: DateRange,
        account_ids: Optional[Sequence] = None,
        category_ids: Optional[Sequence] = None,
        types: Optional[Sequence[str]] = None,
    ) -> List[Transaction]:
        query = self.db.query(Transaction).filter(
            Transaction.user_id == user_id,
            Transaction.date >= date_range.start,
        )
        if date_range.include_end:
            query = query.filter(Transaction.date <= date_range.end)
        else:
            query = query.filter(Transaction.date < date_range.end)
        if account_ids:
            query = query.filter(Transaction.account_id.in_(account_ids))
        if category_ids:
            query = query.filter(Transaction.category_id.in_(category_ids))
        if types:
            query = query.filter(Transaction.type.in_(types))
        return query.order_by(Transaction.date.asc()).all()

    def _category_names(self, category_ids: Iterable) -> Dict:
        ids = {cid for cid in category_ids if cid}
        if not ids:
            return {}
        rows = self.db.query(Category.id, Category.name).filter(Category.id.in_(ids)).all()
        return {row.id: row.name for row in rows}

    def category_breakdown(self, transactions: Sequence[Transaction]) -> List[Dict]:
        """Expense totals per category, with share of total expenses."""
        buckets: Dict = {}
        for tx in transactions:
            if tx.type != "expense":
                continue
            bucket = buckets.setdefault(tx.category_id, {"amount": ZERO, "count": 0})
            bucket["amount"] += Decimal(tx.amount)
            bucket["count"] += 1

        total = sum((b["amount"] for b in buckets.values()), ZERO)
        names = self._category_names(buckets.keys())
        breakdown = [
            {
                "category_id": category_id,
                "category_name": names.get(category_id, "Uncategorized") if category_id else "Uncategorized",
                "amount": bucket["amount"],
                "count": bucket["count"],
                "percentage": round(float(bucket["amount"] / total * 100), 2) if total else 0.0,
            }
            for category_id, bucket in buckets.items()
        ]
        return sorted(breakdown, key=lambda item: item["amount"], reverse=True)

    def financial_summary(
        self,
        user_id: str,
        date_range: DateRange,
        account_ids: Optional[Sequence] = None,
        category_ids: Optional[Sequence] = None,
        types: Optional[Sequence[str]] = None,
    ) -> Dict:
        transactions = self.transactions_in_range(user_id, date_range, account_ids, category_ids, types)
        totals = ledger_totals(transactions)

        expenses = [tx for tx in transactions if tx.type == "expense"]
        incomes = [tx for tx in transactions if tx.type == "income"]
        largest_expense = max(expenses, key=lambda tx: tx.amount, default=None)
        largest_income = max(incomes, key=lambda tx: tx.amount, default=None)

        accounts_query = self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.is_active == True,  # noqa: E712
        )
        if account_ids:
            accounts_query = accounts_query.filter(Account.id.in_(account_ids))
        accounts = accounts_query.all()

        per_account: Dict = {}
        for tx in transactions:
            if tx.account_id:
                per_account.setdefault(tx.account_id, []).append(tx)

        account_summary = []
        for account in accounts:
            account_totals = ledger_totals(per_account.get(account.id, []))
            account_summary.append({
                "account_id": account.id,
                "account_name": account.name,
                "account_type": account.type,
                "balance": account.balance,
                "currency": account.currency,
                "income": account_totals["income"],
                "expenses": account_totals["expenses"],
                "transaction_count": account_totals["count"],
            })

        count = totals["count"]
        return {
            "period": {"start_date": date_range.start, "end_date": date_range.end},
            "total_income": totals["income"],
            "total_expenses": totals["expenses"],
            "net_income": totals["net"],
            "balance": sum((Decimal(a.balance or 0) for a in accounts), ZERO),
            "transaction_count": count,
            "average_transaction": (
                (totals["income"] + totals["expenses"]) / count if count else ZERO
            ).quantize(Decimal("0.01")),
            "largest_expense": self._brief(largest_expense),
            "largest_income": self._brief(largest_income),
            "category_breakdown": self.category_breakdown(transactions),
            "account_summary": account_summary,
        }

    @staticmethod
    def _brief(tx: Optional[Transaction]) -> Optional[Dict]:
        if tx is None:
            return None
        return {"id": tx.id, "description": tx.description, "amount": tx.amount, "date": tx.date}

    def transactions_by_period(self, user_id: str, date_range: DateRange, group_by: str = "month") -> List[Dict]:
        if group_by not in GROUP_BY:
            raise PeriodError(f"Unsupported group_by: {group_by}")
        buckets: Dict[str, List[Transaction]] = {}
        for tx in self.transactions_in_range(user_id, date_range):
            buckets.setdefault(period_key(tx.date, group_by), []).append(tx)

        result = []
        for key in sorted(buckets):
            totals = ledger_totals(buckets[key])
            result.append({
                "period": key,
                "income": totals["income"],
                "expenses": totals["expenses"],
                "net": totals["net"],
                "count": totals["count"],
            })
        return result

    def monthly_frame(self, user_id: str, start: datetime, end: datetime) -> pd.DataFrame:
        """
        Income, expenses and transaction count per calendar month in [start, end).

        The frame is indexed by month start and includes months without
        transactions.
        """
        months = pd.date_range(start=month_start(start), end=end, freq="MS", inclusive="left")
        rows = self.db.query(Transaction.date, Transaction.type, Transaction.amount).filter(
            Transaction.user_id == user_id,
            Transaction.date >= start,
            Transaction.date < end,
        ).all()
        if not rows:
            return pd.DataFrame({"income": 0.0, "expenses": 0.0, "count": 0}, index=months)

        df = pd.DataFrame([tuple(row) for row in rows], columns=["date", "type", "amount"])
        df["amount"] = df["amount"].astype(float)
        df = df.set_index(pd.to_datetime(df["date"]))
        monthly = pd.DataFrame({
            "income": df["amount"].where(df["type"] == "income", 0.0),
            "expenses": df["amount"].where(df["type"] == "expense", 0.0),
            "count": 1,
        }).resample("MS").sum()
        return monthly.reindex(months, fill_value=0)

    def monthly_totals(self, user_id: str, start: datetime, end: datetime) -> List[Dict]:
        """Income/expenses per calendar month in [start, end), including empty months."""
        frame = self.monthly_frame(user_id, start, end)
        return [
            {
                "month": month.strftime("%Y-%m"),
                "year": month.year,
                "month_number": month.month,
                "income": to_money(row["income"]),
                "expenses": to_money(row["expenses"]),
                "count": int(row["count"]),
            }
            for month, row in frame.iterrows()
        ]

    def cash_flow(self, user_id: str, months: int = 12, now: Optional[datetime] = None) -> List[Dict]:
        now = now or datetime.utcnow()
        first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        start = first_of_month
        for _ in range(months - 1):
            start = (start - timedelta(days=1)).replace(day=1)
        end = (first_of_month + timedelta(days=32)).replace(day=1)

        cumulative = ZERO
        result = []
        for bucket in self.monthly_totals(user_id, start, end):
            net = bucket["income"] - bucket["expenses"]
            cumulative += net
            result.append({
                "month": bucket["month"],
                "income": bucket["income"],
                "expenses": bucket["expenses"],
                "net": net,
                "cumulative_net": cumulative,
            })
        return result

    def comparison(self, user_id: str, date_range: DateRange) -> Dict:
        previous_range = date_range.previous()
        current_tx = self.transactions_in_range(user_id, date_range)
        previous_tx = self.transactions_in_range(user_id, previous_range)
        current = ledger_totals(current_tx)
        previous = ledger_totals(previous_tx)

        current_categories = {c["category_id"]: c for c in self.category_breakdown(current_tx)}
        previous_categories = {c["category_id"]: c for c in self.category_breakdown(previous_tx)}
        category_changes = []
        for category_id in set(current_categories) | set(previous_categories):
            now_item = current_categories.get(category_id)
            before_item = previous_categories.get(category_id)
            now_amount = now_item["amount"] if now_item else ZERO
            before_amount = before_item["amount"] if before_item else ZERO
            category_changes.append({
                "category_id": category_id,
                "category_name": (now_item or before_item)["category_name"],
                "current_amount": now_amount,
                "previous_amount": before_amount,
                "change": now_amount - before_amount,
                "change_percentage": _percent_change(now_amount, before_amount),
            })
        category_changes.sort(key=lambda item: abs(item["change"]), reverse=True)

        return {
            "current_period": {"start_date": date_range.start, "end_date": date_range.end, **current},
            "previous_period": {"start_date": previous_range.start, "end_date": previous_range.end, **previous},
            "changes": {
                "income": _percent_change(current["income"], previous["income"]),
                "expenses": _percent_change(current["expenses"], previous["expenses"]),
                "net": _percent_change(current["net"], previous["net"]),
            },
            "category_changes": category_changes,
        }

    def dashboard(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        now = now or datetime.utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month = resolve_period("current_month", now=now)
        month_totals = ledger_totals(self.transactions_in_range(user_id, month))

        accounts = self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.is_active == True,  # noqa: E712
        ).all()
        recent = self.db.query(Transaction).filter(
            Transaction.user_id == user_id
        ).order_by(Transaction.date.desc()).limit(5).all()
        active_goals = self.db.query(Goal).filter(
            Goal.user_id == user_id,
            Goal.is_active == True,  # noqa: E712
        ).count()
        upcoming = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.is_active == True,  # noqa: E712
            Subscription.next_payment_date >= today,
            Subscription.next_payment_date <= now + timedelta(days=7),
        ).order_by(Subscription.next_payment_date.asc()).all()

        return {
            "total_balance": sum((Decimal(a.balance or 0) for a in accounts), ZERO),
            "account_count": len(accounts),
            "month_income": month_totals["income"],
            "month_expenses": month_totals["expenses"],
            "month_net": month_totals["net"],
            "recent_transactions": [self._brief(tx) for tx in recent],
            "active_goals": active_goals,
            "upcoming_subscriptions": [
                {
                    "id": sub.id,
                    "name": sub.name,
                    "amount": sub.amount,
                    "currency": sub.currency,
                    "next_payment_date": sub.next_payment_date,
                }
                for sub in upcoming
            ],
        }
