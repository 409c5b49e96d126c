"""
Transaction report export (CSV and JSON).
"""
import csv
import io
import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Sequence

from sqlalchemy.orm import Session

from app.models import Account, Category, Transaction
from app.services.analytics_service import AnalyticsService, DateRange

EXPORT_FORMATS = ("csv", "json")

CSV_COLUMNS = [
    "date",
    "type",
    "description",
    "amount",
    "category",
    "account",
    "tags",
    "location",
]


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class ReportExportService:
    """Renders a transactions report for a date range."""

    def __init__(self, db: Session):
        self.db = db
        self.analytics = AnalyticsService(db)

    def _rows(self, user_id: str, transactions: Sequence[Transaction]) -> List[Dict]:
        category_ids = {tx.category_id for tx in transactions if tx.category_id}
        account_ids = {tx.account_id for tx in transactions if tx.account_id}
        categories = {}
        accounts = {}
        if category_ids:
            categories = dict(
                self.db.query(Category.id, Category.name).filter(Category.id.in_(category_ids)).all()
            )
        if account_ids:
            accounts = dict(
                self.db.query(Account.id, Account.name).filter(
                    Account.id.in_(account_ids),
                    Account.user_id == user_id,
                ).all()
            )

        return [
            {
                "date": tx.date.strftime("%Y-%m-%d"),
                "type": tx.type,
                "description": tx.description,
                "amount": f"{Decimal(tx.amount):.2f}",
                "category": categories.get(tx.category_id, ""),
                "account": accounts.get(tx.account_id, ""),
                "tags": ",".join(tx.tag_list),
                "location": tx.location or "",
            }
            for tx in transactions
        ]

    def render(self, user_id: str, date_range: DateRange, export_format: str = "csv") -> tuple[str, str, str]:
        """
        Returns:
            (content, media_type, filename)
        """
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {export_format}")

        transactions = self.analytics.transactions_in_range(user_id, date_range)
        rows = self._rows(user_id, transactions)
        stamp = f"{date_range.start:%Y%m%d}-{date_range.end:%Y%m%d}"

        if export_format == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            writer.writerows(rows)
            return buffer.getvalue(), "text/csv", f"transactions-{stamp}.csv"

        summary = self.analytics.financial_summary(user_id, date_range)
        payload = {
            "generated_at": datetime.utcnow(),
            "summary": {
                "total_income": summary["total_income"],
                "total_expenses": summary["total_expenses"],
                "net_income": summary["net_income"],
                "transaction_count": summary["transaction_count"],
                "category_breakdown": summary["category_breakdown"],
            },
            "transactions": rows,
        }
        return json.dumps(payload, default=_json_default, indent=2), "application/json", f"transactions-{stamp}.json"
