from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID
import logging

from app.database import get_db
from app.db_helpers import get_user_id
from app.schemas import TransactionType
from app.services.analytics_service import AnalyticsService, DateRange, PeriodError, resolve_period
from app.services.forecast_service import ForecastService, InsufficientDataError
from app.services.report_export_service import ReportExportService
from app.services.trends_service import TrendsService

logger = logging.getLogger(__name__)

router = APIRouter()

Period = Literal[
    "last_7_days",
    "last_30_days",
    "last_90_days",
    "last_year",
    "current_month",
    "current_year",
    "custom",
]


def _resolve(period: str, start_date: Optional[datetime], end_date: Optional[datetime]) -> DateRange:
    try:
        return resolve_period(period, start_date, end_date)
    except PeriodError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/financial-summary")
def get_financial_summary(
    period: Period = "last_30_days",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    account_ids: Optional[List[UUID]] = Query(None),
    category_ids: Optional[List[UUID]] = Query(None),
    types: Optional[List[TransactionType]] = Query(None),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Income, expenses, balance and breakdowns for a period."""
    user_id = get_user_id(user_id)
    date_range = _resolve(period, start_date, end_date)
    return AnalyticsService(db).financial_summary(user_id, date_range, account_ids, category_ids, types)


@router.get("/transactions-by-period")
def get_transactions_by_period(
    group_by: Literal["day", "week", "month", "quarter", "year"] = "month",
    period: Period = "last_year",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Income and expenses grouped into day/week/month/quarter/year buckets."""
    user_id = get_user_id(user_id)
    date_range = _resolve(period, start_date, end_date)
    try:
        buckets = AnalyticsService(db).transactions_by_period(user_id, date_range, group_by)
    except PeriodError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"group_by": group_by, "periods": buckets}


@router.get("/cash-flow")
def get_cash_flow(
    months: int = Query(12, ge=1, le=60),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Monthly income, expenses, net and running cumulative net."""
    user_id = get_user_id(user_id)
    return {"months": AnalyticsService(db).cash_flow(user_id, months)}


@router.get("/comparison")
def get_period_comparison(
    period: Period = "current_month",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Compare a period with the preceding period of the same length."""
    user_id = get_user_id(user_id)
    date_range = _resolve(period, start_date, end_date)
    return AnalyticsService(db).comparison(user_id, date_range)


@router.get("/dashboard")
def get_dashboard(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Headline numbers for the home screen."""
    user_id = get_user_id(user_id)
    return AnalyticsService(db).dashboard(user_id)


@router.get("/forecast")
def get_forecast(
    months: int = Query(3, ge=1, le=12),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Spending and income forecast built from monthly history."""
    user_id = get_user_id(user_id)
    try:
        return ForecastService(db).forecast(user_id, months)
    except InsufficientDataError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/trends")
def get_trend_analysis(
    period: Period = "last_year",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    months_ahead: int = Query(6, ge=1, le=24),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Monthly history, income and expense trends, projections and seasonal patterns."""
    user_id = get_user_id(user_id)
    date_range = _resolve(period, start_date, end_date)
    return TrendsService(db).trend_analysis(user_id, date_range, months_ahead)


@router.get("/spending-patterns")
def get_spending_patterns(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Expense habits by weekday, calendar month and category over the last year."""
    user_id = get_user_id(user_id)
    return TrendsService(db).spending_patterns(user_id)


@router.get("/export")
def export_report(
    format: Literal["csv", "json"] = "csv",
    period: Period = "last_30_days",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Download the period's transactions as CSV or JSON."""
    user_id = get_user_id(user_id)
    date_range = _resolve(period, start_date, end_date)
    content, media_type, filename = ReportExportService(db).render(user_id, date_range, format)
    logger.info(f"Exported {format} report for user {user_id}")
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
