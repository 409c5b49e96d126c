from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from app.database import get_db
from app.models import Subscription
from app.db_helpers import get_or_create_user, get_owned_account, get_user_id, get_visible_category
from app.schemas import (
    Frequency,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionUpdate,
)
from app.services.subscription_service import monthly_equivalent

router = APIRouter()


def _get_owned_subscription(db: Session, subscription_id, user_id: str) -> Subscription:
    subscription = db.query(Subscription).filter(
        Subscription.id == subscription_id,
        Subscription.user_id == user_id
    ).first()
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


def _validate_subscription(db: Session, user_id: str, data: dict, current: Optional[Subscription] = None) -> None:
    if data.get("account_id"):
        get_owned_account(db, data["account_id"], user_id)
    if data.get("category_id"):
        get_visible_category(db, data["category_id"], user_id)

    start_date = data.get("start_date") or (current.start_date if current else None)
    end_date = data["end_date"] if "end_date" in data else (current.end_date if current else None)
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date cannot be before start_date")


@router.get("/", response_model=List[SubscriptionResponse])
def list_subscriptions(
    is_active: Optional[bool] = None,
    category_id: Optional[UUID] = None,
    account_id: Optional[UUID] = None,
    frequency: Optional[Frequency] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List subscriptions ordered by next payment date."""
    user_id = get_user_id(user_id)
    query = db.query(Subscription).filter(Subscription.user_id == user_id)
    if is_active is not None:
        query = query.filter(Subscription.is_active == is_active)
    if category_id:
        query = query.filter(Subscription.category_id == category_id)
    if account_id:
        query = query.filter(Subscription.account_id == account_id)
    if frequency:
        query = query.filter(Subscription.frequency == frequency)
    return query.order_by(Subscription.next_payment_date.asc()).all()


@router.get("/upcoming", response_model=List[SubscriptionResponse])
def list_upcoming_subscriptions(
    days: int = Query(30, ge=1, le=365),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Active subscriptions with a payment due in the next `days` days."""
    user_id = get_user_id(user_id)
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    until = today + timedelta(days=days + 1)
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.is_active == True,  # noqa: E712
        Subscription.next_payment_date >= today,
        Subscription.next_payment_date < until,
    ).order_by(Subscription.next_payment_date.asc()).all()


@router.get("/summary")
def get_subscriptions_summary(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Monthly-equivalent cost of active subscriptions per currency and category."""
    user_id = get_user_id(user_id)
    subscriptions = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.is_active == True,  # noqa: E712
    ).all()

    by_currency: Dict[str, Decimal] = {}
    by_category: Dict[str, Decimal] = {}
    by_frequency: Dict[str, int] = {}
    for subscription in subscriptions:
        monthly = monthly_equivalent(subscription.amount, subscription.frequency)
        by_currency[subscription.currency] = by_currency.get(subscription.currency, Decimal("0")) + monthly
        category_key = str(subscription.category_id) if subscription.category_id else "uncategorized"
        by_category[category_key] = by_category.get(category_key, Decimal("0")) + monthly
        by_frequency[subscription.frequency] = by_frequency.get(subscription.frequency, 0) + 1

    return {
        "active_count": len(subscriptions),
        "monthly_total_by_currency": by_currency,
        "yearly_total_by_currency": {currency: total * 12 for currency, total in by_currency.items()},
        "monthly_total_by_category": by_category,
        "count_by_frequency": by_frequency,
    }


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific subscription by ID."""
    user_id = get_user_id(user_id)
    return _get_owned_subscription(db, subscription_id, user_id)


@router.post("/", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    subscription: SubscriptionCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a new subscription."""
    user_id = get_user_id(user_id)
    get_or_create_user(db, user_id)

    subscription_data = subscription.model_dump()
    if subscription_data.get("start_date") is None:
        subscription_data["start_date"] = datetime.utcnow()
    _validate_subscription(db, user_id, subscription_data)

    subscription_data["metadata_"] = subscription_data.pop("metadata")
    subscription_data["currency"] = subscription_data["currency"].upper()
    subscription_data["user_id"] = user_id
    db_subscription = Subscription(**subscription_data)
    db.add(db_subscription)
    db.commit()
    db.refresh(db_subscription)
    return db_subscription


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
def update_subscription(
    subscription_id: UUID,
    updates: SubscriptionUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a subscription."""
    user_id = get_user_id(user_id)
    subscription = _get_owned_subscription(db, subscription_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    _validate_subscription(db, user_id, update_data, current=subscription)

    if "metadata" in update_data:
        subscription.metadata_ = update_data.pop("metadata")
    for field, value in update_data.items():
        if value is None and field in ("name", "amount", "currency", "frequency", "next_payment_date", "start_date", "is_active"):
            continue
        if field == "currency":
            value = value.upper()
        setattr(subscription, field, value)

    db.commit()
    db.refresh(subscription)
    return subscription


@router.delete("/{subscription_id}", status_code=204)
def delete_subscription(
    subscription_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete a subscription."""
    user_id = get_user_id(user_id)
    subscription = _get_owned_subscription(db, subscription_id, user_id)
    db.delete(subscription)
    db.commit()
    return None
