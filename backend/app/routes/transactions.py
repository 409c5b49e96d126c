from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy import func, or_
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID
import json
import logging
import math

from app.database import get_db
from app.models import Transaction
from app.db_helpers import get_or_create_user, get_owned_account, get_user_id, get_visible_category
from app.schemas import (
    BulkCategorizeRequest,
    BulkDeleteRequest,
    CategorySuggestionRequest,
    CategorySuggestionResponse,
    DuplicateCheckRequest,
    PaginationMeta,
    TransactionCreate,
    TransactionListResponse,
    TransactionResponse,
    TransactionType,
    TransactionUpdate,
)
from app.services.analytics_service import AnalyticsService, ledger_totals
from app.services.category_service import CategorySuggester
from app.services.recurring_service import (
    RecurringRuleError,
    RecurringTransactionService,
    carry_schedule,
    parse_rule,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount,
    "description": Transaction.description,
    "created_at": Transaction.created_at,
}


def _get_owned_transaction(db: Session, transaction_id, user_id: str) -> Transaction:
    transaction = db.query(Transaction).filter(
        Transaction.id == transaction_id,
        Transaction.user_id == user_id
    ).first()
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


def _validate_references(db: Session, user_id: str, account_id=None, category_id=None) -> None:
    if account_id is not None:
        get_owned_account(db, account_id, user_id)
    if category_id is not None:
        get_visible_category(db, category_id, user_id)


def build_rule_json(raw_rule: Optional[dict], anchor_date: datetime, stored_rule: Optional[str] = None) -> str:
    """
    Validate a recurring rule and fill in its next_date.

    A new rule starts one step after `anchor_date`. When it replaces
    `stored_rule` the pending schedule is carried over (see carry_schedule).

    Raises:
        HTTPException: 400 when the rule is missing or invalid
    """
    if not raw_rule:
        raise HTTPException(status_code=400, detail="recurring_rule is required for recurring transactions")
    try:
        rule = parse_rule(raw_rule)
    except RecurringRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return carry_schedule(rule, stored_rule, anchor_date).to_json()


def _search_filter(term: str):
    pattern = f"%{term.strip()}%"
    return or_(
        Transaction.description.ilike(pattern),
        Transaction.location.ilike(pattern),
    )


@router.get("/", response_model=TransactionListResponse)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[TransactionType] = None,
    category_id: Optional[UUID] = None,
    account_id: Optional[UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    search: Optional[str] = None,
    tags: Optional[str] = Query(None, description="Comma-separated tags, matches any"),
    sort_by: Literal["date", "amount", "description", "created_at"] = "date",
    sort_order: Literal["asc", "desc"] = "desc",
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List transactions with filtering, sorting and pagination."""
    user_id = get_user_id(user_id)
    query = db.query(Transaction).filter(Transaction.user_id == user_id)

    if type:
        query = query.filter(Transaction.type == type)
    if category_id:
        query = query.filter(Transaction.category_id == category_id)
    if account_id:
        query = query.filter(Transaction.account_id == account_id)
    if start_date:
        query = query.filter(Transaction.date >= start_date)
    if end_date:
        query = query.filter(Transaction.date <= end_date)
    if min_amount is not None:
        query = query.filter(Transaction.amount >= min_amount)
    if max_amount is not None:
        query = query.filter(Transaction.amount <= max_amount)
    if search and search.strip():
        query = query.filter(_search_filter(search))
    if tags:
        wanted = [tag.strip() for tag in tags.split(",") if tag.strip()]
        if wanted:
            # Tags are stored as a JSON array of strings.
            query = query.filter(or_(*[Transaction.tags.like(f'%{json.dumps(tag)}%') for tag in wanted]))

    total = query.count()
    column = SORT_COLUMNS[sort_by]
    order = column.asc() if sort_order == "asc" else column.desc()
    transactions = query.order_by(order, Transaction.id).offset((page - 1) * limit).limit(limit).all()

    total_pages = math.ceil(total / limit) if total else 0
    return TransactionListResponse(
        data=[TransactionResponse.model_validate(tx) for tx in transactions],
        meta=PaginationMeta(
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.get("/stats")
def get_transaction_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Income, expense and category totals over an optional date range."""
    user_id = get_user_id(user_id)
    query = db.query(Transaction).filter(Transaction.user_id == user_id)
    if start_date:
        query = query.filter(Transaction.date >= start_date)
    if end_date:
        query = query.filter(Transaction.date <= end_date)
    transactions = query.all()

    totals = ledger_totals(transactions)
    count = totals["count"]
    average = (totals["income"] + totals["expenses"]) / count if count else Decimal("0")
    return {
        "total_income": totals["income"],
        "total_expenses": totals["expenses"],
        "net_amount": totals["net"],
        "transaction_count": count,
        "average_transaction": average.quantize(Decimal("0.01")),
        "category_breakdown": AnalyticsService(db).category_breakdown(transactions),
    }


@router.get("/search", response_model=List[TransactionResponse])
def search_transactions(
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=50),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Quick search over description and location, newest first."""
    user_id = get_user_id(user_id)
    return db.query(Transaction).filter(
        Transaction.user_id == user_id,
        _search_filter(q),
    ).order_by(Transaction.date.desc()).limit(limit).all()


@router.post("/bulk/categorize")
def bulk_categorize(
    request: BulkCategorizeRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Assign a category to several transactions at once."""
    user_id = get_user_id(user_id)
    get_visible_category(db, request.category_id, user_id)
    updated = db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.id.in_(request.transaction_ids),
    ).update({"category_id": request.category_id}, synchronize_session=False)
    db.commit()
    return {"updated": updated}


@router.post("/bulk/delete")
def bulk_delete(
    request: BulkDeleteRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete several transactions at once."""
    user_id = get_user_id(user_id)
    deleted = db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.id.in_(request.transaction_ids),
    ).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Bulk deleted {deleted} transactions for user {user_id}")
    return {"deleted": deleted}


@router.post("/check-duplicate", response_model=List[TransactionResponse])
def check_duplicate(
    draft: DuplicateCheckRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Find existing transactions that look like the draft (same amount and type, +/- 1 day)."""
    user_id = get_user_id(user_id)
    return db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.type == draft.type,
        Transaction.amount == draft.amount,
        func.lower(Transaction.description) == draft.description.strip().lower(),
        Transaction.date >= draft.date - timedelta(days=1),
        Transaction.date <= draft.date + timedelta(days=1),
    ).order_by(Transaction.date.desc()).all()


@router.post("/suggest-category", response_model=CategorySuggestionResponse)
def suggest_category(
    request: CategorySuggestionRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Suggest a category from the user's history, then from keywords."""
    user_id = get_user_id(user_id)
    suggestion = CategorySuggester(db, user_id).suggest(request.description, request.type)
    return CategorySuggestionResponse(
        category_id=suggestion.category.id if suggestion.category else None,
        category_name=suggestion.category.name if suggestion.category else None,
        method=suggestion.method,
        confidence=suggestion.confidence,
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific transaction by ID."""
    user_id = get_user_id(user_id)
    return _get_owned_transaction(db, transaction_id, user_id)


@router.post("/", response_model=TransactionResponse, status_code=201)
def create_transaction(
    transaction: TransactionCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a new transaction."""
    user_id = get_user_id(user_id)
    get_or_create_user(db, user_id)
    _validate_references(db, user_id, transaction.account_id, transaction.category_id)

    rule_json = None
    if transaction.is_recurring:
        raw_rule = transaction.recurring_rule.model_dump() if transaction.recurring_rule else None
        rule_json = build_rule_json(raw_rule, transaction.date)

    db_transaction = Transaction(
        user_id=user_id,
        account_id=transaction.account_id,
        category_id=transaction.category_id,
        type=transaction.type,
        amount=transaction.amount,
        description=transaction.description.strip(),
        date=transaction.date,
        tags=json.dumps(transaction.tags) if transaction.tags else None,
        location=transaction.location,
        is_recurring=transaction.is_recurring,
        recurring_rule=rule_json,
        attachments=json.dumps(transaction.attachments) if transaction.attachments else None,
        metadata_=transaction.metadata,
    )
    db.add(db_transaction)
    db.commit()
    db.refresh(db_transaction)
    return db_transaction


@router.patch("/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: UUID,
    updates: TransactionUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a transaction."""
    user_id = get_user_id(user_id)
    transaction = _get_owned_transaction(db, transaction_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    _validate_references(db, user_id, update_data.get("account_id"), update_data.get("category_id"))

    if "tags" in update_data:
        tags = [tag.strip() for tag in update_data.pop("tags") or [] if tag and tag.strip()]
        transaction.tags = json.dumps(tags) if tags else None
    if "attachments" in update_data:
        attachments = update_data.pop("attachments") or []
        transaction.attachments = json.dumps(attachments) if attachments else None
    if "metadata" in update_data:
        transaction.metadata_ = update_data.pop("metadata")

    raw_rule = update_data.pop("recurring_rule", None)
    is_recurring = update_data.pop("is_recurring", None)

    for field, value in update_data.items():
        if value is None and field in ("type", "amount", "description", "date"):
            continue
        setattr(transaction, field, value)

    if is_recurring is not None:
        transaction.is_recurring = is_recurring
    if transaction.is_recurring and transaction.parent_transaction_id is None:
        if raw_rule is not None:
            transaction.recurring_rule = build_rule_json(
                raw_rule,
                RecurringTransactionService(db).last_occurrence_date(transaction),
                transaction.recurring_rule,
            )
        elif not transaction.recurring_rule:
            raise HTTPException(status_code=400, detail="recurring_rule is required for recurring transactions")

    db.commit()
    db.refresh(transaction)
    return transaction


@router.delete("/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete a transaction."""
    user_id = get_user_id(user_id)
    transaction = _get_owned_transaction(db, transaction_id, user_id)
    db.delete(transaction)
    db.commit()
    return None
