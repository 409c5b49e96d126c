from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional
from uuid import UUID
import json
import logging

from app.database import get_db
from app.models import Transaction
from app.db_helpers import get_user_id
from app.routes.transactions import _validate_references, build_rule_json
from app.schemas import (
    QueueStats,
    RecurringTransactionResponse,
    RecurringUpdate,
    TransactionResponse,
)
from app.services.recurring_queue import RecurringJobTracker, get_queue_name
from app.services.recurring_service import (
    RecurringRuleError,
    RecurringTransactionService,
    effective_next_date,
    parse_rule,
    preview_dates,
    should_process,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_recurring_parent(db: Session, transaction_id, user_id: str) -> Transaction:
    parent = db.query(Transaction).filter(
        Transaction.id == transaction_id,
        Transaction.user_id == user_id,
        Transaction.is_recurring == True,  # noqa: E712
        Transaction.parent_transaction_id.is_(None),
    ).first()
    if not parent:
        raise HTTPException(status_code=404, detail="Recurring transaction not found")
    return parent


def _serialize_recurring(parent: Transaction, occurrence_count: int = 0) -> RecurringTransactionResponse:
    response = RecurringTransactionResponse.model_validate(parent)
    response.occurrence_count = occurrence_count
    try:
        rule = parse_rule(parent.recurring_rule)
    except RecurringRuleError:
        response.next_date = None
        response.is_active = False
        return response
    next_date = effective_next_date(parent, rule)
    response.next_date = next_date
    response.is_active = should_process(rule, next_date)
    return response


@router.get("/", response_model=List[RecurringTransactionResponse])
def list_recurring(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List the user's recurring transactions with their next occurrence."""
    user_id = get_user_id(user_id)
    parents = db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.is_recurring == True,  # noqa: E712
        Transaction.recurring_rule.isnot(None),
        Transaction.parent_transaction_id.is_(None),
    ).order_by(Transaction.date.desc()).all()

    counts = {}
    if parents:
        counts = dict(
            db.query(Transaction.parent_transaction_id, func.count(Transaction.id)).filter(
                Transaction.user_id == user_id,
                Transaction.parent_transaction_id.in_([p.id for p in parents]),
            ).group_by(Transaction.parent_transaction_id).all()
        )
    return [_serialize_recurring(parent, counts.get(parent.id, 0)) for parent in parents]


@router.get("/queue/stats", response_model=QueueStats)
def get_queue_stats(user_id: Optional[str] = None):
    """Counts of waiting, active, completed, failed and delayed recurring jobs."""
    get_user_id(user_id)
    return RecurringJobTracker().stats()


@router.post("/process", status_code=202)
def trigger_processing(user_id: Optional[str] = None):
    """Enqueue a run over all due recurring transactions."""
    from tasks.recurring_tasks import process_recurring_transactions

    get_user_id(user_id)
    task = process_recurring_transactions.apply_async(queue=get_queue_name())
    logger.info(f"[RECURRING] Enqueued batch processing task {task.id}")
    return {"task_id": task.id}


@router.get("/{transaction_id}/occurrences", response_model=List[TransactionResponse])
def list_occurrences(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Transactions generated from a recurring transaction, newest first."""
    user_id = get_user_id(user_id)
    parent = _get_recurring_parent(db, transaction_id, user_id)
    return db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.parent_transaction_id == parent.id,
    ).order_by(Transaction.date.desc()).all()


@router.get("/{transaction_id}/preview")
def preview_occurrences(
    transaction_id: UUID,
    count: int = Query(5, ge=1, le=50),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Upcoming occurrence dates, honoring the rule's end date."""
    user_id = get_user_id(user_id)
    parent = _get_recurring_parent(db, transaction_id, user_id)
    try:
        rule = parse_rule(parent.recurring_rule)
    except RecurringRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    dates = preview_dates(effective_next_date(parent, rule), rule, count)
    return {"transaction_id": parent.id, "dates": dates}


@router.patch("/{transaction_id}", response_model=RecurringTransactionResponse)
def update_recurring(
    transaction_id: UUID,
    updates: RecurringUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a recurring transaction; a new rule is validated before it is stored."""
    user_id = get_user_id(user_id)
    parent = _get_recurring_parent(db, transaction_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    _validate_references(db, user_id, update_data.get("account_id"), update_data.get("category_id"))

    if "recurring_rule" in update_data:
        parent.recurring_rule = build_rule_json(
            update_data.pop("recurring_rule"),
            RecurringTransactionService(db).last_occurrence_date(parent),
            parent.recurring_rule,
        )
    if "tags" in update_data:
        tags = [tag.strip() for tag in update_data.pop("tags") or [] if tag and tag.strip()]
        parent.tags = json.dumps(tags) if tags else None

    for field, value in update_data.items():
        if value is None and field in ("amount", "description"):
            continue
        setattr(parent, field, value)

    db.commit()
    db.refresh(parent)
    return _serialize_recurring(parent)


@router.delete("/{transaction_id}", status_code=204)
def cancel_recurring(
    transaction_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Stop a recurring transaction. Already generated occurrences are kept."""
    user_id = get_user_id(user_id)
    parent = _get_recurring_parent(db, transaction_id, user_id)
    parent.is_recurring = False
    db.commit()
    logger.info(f"[RECURRING] Cancelled recurring transaction {parent.id}")
    return None


@router.post("/{transaction_id}/process", status_code=202)
def trigger_single_processing(
    transaction_id: UUID,
    delay_seconds: int = Query(0, ge=0, le=86400),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Enqueue processing of one recurring transaction, optionally delayed."""
    from tasks.recurring_tasks import process_single_recurring

    user_id = get_user_id(user_id)
    parent = _get_recurring_parent(db, transaction_id, user_id)
    task = process_single_recurring.apply_async(
        args=[str(parent.id)],
        countdown=delay_seconds or None,
        queue=get_queue_name(),
    )
    logger.info(f"[RECURRING] Enqueued task {task.id} for transaction {parent.id}")
    return {"task_id": task.id}
