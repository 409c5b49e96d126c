from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from app.database import get_db
from app.models import Account, Transaction
from app.db_helpers import get_or_create_user, get_owned_account, get_user_id
from app.schemas import (
    AccountCreate,
    AccountListResponse,
    AccountResponse,
    AccountTransactionsResponse,
    AccountType,
    AccountUpdate,
    TransactionResponse,
)

router = APIRouter()


def _transaction_counts(db: Session, user_id: str, account_ids: list) -> Dict:
    if not account_ids:
        return {}
    rows = db.query(Transaction.account_id, func.count(Transaction.id)).filter(
        Transaction.user_id == user_id,
        Transaction.account_id.in_(account_ids),
    ).group_by(Transaction.account_id).all()
    return dict(rows)


def _serialize_account(account: Account, transaction_count: int = 0) -> AccountResponse:
    response = AccountResponse.model_validate(account)
    response.transaction_count = transaction_count
    return response


@router.get("/", response_model=AccountListResponse)
def list_accounts(
    type: Optional[AccountType] = None,
    provider: Optional[str] = None,
    is_active: bool = Query(True, description="Only active accounts by default"),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    List accounts for the current user.

    Args:
        type: Filter by account type
        provider: Filter by provider (e.g. manual)
        is_active: Active (default) or inactive accounts
    """
    user_id = get_user_id(user_id)
    query = db.query(Account).filter(
        Account.user_id == user_id,
        Account.is_active == is_active,
    )
    if type:
        query = query.filter(Account.type == type)
    if provider:
        query = query.filter(Account.provider == provider)

    accounts = query.order_by(Account.created_at.desc()).all()
    counts = _transaction_counts(db, user_id, [account.id for account in accounts])
    return AccountListResponse(
        accounts=[_serialize_account(account, counts.get(account.id, 0)) for account in accounts],
        total=len(accounts),
    )


@router.get("/summary")
def get_accounts_summary(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Balance totals of active accounts per currency and per type."""
    user_id = get_user_id(user_id)
    accounts = db.query(Account).filter(
        Account.user_id == user_id,
        Account.is_active == True,  # noqa: E712
    ).all()

    by_currency: Dict[str, Decimal] = {}
    by_type: Dict[str, Dict] = {}
    for account in accounts:
        balance = Decimal(account.balance or 0)
        by_currency[account.currency] = by_currency.get(account.currency, Decimal("0")) + balance
        bucket = by_type.setdefault(account.type, {"balance": Decimal("0"), "count": 0})
        bucket["balance"] += balance
        bucket["count"] += 1

    return {
        "total_accounts": len(accounts),
        "balances_by_currency": by_currency,
        "balances_by_type": by_type,
    }


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific account by ID."""
    user_id = get_user_id(user_id)
    account = get_owned_account(db, account_id, user_id)
    counts = _transaction_counts(db, user_id, [account.id])
    return _serialize_account(account, counts.get(account.id, 0))


@router.post("/", response_model=AccountResponse, status_code=201)
def create_account(
    account: AccountCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a new account."""
    user_id = get_user_id(user_id)
    user = get_or_create_user(db, user_id)

    account_data = account.model_dump()
    if account_data.get("provider_account_id"):
        duplicate = db.query(Account.id).filter(
            Account.user_id == user_id,
            Account.provider == account_data["provider"],
            Account.provider_account_id == account_data["provider_account_id"],
        ).first()
        if duplicate:
            raise HTTPException(status_code=400, detail="Account already linked for this provider")

    account_data["metadata_"] = account_data.pop("metadata")
    account_data["currency"] = (account_data.get("currency") or user.currency or "BRL").upper()
    account_data["user_id"] = user_id
    db_account = Account(**account_data)
    db.add(db_account)
    db.commit()
    db.refresh(db_account)
    return _serialize_account(db_account)


@router.patch("/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: UUID,
    updates: AccountUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Update an account.
    Balances of provider-synced accounts are owned by the provider and cannot be edited.
    """
    user_id = get_user_id(user_id)
    account = get_owned_account(db, account_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    if "balance" in update_data and account.provider != "manual":
        raise HTTPException(status_code=400, detail="Balance can only be edited on manual accounts")

    for field, value in update_data.items():
        if value is not None:
            setattr(account, field, value)

    db.commit()
    db.refresh(account)
    counts = _transaction_counts(db, user_id, [account.id])
    return _serialize_account(account, counts.get(account.id, 0))


@router.delete("/{account_id}", status_code=204)
def delete_account(
    account_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete (deactivate) an account."""
    user_id = get_user_id(user_id)
    account = get_owned_account(db, account_id, user_id)
    account.is_active = False
    db.commit()
    return None


@router.get("/{account_id}/transactions", response_model=AccountTransactionsResponse)
def list_account_transactions(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List an account's transactions, newest first."""
    user_id = get_user_id(user_id)
    account = get_owned_account(db, account_id, user_id)

    query = db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.account_id == account.id,
    )
    if start_date:
        query = query.filter(Transaction.date >= start_date)
    if end_date:
        query = query.filter(Transaction.date <= end_date)

    total = query.count()
    transactions = query.order_by(Transaction.date.desc()).offset(offset).limit(limit).all()
    return AccountTransactionsResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions],
        total=total,
    )
