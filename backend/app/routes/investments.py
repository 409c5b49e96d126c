from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import logging

from app.database import get_db
from app.models import Investment
from app.db_helpers import get_or_create_user, get_user_id
from app.schemas import (
    InvestmentCreate,
    InvestmentDetailResponse,
    InvestmentResponse,
    InvestmentTransactionCreate,
    InvestmentTransactionResponse,
    InvestmentType,
    InvestmentUpdate,
    QuoteResponse,
    RebalanceRequest,
)
from app.services.portfolio_service import PortfolioService, PositionError, valuation
from app.services.quotes_service import QuoteError, QuotesService

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_owned_investment(db: Session, investment_id, user_id: str) -> Investment:
    investment = db.query(Investment).filter(
        Investment.id == investment_id,
        Investment.user_id == user_id
    ).first()
    if not investment:
        raise HTTPException(status_code=404, detail="Investment not found")
    return investment


def _serialize_investment(investment: Investment, response_class=InvestmentResponse):
    response = response_class.model_validate(investment)
    for field, value in valuation(investment).items():
        setattr(response, field, value)
    return response


@router.get("/", response_model=List[InvestmentResponse])
def list_investments(
    type: Optional[InvestmentType] = None,
    broker: Optional[str] = None,
    sector: Optional[str] = None,
    currency: Optional[str] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List investments with their current valuation."""
    user_id = get_user_id(user_id)
    query = db.query(Investment).filter(Investment.user_id == user_id)
    if type:
        query = query.filter(Investment.type == type)
    if broker:
        query = query.filter(Investment.broker == broker)
    if sector:
        query = query.filter(Investment.sector == sector)
    if currency:
        query = query.filter(Investment.currency == currency.upper())

    investments = query.order_by(Investment.symbol).all()
    return [_serialize_investment(investment) for investment in investments]


@router.get("/portfolio/summary")
def get_portfolio_summary(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Portfolio totals and holdings weighted by current value."""
    user_id = get_user_id(user_id)
    return PortfolioService(db).summary(user_id)


@router.get("/portfolio/allocation")
def get_portfolio_allocation(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Portfolio value split by type, sector, broker and currency."""
    user_id = get_user_id(user_id)
    return PortfolioService(db).allocation(user_id)


@router.post("/portfolio/rebalance")
def rebalance_portfolio(
    request: RebalanceRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Buy/sell amounts that move the allocation by type towards a target."""
    user_id = get_user_id(user_id)
    try:
        return PortfolioService(db).rebalance(user_id, request.target_allocation)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/stats")
def get_investment_stats(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Distribution counts and best/worst performers."""
    user_id = get_user_id(user_id)
    return PortfolioService(db).stats(user_id)


@router.get("/quotes/{symbol}", response_model=QuoteResponse)
def get_quote(
    symbol: str,
    type: InvestmentType = "stock",
    user_id: Optional[str] = None,
):
    """Fetch a live quote for a symbol."""
    get_user_id(user_id)
    quotes = QuotesService()
    try:
        return quotes.get_quote(symbol, type)
    except QuoteError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        quotes.close()


@router.post("/quotes/refresh", status_code=202)
def refresh_quotes(user_id: Optional[str] = None):
    """Enqueue a price refresh for all of the user's investments."""
    from tasks.investment_tasks import refresh_investment_quotes

    user_id = get_user_id(user_id)
    task = refresh_investment_quotes.delay(user_id)
    logger.info(f"[QUOTES] Enqueued quote refresh {task.id} for user {user_id}")
    return {"task_id": task.id}


@router.get("/{investment_id}", response_model=InvestmentDetailResponse)
def get_investment(
    investment_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get an investment with its transactions."""
    user_id = get_user_id(user_id)
    investment = _get_owned_investment(db, investment_id, user_id)
    return _serialize_investment(investment, InvestmentDetailResponse)


@router.post("/", response_model=InvestmentDetailResponse, status_code=201)
def create_investment(
    investment: InvestmentCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Create an investment and record the initial purchase.
    The current price is taken from the quote provider, falling back to the purchase price.
    """
    user_id = get_user_id(user_id)
    user = get_or_create_user(db, user_id)
    symbol = investment.symbol.strip().upper()

    existing = db.query(Investment.id).filter(
        Investment.user_id == user_id,
        Investment.symbol == symbol,
        Investment.type == investment.type,
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail=f"Investment {symbol} already exists")

    service = PortfolioService(db)
    try:
        current_price = service.price_from_quote(symbol, investment.type)
    finally:
        service.close()

    db_investment = Investment(
        user_id=user_id,
        symbol=symbol,
        name=investment.name,
        type=investment.type,
        currency=(investment.currency or user.currency or "BRL").upper(),
        broker=investment.broker,
        sector=investment.sector,
        current_price=current_price or investment.average_price,
        metadata_=investment.metadata,
    )
    if current_price is not None:
        db_investment.last_quote_at = datetime.utcnow()
    db.add(db_investment)
    db.flush()

    try:
        service.record_transaction(
            db_investment,
            "buy",
            investment.quantity,
            investment.average_price,
            investment.fees,
            date=investment.purchase_date,
            notes="Initial purchase",
        )
    except PositionError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    db.commit()
    db.refresh(db_investment)
    return _serialize_investment(db_investment, InvestmentDetailResponse)


@router.patch("/{investment_id}", response_model=InvestmentResponse)
def update_investment(
    investment_id: UUID,
    updates: InvestmentUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update descriptive fields or override the current price."""
    user_id = get_user_id(user_id)
    investment = _get_owned_investment(db, investment_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    if "metadata" in update_data:
        investment.metadata_ = update_data.pop("metadata")
    for field, value in update_data.items():
        if value is None and field == "name":
            continue
        setattr(investment, field, value)

    db.commit()
    db.refresh(investment)
    return _serialize_investment(investment)


@router.delete("/{investment_id}", status_code=204)
def delete_investment(
    investment_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete an investment that has no history beyond its initial purchase."""
    user_id = get_user_id(user_id)
    investment = _get_owned_investment(db, investment_id, user_id)
    if len(investment.transactions) > 1:
        raise HTTPException(
            status_code=400,
            detail="Cannot delete an investment with transaction history",
        )
    db.delete(investment)
    db.commit()
    return None


@router.post(
    "/{investment_id}/transactions",
    response_model=InvestmentTransactionResponse,
    status_code=201,
)
def add_investment_transaction(
    investment_id: UUID,
    transaction: InvestmentTransactionCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Record a buy, sell or dividend and update the position."""
    user_id = get_user_id(user_id)
    investment = _get_owned_investment(db, investment_id, user_id)
    try:
        db_transaction = PortfolioService(db).record_transaction(
            investment,
            transaction.type,
            transaction.quantity,
            transaction.price,
            transaction.fees,
            date=transaction.date,
            notes=transaction.notes,
        )
    except PositionError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    db.commit()
    db.refresh(db_transaction)
    return db_transaction
