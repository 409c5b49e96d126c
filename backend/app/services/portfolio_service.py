"""
Portfolio service: position bookkeeping, valuation and allocation analysis.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.models import Investment, InvestmentTransaction
from app.services.quotes_service import QuoteError, QuotesService

logger = logging.getLogger(__name__)

REBALANCE_THRESHOLD_POINTS = 1.0
ALLOCATION_FIELDS = ("type", "sector", "broker", "currency")

TWO_PLACES = Decimal("0.01")
PRICE_PLACES = Decimal("0.00000001")


class PositionError(ValueError):
    """Raised when a transaction cannot be applied to a position."""


def _round(value: Decimal, places: Decimal = TWO_PLACES) -> Decimal:
    return Decimal(value).quantize(places, rounding=ROUND_HALF_UP)


def _percentage(part: Decimal, whole: Decimal) -> float:
    if not whole:
        return 0.0
    return round(float(Decimal(part) / Decimal(whole) * 100), 2)


def apply_transaction(investment: Investment, tx_type: str, quantity: Decimal, price: Decimal, fees: Decimal) -> None:
    """
    Update quantity and average price using the weighted average cost method.

    Buys fold fees into the cost basis; sells reduce quantity at the current
    average; dividends leave the position unchanged.
    """
    current_qty = Decimal(investment.quantity or 0)
    current_avg = Decimal(investment.average_price or 0)
    quantity = Decimal(quantity)
    price = Decimal(price)
    fees = Decimal(fees or 0)

    if tx_type == "buy":
        if quantity <= 0:
            raise PositionError("Buy quantity must be greater than zero")
        new_qty = current_qty + quantity
        total_cost = current_qty * current_avg + quantity * price + fees
        investment.quantity = new_qty
        investment.average_price = _round(total_cost / new_qty, PRICE_PLACES)
    elif tx_type == "sell":
        if quantity <= 0:
            raise PositionError("Sell quantity must be greater than zero")
        if quantity > current_qty:
            raise PositionError("Cannot sell more than the current quantity")
        investment.quantity = current_qty - quantity
    elif tx_type == "dividend":
        return
    else:
        raise PositionError(f"Unsupported transaction type: {tx_type}")


def valuation(investment: Investment) -> Dict:
    quantity = Decimal(investment.quantity or 0)
    average = Decimal(investment.average_price or 0)
    price = Decimal(investment.current_price or average)
    current_value = quantity * price
    cost_basis = quantity * average
    gain_loss = current_value - cost_basis
    return {
        "current_value": _round(current_value),
        "cost_basis": _round(cost_basis),
        "gain_loss": _round(gain_loss),
        "gain_loss_percentage": _percentage(gain_loss, cost_basis),
    }


class PortfolioService:
    """Operations over a user's investment positions."""

    def __init__(self, db: Session, quotes: Optional[QuotesService] = None):
        self.db = db
        self._quotes = quotes

    @property
    def quotes(self) -> QuotesService:
        if self._quotes is None:
            self._quotes = QuotesService()
        return self._quotes

    def close(self) -> None:
        """Release the quote client if one was opened."""
        if self._quotes is not None:
            self._quotes.close()

    def _investments(self, user_id: str) -> List[Investment]:
        return self.db.query(Investment).filter(
            Investment.user_id == user_id
        ).order_by(Investment.symbol).all()

    def record_transaction(
        self,
        investment: Investment,
        tx_type: str,
        quantity: Decimal,
        price: Decimal,
        fees: Decimal = Decimal("0"),
        date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> InvestmentTransaction:
        """Apply a buy/sell/dividend to the position and store it. The caller commits."""
        apply_transaction(investment, tx_type, quantity, price, fees)
        transaction = InvestmentTransaction(
            investment_id=investment.id,
            type=tx_type,
            quantity=quantity,
            price=price,
            fees=fees,
            date=date or datetime.utcnow(),
            notes=notes,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def price_from_quote(self, symbol: str, investment_type: str) -> Optional[Decimal]:
        try:
            return self.quotes.get_quote(symbol, investment_type)["price"]
        except QuoteError as e:
            logger.warning(f"[QUOTES] Could not price {symbol}: {e}")
            return None

    def summary(self, user_id: str) -> Dict:
        investments = self._investments(user_id)
        holdings = []
        total_value = Decimal("0")
        total_cost = Decimal("0")
        for investment in investments:
            values = valuation(investment)
            total_value += values["current_value"]
            total_cost += values["cost_basis"]
            holdings.append({
                "id": investment.id,
                "symbol": investment.symbol,
                "name": investment.name,
                "type": investment.type,
                "quantity": investment.quantity,
                "average_price": investment.average_price,
                "current_price": investment.current_price or investment.average_price,
                **values,
            })

        for holding in holdings:
            holding["weight"] = _percentage(holding["current_value"], total_value)
        holdings.sort(key=lambda h: h["current_value"], reverse=True)

        total_gain = total_value - total_cost
        return {
            "total_value": _round(total_value),
            "total_cost": _round(total_cost),
            "total_gain_loss": _round(total_gain),
            "total_gain_loss_percentage": _percentage(total_gain, total_cost),
            "investment_count": len(investments),
            "holdings": holdings,
            "last_updated": datetime.utcnow(),
        }

    @staticmethod
    def _group(investments: List[Investment], field: str) -> List[Dict]:
        groups: Dict[str, Dict] = {}
        total = Decimal("0")
        for investment in investments:
            value = valuation(investment)["current_value"]
            total += value
            key = getattr(investment, field) or "Unknown"
            group = groups.setdefault(key, {"name": key, "value": Decimal("0"), "count": 0})
            group["value"] += value
            group["count"] += 1

        result = []
        for group in groups.values():
            result.append({
                "name": group["name"],
                "value": _round(group["value"]),
                "percentage": _percentage(group["value"], total),
                "count": group["count"],
            })
        return sorted(result, key=lambda g: g["value"], reverse=True)

    def allocation(self, user_id: str) -> Dict:
        investments = self._investments(user_id)
        return {f"by_{field}": self._group(investments, field) for field in ALLOCATION_FIELDS}

    def rebalance(self, user_id: str, target_allocation: Dict[str, float]) -> Dict:
        """
        Compare the current allocation by type with a target allocation.

        Raises:
            ValueError: If the target percentages do not sum to 100
        """
        if abs(sum(target_allocation.values()) - 100) > 0.01:
            raise ValueError("Target allocation must sum to 100%")
        if any(value < 0 for value in target_allocation.values()):
            raise ValueError("Target allocation percentages must not be negative")

        investments = self._investments(user_id)
        current = {group["name"]: group for group in self._group(investments, "type")}
        total_value = sum((g["value"] for g in current.values()), Decimal("0"))

        recommendations = []
        for asset_type in sorted(set(current) | set(target_allocation)):
            current_pct = current[asset_type]["percentage"] if asset_type in current else 0.0
            target_pct = float(target_allocation.get(asset_type, 0))
            difference = round(target_pct - current_pct, 2)
            if abs(difference) <= REBALANCE_THRESHOLD_POINTS:
                continue
            amount = _round(abs(Decimal(str(difference))) / 100 * total_value)
            recommendations.append({
                "type": asset_type,
                "current_percentage": current_pct,
                "target_percentage": target_pct,
                "difference": difference,
                "action": "buy" if difference > 0 else "sell",
                "amount": amount,
            })

        return {
            "total_value": _round(total_value),
            "current_allocation": list(current.values()),
            "recommendations": recommendations,
            "total_rebalance_amount": _round(sum((r["amount"] for r in recommendations), Decimal("0"))),
        }

    def stats(self, user_id: str) -> Dict:
        investments = self._investments(user_id)
        type_distribution: Dict[str, int] = {}
        sector_distribution: Dict[str, int] = {}
        broker_distribution: Dict[str, int] = {}
        transaction_count = 0
        performers = []
        for investment in investments:
            type_distribution[investment.type] = type_distribution.get(investment.type, 0) + 1
            if investment.sector:
                sector_distribution[investment.sector] = sector_distribution.get(investment.sector, 0) + 1
            if investment.broker:
                broker_distribution[investment.broker] = broker_distribution.get(investment.broker, 0) + 1
            transaction_count += len(investment.transactions)
            performers.append((valuation(investment)["gain_loss_percentage"], investment.symbol))

        performers.sort()
        return {
            "total_investments": len(investments),
            "total_transactions": transaction_count,
            "type_distribution": type_distribution,
            "sector_distribution": sector_distribution,
            "broker_distribution": broker_distribution,
            "best_performer": {"symbol": performers[-1][1], "gain_loss_percentage": performers[-1][0]} if performers else None,
            "worst_performer": {"symbol": performers[0][1], "gain_loss_percentage": performers[0][0]} if performers else None,
        }

    def refresh_prices(self, user_id: Optional[str] = None) -> Dict:
        """
        Update current_price for every investment (optionally one user's).
        Quote failures are counted and skipped.
        """
        query = self.db.query(Investment)
        if user_id:
            query = query.filter(Investment.user_id == user_id)

        updated = 0
        failed = 0
        cache: Dict[tuple, Optional[Decimal]] = {}
        for investment in query.all():
            key = (investment.symbol, investment.type)
            if key not in cache:
                cache[key] = self.price_from_quote(investment.symbol, investment.type)
            price = cache[key]
            if price is None:
                failed += 1
                continue
            investment.current_price = price
            investment.last_quote_at = datetime.utcnow()
            updated += 1

        self.db.commit()
        logger.info(f"[QUOTES] Updated {updated} investment prices, {failed} failed")
        return {"updated": updated, "failed": failed}
