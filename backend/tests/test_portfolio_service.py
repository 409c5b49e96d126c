"""
Weighted average cost bookkeeping, valuation and rebalancing.
"""
from decimal import Decimal

import pytest

from app.models import Investment
from app.services.portfolio_service import (
    PortfolioService,
    PositionError,
    apply_transaction,
    valuation,
)
from app.services.quotes_service import QuoteError


def make_investment(**overrides):
    values = dict(
        user_id="user-1",
        symbol="AAPL",
        name="Apple",
        type="stock",
        quantity=Decimal("0"),
        average_price=Decimal("0"),
    )
    values.update(overrides)
    return Investment(**values)


class FakeQuotes:
    def __init__(self, prices):
        self.prices = prices
        self.calls = []

    def get_quote(self, symbol, investment_type):
        self.calls.append(symbol)
        if symbol not in self.prices:
            raise QuoteError(f"No quote available for {symbol}")
        return {"symbol": symbol, "price": self.prices[symbol]}

    def close(self):
        pass


def test_buys_use_weighted_average_cost_including_fees():
    investment = make_investment()
    apply_transaction(investment, "buy", Decimal("10"), Decimal("100"), Decimal("10"))
    assert investment.quantity == Decimal("10")
    assert investment.average_price == Decimal("101")

    apply_transaction(investment, "buy", Decimal("10"), Decimal("120"), Decimal("0"))
    assert investment.quantity == Decimal("20")
    assert investment.average_price == Decimal("110.5")


def test_sell_reduces_quantity_and_keeps_average():
    investment = make_investment(quantity=Decimal("20"), average_price=Decimal("110.5"))
    apply_transaction(investment, "sell", Decimal("5"), Decimal("150"), Decimal("0"))
    assert investment.quantity == Decimal("15")
    assert investment.average_price == Decimal("110.5")


def test_dividend_leaves_position_untouched():
    investment = make_investment(quantity=Decimal("4"), average_price=Decimal("50"))
    apply_transaction(investment, "dividend", Decimal("0"), Decimal("3.20"), Decimal("0"))
    assert investment.quantity == Decimal("4")
    assert investment.average_price == Decimal("50")


@pytest.mark.parametrize("tx_type, quantity", [
    ("sell", Decimal("11")),
    ("sell", Decimal("0")),
    ("buy", Decimal("0")),
    ("split", Decimal("1")),
])
def test_invalid_transactions_are_rejected(tx_type, quantity):
    investment = make_investment(quantity=Decimal("10"), average_price=Decimal("100"))
    with pytest.raises(PositionError):
        apply_transaction(investment, tx_type, quantity, Decimal("100"), Decimal("0"))
    assert investment.quantity == Decimal("10")


def test_valuation_falls_back_to_average_price():
    priced = valuation(make_investment(
        quantity=Decimal("10"), average_price=Decimal("100"), current_price=Decimal("120")
    ))
    assert priced["current_value"] == Decimal("1200.00")
    assert priced["cost_basis"] == Decimal("1000.00")
    assert priced["gain_loss"] == Decimal("200.00")
    assert priced["gain_loss_percentage"] == 20.0

    unpriced = valuation(make_investment(quantity=Decimal("10"), average_price=Decimal("100")))
    assert unpriced["gain_loss"] == Decimal("0.00")


def seed_portfolio(db):
    db.add_all([
        make_investment(
            symbol="AAPL", quantity=Decimal("5"), average_price=Decimal("100"),
            current_price=Decimal("140"), sector="Technology", broker="XP",
        ),
        make_investment(
            symbol="BTC", name="Bitcoin", type="crypto", quantity=Decimal("0.01"),
            average_price=Decimal("20000"), current_price=Decimal("30000"),
        ),
    ])
    db.commit()


def test_summary_totals_and_weights(db, user):
    seed_portfolio(db)
    summary = PortfolioService(db).summary("user-1")

    assert summary["total_value"] == Decimal("1000.00")
    assert summary["total_cost"] == Decimal("700.00")
    assert summary["total_gain_loss"] == Decimal("300.00")
    assert summary["investment_count"] == 2
    assert [h["symbol"] for h in summary["holdings"]] == ["AAPL", "BTC"]
    assert summary["holdings"][0]["weight"] == 70.0


def test_allocation_groups_unknown_sector(db, user):
    seed_portfolio(db)
    allocation = PortfolioService(db).allocation("user-1")

    by_sector = {group["name"]: group for group in allocation["by_sector"]}
    assert by_sector["Technology"]["percentage"] == 70.0
    assert by_sector["Unknown"]["count"] == 1


def test_rebalance_recommends_trades_beyond_threshold(db, user):
    seed_portfolio(db)
    result = PortfolioService(db).rebalance("user-1", {"stock": 50, "crypto": 50})

    actions = {r["type"]: (r["action"], r["amount"]) for r in result["recommendations"]}
    assert actions == {
        "crypto": ("buy", Decimal("200.00")),
        "stock": ("sell", Decimal("200.00")),
    }
    assert result["total_rebalance_amount"] == Decimal("400.00")


def test_rebalance_requires_targets_summing_to_100(db, user):
    with pytest.raises(ValueError):
        PortfolioService(db).rebalance("user-1", {"stock": 60, "crypto": 30})


def test_refresh_prices_counts_failures_and_queries_each_symbol_once(db, user):
    seed_portfolio(db)
    db.add(make_investment(user_id="user-2", symbol="AAPL", quantity=Decimal("1"), average_price=Decimal("90")))
    db.commit()
    quotes = FakeQuotes({"AAPL": Decimal("150")})

    result = PortfolioService(db, quotes=quotes).refresh_prices()

    assert result == {"updated": 2, "failed": 1}
    assert quotes.calls.count("AAPL") == 1
    prices = {(i.user_id, i.symbol): i.current_price for i in db.query(Investment).all()}
    assert prices[("user-1", "AAPL")] == Decimal("150")
    assert prices[("user-2", "AAPL")] == Decimal("150")
    assert prices[("user-1", "BTC")] == Decimal("30000")
