"""
Market quote providers for investment price updates.

Yahoo Finance chart API covers listed instruments (stocks, funds, ETFs,
bonds, derivatives); CoinGecko covers crypto assets.
"""
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

YAHOO_TYPES = {"stock", "fund", "etf", "bond", "derivative"}

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "ADA": "cardano",
    "DOT": "polkadot",
    "LINK": "chainlink",
    "BNB": "binancecoin",
    "SOL": "solana",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "ATOM": "cosmos",
}


class QuoteError(Exception):
    """Raised when no provider can price a symbol."""


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class QuotesService:
    """Fetches the latest price for an investment symbol."""

    YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
    COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

    def __init__(self, client: Optional[httpx.Client] = None, quote_currency: str = "usd"):
        """
        Initialize the quotes service.

        Args:
            client: Optional preconfigured httpx client (tests inject a MockTransport)
            quote_currency: Currency used for crypto prices
        """
        timeout = float(os.getenv("QUOTES_HTTP_TIMEOUT", "10"))
        self.client = client or httpx.Client(
            timeout=timeout,
            headers={"User-Agent": "Finplan/1.0"},
        )
        self.quote_currency = quote_currency.lower()

    def get_quote(self, symbol: str, investment_type: str) -> Dict:
        """
        Get a quote for a symbol.

        Returns:
            {symbol, price, previous_close, change, change_percent, currency, timestamp}

        Raises:
            QuoteError: If the provider fails or returns no usable price
        """
        symbol = symbol.upper()
        if investment_type == "crypto":
            return self._coingecko_quote(symbol)
        if investment_type in YAHOO_TYPES:
            return self._yahoo_quote(symbol)
        raise QuoteError(f"Unsupported investment type: {investment_type}")

    def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        try:
            response = self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[QUOTES] HTTP error calling {url}: {e}")
            raise QuoteError(f"Quote provider request failed: {e}") from e
        except ValueError as e:
            raise QuoteError("Quote provider returned invalid JSON") from e

    def _yahoo_quote(self, symbol: str) -> Dict:
        data = self._get_json(self.YAHOO_CHART_URL.format(symbol=symbol))
        results = (data.get("chart") or {}).get("result") or []
        if not results:
            raise QuoteError(f"No quote available for {symbol}")

        meta = results[0].get("meta") or {}
        market_price = _to_decimal(meta.get("regularMarketPrice"))
        previous_close = _to_decimal(meta.get("previousClose") or meta.get("chartPreviousClose"))
        price = market_price or previous_close
        if not price:
            raise QuoteError(f"No price in quote for {symbol}")

        change = None
        change_percent = None
        if market_price is not None and previous_close:
            change = market_price - previous_close
            change_percent = float(change / previous_close * 100)

        return {
            "symbol": symbol,
            "price": price,
            "previous_close": previous_close,
            "change": change,
            "change_percent": change_percent,
            "currency": meta.get("currency") or "USD",
            "timestamp": datetime.utcnow(),
        }

    def _coingecko_quote(self, symbol: str) -> Dict:
        coin_id = COINGECKO_IDS.get(symbol, symbol.lower())
        data = self._get_json(
            self.COINGECKO_PRICE_URL,
            params={
                "ids": coin_id,
                "vs_currencies": self.quote_currency,
                "include_24hr_change": "true",
            },
        )
        coin = data.get(coin_id)
        price = _to_decimal((coin or {}).get(self.quote_currency))
        if not price:
            raise QuoteError(f"No quote available for {symbol}")

        change_percent = (coin or {}).get(f"{self.quote_currency}_24h_change")
        return {
            "symbol": symbol,
            "price": price,
            "previous_close": None,
            "change": None,
            "change_percent": float(change_percent) if change_percent is not None else None,
            "currency": self.quote_currency.upper(),
            "timestamp": datetime.utcnow(),
        }

    def close(self) -> None:
        self.client.close()
