"""
Stock quote fetcher (Finnhub quote API).

Options: ``symbols``, a comma-separated list (at most 20 symbols).
Credentials: ``api_key``.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..exceptions import FetchAuthError, FetchError, FetchTransportError
from .base import Fetcher, FetchResult

DEFAULT_SYMBOLS = "AAPL,GOOGL,MSFT"
MAX_SYMBOLS = 20
API_BASE = "https://finnhub.io/api/v1"


def parse_symbols(symbols: Any) -> List[str]:
    if not isinstance(symbols, str):
        symbols = DEFAULT_SYMBOLS
    seen: List[str] = []
    for symbol in symbols.split(","):
        symbol = symbol.strip().upper()
        if symbol and symbol not in seen:
            seen.append(symbol)
    return seen[:MAX_SYMBOLS]


def _signed(value: float) -> str:
    return f"+{value:.2f}" if value > 0 else f"{value:.2f}"


def format_quote(symbol: str, quote: Mapping[str, Any]) -> Dict[str, Any]:
    change = quote.get("d") or 0
    change_percent = quote.get("dp") or 0
    direction = "up" if change > 0 else "down" if change < 0 else "neutral"
    return {
        "symbol": symbol,
        "price": quote.get("c", 0),
        "priceFormatted": f"${quote.get('c', 0):.2f}",
        "change": change,
        "changeFormatted": _signed(change),
        "changePercent": change_percent,
        "changePercentFormatted": f"({_signed(change_percent)}%)",
        "changeDirection": direction,
        "changeArrow": {"up": "▲", "down": "▼"}.get(direction, "─"),
        "high": quote.get("h", 0),
        "low": quote.get("l", 0),
        "open": quote.get("o", 0),
        "previousClose": quote.get("pc", 0),
    }


def market_status(now: Optional[datetime] = None) -> str:
    """Approximate US market session, using a fixed UTC-5 offset."""
    eastern = (now or datetime.now(timezone.utc)) - timedelta(hours=5)
    if eastern.weekday() >= 5:
        return "closed"
    minutes = eastern.hour * 60 + eastern.minute
    if 4 * 60 <= minutes < 9 * 60 + 30:
        return "pre-market"
    if 9 * 60 + 30 <= minutes < 16 * 60:
        return "open"
    if 16 * 60 <= minutes < 20 * 60:
        return "after-hours"
    return "closed"


class StockQuoteFetcher(Fetcher):
    name = "stock_quotes"

    def fetch(
        self, credentials: Optional[Mapping[str, Any]], options: Mapping[str, Any]
    ) -> FetchResult:
        api_key = (credentials or {}).get("api_key")
        if not api_key:
            raise FetchAuthError(
                "Missing api_key", service_name=self.name, integration_id=self.definition.id
            )

        base_url = self.definition.pull_config.get("api_base", API_BASE)
        quotes = []
        for symbol in parse_symbols(options.get("symbols", DEFAULT_SYMBOLS)):
            try:
                response = self._get(
                    f"{base_url}/quote",
                    headers={"Accept": "application/json"},
                    params={"symbol": symbol, "token": api_key},
                )
                quote = response.json()
            except FetchAuthError:
                raise
            except (FetchError, ValueError) as e:
                self.logger.warning(
                    f"Failed to fetch quote for {symbol}",
                    extra={"integration_id": self.definition.id, "error_type": type(e).__name__},
                )
                continue

            if isinstance(quote, dict) and (quote.get("c") or 0) > 0:
                quotes.append(format_quote(symbol, quote))

        if not quotes:
            raise FetchTransportError(
                "All quote requests failed",
                service_name=self.name,
                integration_id=self.definition.id,
            )

        return FetchResult(
            data={
                "quotes": quotes,
                "lastUpdated": int(time.time()),
                "marketStatus": market_status(),
            }
        )
