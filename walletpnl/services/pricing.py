from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from walletpnl.services.cache import TTLCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuoteResult:
    symbol: str
    price: float
    fetched_at: datetime
    stale: bool = False
    warning: str | None = None


class QuoteProvider(Protocol):
    """Provider interface for the current USD unit price."""

    def get_latest_quote(self, symbol: str) -> QuoteResult:
        ...


class YFinanceProvider:
    """Best-effort provider backed by the free yfinance library."""

    def __init__(self) -> None:
        try:
            import yfinance as yf
        except Exception as exc:  # pragma: no cover - exercised in runtime, not tests
            raise RuntimeError("yfinance is not available") from exc
        self._yf = yf

    def get_latest_quote(self, symbol: str) -> QuoteResult:
        """Last one-minute close of the trading day, e.g. ``ETH-USD``."""
        frame = self._yf.Ticker(symbol).history(period="1d", interval="1m")
        closes = frame["Close"].dropna() if not frame.empty else frame
        if closes.empty:
            raise RuntimeError(f"No intraday price for {symbol}")

        fetched_at = closes.index[-1].to_pydatetime().astimezone(timezone.utc)
        return QuoteResult(symbol=symbol.upper(), price=float(closes.iloc[-1]), fetched_at=fetched_at)


class PricingService:
    """Current token price: a live quote when a symbol is configured, else the fixed price.

    Live quotes are cached for ``ttl_seconds``. When the provider fails the
    last good quote is served as stale, and without one the configured price
    is used.
    """

    def __init__(
        self,
        configured_price_usd: float,
        provider: QuoteProvider | None = None,
        symbol: str = "",
        cache: TTLCache | None = None,
        ttl_seconds: int = 60,
    ) -> None:
        self.configured_price_usd = configured_price_usd
        self.provider = provider
        self.symbol = symbol.strip().upper()
        self.cache = cache if cache is not None else TTLCache()
        self.ttl_seconds = ttl_seconds
        self._last_good: QuoteResult | None = None

    def get_quote(self) -> QuoteResult:
        if self.provider is None or not self.symbol:
            return QuoteResult(
                symbol=self.symbol or "CONFIGURED",
                price=self.configured_price_usd,
                fetched_at=datetime.now(timezone.utc),
            )

        try:
            fresh = self.cache.cached(
                f"price:{self.symbol}",
                self.ttl_seconds * 1000,
                lambda: self.provider.get_latest_quote(self.symbol),
            )
        except Exception as exc:
            logger.warning("quote provider failed symbol=%s error=%s", self.symbol, exc)
            if self._last_good is not None:
                return QuoteResult(
                    symbol=self.symbol,
                    price=self._last_good.price,
                    fetched_at=self._last_good.fetched_at,
                    stale=True,
                    warning=f"Using cached quote due to provider issue: {exc}",
                )
            return QuoteResult(
                symbol=self.symbol,
                price=self.configured_price_usd,
                fetched_at=datetime.now(timezone.utc),
                stale=True,
                warning=f"Using configured price due to provider issue: {exc}",
            )

        if fresh.price <= 0:
            return QuoteResult(
                symbol=self.symbol,
                price=self.configured_price_usd,
                fetched_at=fresh.fetched_at,
                stale=True,
                warning=f"Ignoring non-positive quote for {self.symbol}",
            )
        self._last_good = fresh
        return fresh

    def current_price(self) -> float:
        return self.get_quote().price
