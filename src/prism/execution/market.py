"""MarketDataCollector: per-symbol market snapshots for the decision step."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from prism.exchange.base import ExchangeError, ExchangeGateway
from prism.exchange.types import Kline

logger = structlog.get_logger()


@dataclass
class KlineSummary:
    """Compact description of one kline window."""

    interval: str
    last_close: float
    change_percent: float
    high: float
    low: float
    candles: int

    @classmethod
    def from_klines(cls, interval: str, klines: list[Kline]) -> KlineSummary:
        if not klines:
            return cls(interval, 0.0, 0.0, 0.0, 0.0, 0)
        first_open = klines[0].open
        last_close = klines[-1].close
        change = (last_close - first_open) / first_open * 100 if first_open else 0.0
        return cls(
            interval=interval,
            last_close=last_close,
            change_percent=change,
            high=max(k.high for k in klines),
            low=min(k.low for k in klines),
            candles=len(klines),
        )


@dataclass
class MarketSnapshot:
    symbol: str
    price: float
    funding_rate: float
    klines: dict[str, list[Kline]] = field(default_factory=dict)
    summaries: dict[str, KlineSummary] = field(default_factory=dict)


class MarketDataCollector:
    """Collect price, funding and kline windows for a set of symbols.

    Parameters
    ----------
    gateway : ExchangeGateway
        Market data source.
    intervals : list[str] | None
        Kline intervals (default 5m, 15m, 1h, 4h).
    limit : int
        Candles per interval (default 60).
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        intervals: list[str] | None = None,
        limit: int = 60,
    ) -> None:
        self._gateway = gateway
        self._intervals = intervals or ["5m", "15m", "1h", "4h"]
        self._limit = limit

    async def collect(self, symbols: list[str]) -> dict[str, MarketSnapshot]:
        """Collect one snapshot per symbol.

        Price and klines are required; a missing funding rate is logged
        and reported as 0.

        Raises
        ------
        ExchangeError
            If price or kline data for any symbol cannot be fetched.
        """
        snapshots: dict[str, MarketSnapshot] = {}
        for symbol in symbols:
            price = await self._gateway.get_current_price(symbol)
            try:
                funding = await self._gateway.get_funding_rate(symbol)
            except ExchangeError as exc:
                logger.warning("funding_rate_unavailable", symbol=symbol, error=str(exc))
                funding = 0.0

            snapshot = MarketSnapshot(symbol=symbol, price=price, funding_rate=funding)
            for interval in self._intervals:
                klines = await self._gateway.get_klines(symbol, interval, self._limit)
                snapshot.klines[interval] = klines
                snapshot.summaries[interval] = KlineSummary.from_klines(interval, klines)
            snapshots[symbol] = snapshot

        logger.debug("market_data_collected", symbols=symbols, intervals=self._intervals)
        return snapshots
