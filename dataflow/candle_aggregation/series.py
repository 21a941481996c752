"""
Candle Series

Running candle collection owned by a consumer of the live feed.
The aggregator functions return new candles; this collection keeps them
keyed by interval start and applies incoming batches in arrival order.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from schemas.market_data import Candle, SummaryStats
from dataflow.candle_aggregation.aggregator import (
    MINUTE_MS,
    aggregate_minute_bars,
    compute_summary_stats,
    update_last_candle_with_trade,
)

logger = logging.getLogger(__name__)


class CandleSeries:
    """
    Ordered candles for one symbol.

    Example usage:
        series = CandleSeries("AAPL", max_candles=390)
        series.apply_aggregates(batch)    # AM messages add/replace candles
        series.apply_trades(batch)        # T messages move the last candle
        stats = series.stats()
    """

    def __init__(self, symbol: str, max_candles: Optional[int] = None):
        if max_candles is not None and max_candles <= 0:
            raise ValueError(f"max_candles must be positive, got {max_candles}")
        self.symbol = symbol
        self.max_candles = max_candles
        self._candles: Dict[int, Candle] = {}

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def last(self) -> Optional[Candle]:
        """Most recent candle by interval start"""
        if not self._candles:
            return None
        return self._candles[max(self._candles)]

    def candles(self) -> List[Candle]:
        """Candles sorted by interval start"""
        return [self._candles[key] for key in sorted(self._candles)]

    def upsert(self, candle: Candle) -> Candle:
        """Insert or replace the candle for its interval"""
        self._candles[candle.timestamp] = candle
        self._evict()
        return candle

    def apply_aggregates(
        self, messages: Sequence[Any], interval_minutes: int = 1
    ) -> List[Candle]:
        """
        Apply minute aggregate messages.

        With interval_minutes == 1 each bar replaces the candle for its
        minute. Wider intervals roll each bar into the candle of the
        interval it falls in.

        Returns:
            The touched candles, one per interval, in first-touched order
        """
        if interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")

        interval_ms = interval_minutes * MINUTE_MS
        updated: Dict[int, Candle] = {}
        for bar in aggregate_minute_bars(messages):
            if interval_minutes > 1:
                bar = self._roll_up(bar, interval_ms)
            updated[bar.timestamp] = self.upsert(bar)

        if updated:
            logger.debug(f"{self.symbol}: applied minute bars to {len(updated)} candles")
        return list(updated.values())

    def _roll_up(self, bar: Candle, interval_ms: int) -> Candle:
        start = (bar.timestamp // interval_ms) * interval_ms
        current = self._candles.get(start)
        if current is None:
            return replace(bar, timestamp=start)
        return replace(
            current,
            high=bar.high if bar.high > current.high else current.high,
            low=bar.low if bar.low < current.low else current.low,
            close=bar.close,
        )

    def apply_trades(self, trades: Sequence[Any]) -> Optional[Candle]:
        """Fold the batch's first trade into the last candle"""
        updated = update_last_candle_with_trade(trades, self.last)
        if updated is not None:
            self._candles[updated.timestamp] = updated
        return updated

    def stats(self) -> Optional[SummaryStats]:
        return compute_summary_stats(self.candles())

    def _evict(self) -> None:
        if self.max_candles is None:
            return
        while len(self._candles) > self.max_candles:
            del self._candles[min(self._candles)]
