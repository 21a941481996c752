"""
Candle Aggregator

Folds vendor aggregate and trade messages into OHLC candles.

All functions are pure: they return new Candle values and never retain or
mutate the caller's collection. Inputs may be raw decoded dicts
({"ev": "AM", ...}) or already-parsed feed messages.
"""

import logging
import math
from dataclasses import replace
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from schemas.feed_messages import AggregateMessage, TradeMessage, parse_feed_message
from schemas.market_data import Candle, SummaryStats

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000

# Above this magnitude fixed-point output switches to exponent notation
FIXED_NOTATION_LIMIT = 1e21


class CandleBuilder:
    """Builds a candle from trades arriving for one interval"""

    def __init__(self, start_time: int):
        self.start_time = start_time
        self.open: Optional[float] = None
        self.high: Optional[float] = None
        self.low: Optional[float] = None
        self.close: Optional[float] = None
        self.trade_count: int = 0

    def add_price(self, price: float) -> None:
        """Add a trade price to this candle"""
        if self.open is None:
            self.open = price
            self.high = price
            self.low = price
        else:
            if price > self.high:
                self.high = price
            if price < self.low:
                self.low = price

        # Last arrival wins, regardless of trade timestamp
        self.close = price
        self.trade_count += 1

    def is_empty(self) -> bool:
        """Check if candle has any data"""
        return self.open is None

    def build(self) -> Candle:
        """Build the final Candle object"""
        if self.is_empty():
            raise ValueError("Cannot build empty candle")

        return Candle(
            timestamp=self.start_time,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
        )


class MinuteBars:
    """
    Lazy view of candles built from aggregate-bar messages.

    Iterating walks the input again each time, so the view can be consumed
    more than once as long as the underlying sequence is unchanged.
    """

    def __init__(self, messages: Sequence[Any]):
        self._messages = messages if messages is not None else ()

    def __iter__(self) -> Iterator[Candle]:
        for item in self._messages:
            message = parse_feed_message(item)
            if not isinstance(message, AggregateMessage):
                continue
            yield Candle(
                timestamp=message.start,
                open=message.open,
                high=message.high,
                low=message.low,
                close=message.close,
            )

    def to_list(self) -> List[Candle]:
        return list(self)


def aggregate_minute_bars(messages: Sequence[Any]) -> MinuteBars:
    """
    Map minute aggregate messages to candles, in input order.

    Non-aggregate entries are skipped. Non-numeric price fields come
    through as NaN.
    """
    return MinuteBars(messages)


def _first_trade(trades: Sequence[Any]) -> Optional[TradeMessage]:
    for item in trades:
        message = parse_feed_message(item)
        if isinstance(message, TradeMessage):
            return message
    return None


def update_last_candle_with_trade(
    trades: Sequence[Any], last_candle: Optional[Candle]
) -> Optional[Candle]:
    """
    Fold a trade price into a copy of the most recent candle.

    Only the first trade message in the batch is used. Returns None when
    either input is empty or the batch holds no trade.

    Args:
        trades: Batch of trade messages (other events are ignored)
        last_candle: Current most recent candle

    Returns:
        Updated copy of last_candle, or None
    """
    if not trades or last_candle is None:
        return None

    trade = _first_trade(trades)
    if trade is None:
        return None

    price = trade.price
    high = last_candle.high
    low = last_candle.low
    if price > high:
        high = price
    if price < low:
        low = price

    return replace(last_candle, high=high, low=low, close=price)


def group_trades_into_candles(
    trades: Sequence[Any], interval_minutes: int = 1
) -> List[Candle]:
    """
    Bucket trades into fixed-width candles.

    Buckets are keyed by the interval start (trade time floored to the
    interval). Within a bucket, close follows arrival order rather than
    trade timestamp. The result is sorted by interval start.

    Raises:
        ValueError: If interval_minutes is not positive
    """
    if interval_minutes <= 0:
        raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")
    if not trades:
        return []

    interval_ms = int(interval_minutes * MINUTE_MS)
    builders: Dict[int, CandleBuilder] = {}

    for item in trades:
        message = parse_feed_message(item)
        if not isinstance(message, TradeMessage):
            continue

        key = (message.timestamp // interval_ms) * interval_ms
        builder = builders.get(key)
        if builder is None:
            builder = CandleBuilder(key)
            builders[key] = builder
        builder.add_price(message.price)

    logger.debug(f"Grouped trades into {len(builders)} candles ({interval_minutes}m)")

    return [builders[key].build() for key in sorted(builders)]


def to_fixed(value: float, digits: int = 2) -> str:
    """
    Format a float with a fixed number of decimals, rounding half up.

    Rounds the exact binary value with ties away from zero and spells
    non-finite values as NaN / Infinity / -Infinity. Magnitudes of 1e21
    and up are written in exponent form ("1e+30").
    """
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if abs(value) >= FIXED_NOTATION_LIMIT:
        return repr(float(value))
    if value == 0:
        value = 0.0
    quantum = Decimal(1).scaleb(-digits)
    with localcontext() as ctx:
        ctx.prec = 24 + digits
        return str(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _percent(change: float, base: float) -> float:
    # Zero base is left unguarded and surfaces as Infinity / NaN
    if base == 0:
        if change == 0 or math.isnan(change):
            return math.nan
        return math.copysign(math.inf, change)
    return change / base * 100


def compute_summary_stats(candles: Iterable[Candle]) -> Optional[SummaryStats]:
    """
    Summarize a candle series for display.

    currentPrice is the last close, change is last close minus first open,
    changePercent is change relative to first open.
    """
    candles = list(candles)
    if not candles:
        return None

    open_price = candles[0].open
    current_price = candles[-1].close
    change = current_price - open_price

    return SummaryStats(
        current_price=to_fixed(current_price),
        change=to_fixed(change),
        change_percent=to_fixed(_percent(change, open_price)),
    )
