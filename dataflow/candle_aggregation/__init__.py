"""
Candle Aggregation

Turns minute-aggregate and trade messages from the live feed into OHLC
candles, and keeps running per-symbol candle series.
"""

from dataflow.candle_aggregation.aggregator import (
    CandleBuilder,
    MinuteBars,
    aggregate_minute_bars,
    compute_summary_stats,
    group_trades_into_candles,
    update_last_candle_with_trade,
)
from dataflow.candle_aggregation.series import CandleSeries

__all__ = [
    "CandleBuilder",
    "CandleSeries",
    "MinuteBars",
    "aggregate_minute_bars",
    "compute_summary_stats",
    "group_trades_into_candles",
    "update_last_candle_with_trade",
]
