"""
Polygon Feed - Typed Message Catalog

Candle records and the tagged vendor message types flowing through the system.
"""

from schemas.market_data import Candle, SummaryStats
from schemas.feed_messages import (
    AggregateMessage,
    FeedMessage,
    FrameDecodeError,
    StatusMessage,
    TradeMessage,
    UnknownMessage,
    decode_frame,
    parse_feed_message,
)

__all__ = [
    "Candle",
    "SummaryStats",
    "AggregateMessage",
    "FeedMessage",
    "FrameDecodeError",
    "StatusMessage",
    "TradeMessage",
    "UnknownMessage",
    "decode_frame",
    "parse_feed_message",
]
