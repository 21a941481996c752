"""
Market Data Types

Candle and summary types produced by the aggregation layer.
These types are used for NATS messaging and the query API responses.
"""

from dataclasses import dataclass
from typing import Optional
import json


@dataclass(frozen=True)
class Candle:
    """OHLC candle keyed by interval start (epoch milliseconds)"""
    timestamp: int
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    def to_chart_point(self) -> dict:
        """Candlestick point in {x, y: [o, h, l, c]} form"""
        return {"x": self.timestamp, "y": [self.open, self.high, self.low, self.close]}

    @classmethod
    def from_dict(cls, data: dict) -> "Candle":
        """Create Candle from dictionary"""
        return cls(
            timestamp=int(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Candle":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))


@dataclass(frozen=True)
class SummaryStats:
    """Display-ready price summary over a candle series"""
    current_price: str
    change: str
    change_percent: str

    def to_dict(self) -> dict:
        return {
            "currentPrice": self.current_price,
            "change": self.change,
            "changePercent": self.change_percent,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "SummaryStats":
        return cls(
            current_price=data["currentPrice"],
            change=data["change"],
            change_percent=data["changePercent"],
        )


def candle_payload(symbol: str, candle: Candle, timeframe: Optional[str] = None) -> str:
    """JSON payload for publishing a candle with its symbol attached"""
    payload = {"symbol": symbol, **candle.to_dict()}
    if timeframe:
        payload["timeframe"] = timeframe
    return json.dumps(payload)
