"""
Feed Message Types

Vendor stream messages parsed into a closed set of tagged types.

Every entry of a stream frame carries an ``ev`` tag:
- ``status`` - connection/auth status notices
- ``AM``     - one-minute aggregate bar (s, o, h, l, c)
- ``T``      - single executed trade (t, p)

Anything else, or an entry whose timestamp cannot be read, becomes an
UnknownMessage. Parsing an entry never raises.
"""

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, List, Optional, Union


STATUS_EVENT = "status"
AGGREGATE_EVENT = "AM"
TRADE_EVENT = "T"

AUTH_SUCCESS = "auth_success"
AUTH_FAILED = "auth_failed"


class FrameDecodeError(ValueError):
    """Raised when a transport frame is not valid JSON"""
    pass


@dataclass(frozen=True)
class StatusMessage:
    """Status notice from the feed (connected, auth_success, ...)"""
    EVENT: ClassVar[str] = STATUS_EVENT

    status: str
    message: str = ""


@dataclass(frozen=True)
class AggregateMessage:
    """Minute aggregate bar"""
    EVENT: ClassVar[str] = AGGREGATE_EVENT

    symbol: Optional[str]
    start: int
    open: float
    high: float
    low: float
    close: float
    end: Optional[int] = None
    volume: Optional[float] = None


@dataclass(frozen=True)
class TradeMessage:
    """Executed trade tick"""
    EVENT: ClassVar[str] = TRADE_EVENT

    symbol: Optional[str]
    timestamp: int
    price: float
    size: Optional[float] = None


@dataclass(frozen=True)
class UnknownMessage:
    """Unrecognized or unreadable entry, kept only for logging"""
    EVENT: ClassVar[str] = ""

    payload: Any
    reason: str = "unrecognized event"


FeedMessage = Union[StatusMessage, AggregateMessage, TradeMessage, UnknownMessage]

_PARSED_TYPES = (StatusMessage, AggregateMessage, TradeMessage, UnknownMessage)


def parse_price(value: Any) -> float:
    """Parse a decimal string or number; non-numeric input becomes NaN."""
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _parse_optional(value: Any) -> Optional[float]:
    if value is None:
        return None
    return parse_price(value)


def parse_epoch_ms(value: Any) -> int:
    """
    Read a timestamp as epoch milliseconds.

    Accepts integers, floats, numeric strings and ISO-8601 strings.

    Raises:
        ValueError: If the value cannot be read as a timestamp
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid timestamp: {value!r}")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            number = None
        if number is not None:
            return parse_epoch_ms(number)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise ValueError(f"Invalid timestamp: {value!r}")


def parse_feed_message(entry: Any) -> FeedMessage:
    """Parse a single decoded frame entry into a feed message"""
    if isinstance(entry, _PARSED_TYPES):
        return entry
    if not isinstance(entry, dict):
        return UnknownMessage(payload=entry, reason="entry is not an object")

    event = entry.get("ev")

    if event == STATUS_EVENT:
        return StatusMessage(
            status=str(entry.get("status", "")),
            message=str(entry.get("message", "")),
        )

    if event == AGGREGATE_EVENT:
        try:
            start = parse_epoch_ms(entry.get("s"))
        except ValueError as e:
            return UnknownMessage(payload=entry, reason=str(e))
        end = entry.get("e")
        try:
            end = parse_epoch_ms(end) if end is not None else None
        except ValueError:
            end = None
        return AggregateMessage(
            symbol=entry.get("sym"),
            start=start,
            open=parse_price(entry.get("o")),
            high=parse_price(entry.get("h")),
            low=parse_price(entry.get("l")),
            close=parse_price(entry.get("c")),
            end=end,
            volume=_parse_optional(entry.get("v")),
        )

    if event == TRADE_EVENT:
        try:
            timestamp = parse_epoch_ms(entry.get("t"))
        except ValueError as e:
            return UnknownMessage(payload=entry, reason=str(e))
        return TradeMessage(
            symbol=entry.get("sym"),
            timestamp=timestamp,
            price=parse_price(entry.get("p")),
            size=_parse_optional(entry.get("s")),
        )

    return UnknownMessage(payload=entry, reason=f"unrecognized event {event!r}")


def decode_frame(raw: Union[str, bytes]) -> List[FeedMessage]:
    """
    Decode one transport frame into feed messages.

    A frame is normally a JSON array; a lone JSON object is treated as a
    batch of one.

    Raises:
        FrameDecodeError: If the frame is not valid JSON
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameDecodeError(f"Frame is not UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameDecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, list):
        data = [data]
    return [parse_feed_message(entry) for entry in data]
