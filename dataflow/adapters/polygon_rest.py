"""
Polygon REST Client

Stateless pass-through for historical minute bars. No retries, no caching.
Also hosts the small date/market-hours helpers used by the query API.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, time
from typing import List, Optional
from zoneinfo import ZoneInfo

import httpx

from schemas.market_data import Candle
from schemas.feed_messages import parse_epoch_ms, parse_price

logger = logging.getLogger(__name__)

EASTERN = ZoneInfo("America/New_York")
MARKET_OPEN = time(9, 30)
MARKET_CLOSE = time(16, 0)
MAX_MINUTES_PER_DAY = 1440


class HistoricalDataError(Exception):
    """Raised when historical bars cannot be fetched"""
    pass


@dataclass
class PolygonRestConfig:
    """Polygon REST API configuration"""
    base_url: str = "https://api.polygon.io"
    api_key: str = ""
    timeout: float = 10.0

    @classmethod
    def from_env(cls, prefix: str = "POLYGON") -> "PolygonRestConfig":
        """Create config from environment variables"""
        return cls(
            base_url=os.getenv(f"{prefix}_REST_URL", "https://api.polygon.io"),
            api_key=os.getenv(f"{prefix}_API_KEY", ""),
            timeout=float(os.getenv(f"{prefix}_REST_TIMEOUT", "10.0")),
        )


def format_polygon_date(date: str) -> str:
    """'2024-01-05' -> '20240105'"""
    return date.replace("-", "")


def is_market_open(now: Optional[datetime] = None) -> bool:
    """
    Rough US equity session check: weekdays 09:30-16:00 Eastern, inclusive.

    Holidays and half days are not accounted for.
    """
    if now is None:
        now = datetime.now(EASTERN)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=EASTERN)
    else:
        now = now.astimezone(EASTERN)

    if now.weekday() >= 5:
        return False

    current = now.time().replace(second=0, microsecond=0)
    return MARKET_OPEN <= current <= MARKET_CLOSE


class PolygonRestClient:
    """Async client for Polygon aggregate bars"""

    def __init__(
        self,
        config: Optional[PolygonRestConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or PolygonRestConfig()
        self._client = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_minute_bars(self, symbol: str, date: str) -> List[Candle]:
        """
        Fetch one trading day of 1-minute bars.

        Args:
            symbol: Ticker (e.g., AAPL)
            date: Day as YYYY-MM-DD

        Returns:
            Candles in ascending time order; empty if Polygon has no data

        Raises:
            HistoricalDataError: On transport or HTTP errors
        """
        day = format_polygon_date(date)
        path = f"/v2/aggs/ticker/{symbol}/range/1/minute/{day}/{day}"
        params = {
            "adjusted": "true",
            "sort": "asc",
            "limit": MAX_MINUTES_PER_DAY,
            "apiKey": self.config.api_key,
        }

        logger.info(f"Fetching minute bars for {symbol} on {date}")
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Polygon returned {e.response.status_code} for {symbol} {date}")
            raise HistoricalDataError(
                f"Polygon request failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch minute bars for {symbol} {date}: {e}")
            raise HistoricalDataError(f"Failed to fetch minute bars: {e}") from e

        if not isinstance(data, dict):
            raise HistoricalDataError("Unexpected response body from Polygon")

        results = data.get("results") or []
        candles = []
        for item in results:
            try:
                timestamp = parse_epoch_ms(item.get("t"))
            except ValueError:
                logger.warning(f"Skipping bar without timestamp: {item}")
                continue
            candles.append(
                Candle(
                    timestamp=timestamp,
                    open=parse_price(item.get("o")),
                    high=parse_price(item.get("h")),
                    low=parse_price(item.get("l")),
                    close=parse_price(item.get("c")),
                )
            )

        logger.info(f"Fetched {len(candles)} minute bars for {symbol} on {date}")
        return candles
