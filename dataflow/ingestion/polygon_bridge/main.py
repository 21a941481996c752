"""
Polygon Candle Bridge

Streams Polygon minute aggregates and trades, folds them into per-symbol
candle series and publishes the updated candles and stats to NATS.

Published subjects:
- candles.{symbol}.{tf}  - every new or updated candle
- stats.{symbol}         - summary stats after each update

Run with:
    python -m dataflow.ingestion.polygon_bridge.main
"""

import asyncio
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics
from dataflow.adapters.polygon_stream import PolygonStreamClient
from dataflow.candle_aggregation.aggregator import MINUTE_MS, group_trades_into_candles
from dataflow.candle_aggregation.series import CandleSeries
from dataflow.config.loader import ConfigLoader, FeedConfig
from schemas.feed_messages import AggregateMessage, FeedMessage, TradeMessage
from schemas.market_data import Candle, candle_payload

logger = logging.getLogger(__name__)


class PolygonCandleBridge:
    """
    Consumer of the Polygon stream.

    Minute aggregates replace the candle for their minute, or roll up into
    the candle of their interval when interval_minutes > 1. Trades past the
    last known interval open new candles; the rest move the last candle
    through update_last_candle_with_trade.
    """

    def __init__(self, nats_client: NatsClient, feed: FeedConfig):
        self.nats = nats_client
        self.feed = feed
        self.timeframe = f"{feed.interval_minutes}m"
        self._series: Dict[str, CandleSeries] = {}

        # Metrics
        self._batches = 0
        self._candles_published = 0

    def series(self, symbol: str) -> CandleSeries:
        if symbol not in self._series:
            self._series[symbol] = CandleSeries(symbol, max_candles=self.feed.max_candles)
        return self._series[symbol]

    async def handle_batch(self, messages: List[FeedMessage]) -> None:
        """Stream callback: fold one frame's messages into the series"""
        self._batches += 1

        aggregates: Dict[str, List[AggregateMessage]] = defaultdict(list)
        trades: Dict[str, List[TradeMessage]] = defaultdict(list)
        for message in messages:
            if isinstance(message, AggregateMessage) and message.symbol:
                aggregates[message.symbol].append(message)
            elif isinstance(message, TradeMessage) and message.symbol:
                trades[message.symbol].append(message)

        for symbol, bars in aggregates.items():
            updated = self.series(symbol).apply_aggregates(bars, self.feed.interval_minutes)
            await self._publish(symbol, updated)

        for symbol, symbol_trades in trades.items():
            await self._publish(symbol, self._apply_trades(symbol, symbol_trades))

    def _apply_trades(self, symbol: str, trades: List[TradeMessage]) -> List[Candle]:
        series = self.series(symbol)
        last = series.last
        interval_ms = self.feed.interval_minutes * MINUTE_MS

        # Trades up to the last known interval move the last candle; later
        # ones open new candles
        current: List[TradeMessage] = []
        newer: List[TradeMessage] = []
        for trade in trades:
            bucket = (trade.timestamp // interval_ms) * interval_ms
            if last is not None and bucket <= last.timestamp:
                current.append(trade)
            else:
                newer.append(trade)

        updated: List[Candle] = []
        if current:
            candle = series.apply_trades(current)
            if candle is not None:
                updated.append(candle)
        for candle in group_trades_into_candles(newer, self.feed.interval_minutes):
            updated.append(series.upsert(candle))
        return updated

    async def _publish(self, symbol: str, candles: List[Candle]) -> None:
        if not candles:
            return
        if not self.nats.is_connected:
            logger.debug(f"NATS not connected - {len(candles)} {symbol} candles not published")
            return

        try:
            for candle in candles:
                await self.nats.publish_json(
                    Topics.candles(symbol, self.timeframe),
                    candle_payload(symbol, candle, self.timeframe),
                )
                self._candles_published += 1

            stats = self.series(symbol).stats()
            if stats is not None:
                await self.nats.publish_json(Topics.stats(symbol), stats.to_json())
        except Exception as e:
            logger.error(f"Failed to publish {symbol} candles: {e}")

    def get_metrics(self) -> dict:
        return {
            "batches": self._batches,
            "candles_published": self._candles_published,
            "symbols": {symbol: len(series) for symbol, series in self._series.items()},
        }


async def main():
    """
    Main entry point for the bridge.

    Environment Variables:
        POLYGON_API_KEY: Polygon API key (required)
        CONFIG_DIR: Config directory path (default: "config")
        NATS_SERVERS: NATS server URLs (default: "nats://localhost:4222")
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    api_key = os.getenv("POLYGON_API_KEY", "")
    if not api_key:
        raise ValueError("POLYGON_API_KEY is required")

    config_dir = Path(os.getenv("CONFIG_DIR", "config"))
    feed = ConfigLoader(config_dir).load_feed()

    nats_client = NatsClient(NatsConfig.from_env())
    await nats_client.connect()

    bridge = PolygonCandleBridge(nats_client, feed)
    stream: Optional[PolygonStreamClient] = None

    try:
        stream = PolygonStreamClient(
            feed.to_stream_config(api_key),
            on_message=bridge.handle_batch,
        )
        await stream.subscribe(feed.symbols)
        await stream.connect()

        logger.info(f"Bridge running for {feed.symbols}. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)
            logger.info(f"Metrics: state={stream.state.value} {bridge.get_metrics()}")
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        if stream is not None:
            await stream.close()
        await nats_client.close()
        logger.info("Bridge stopped")


if __name__ == "__main__":
    asyncio.run(main())
