"""
NATS Publisher

Publishes live candles and summary stats built by the Polygon bridge so
chart clients and other services can follow a symbol without holding
their own Polygon session.

Subjects:
- candles.{symbol}.{tf}  - new or updated candle (JSON)
- stats.{symbol}         - summary stats for the running series (JSON)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import nats
from nats.aio.client import Client as NatsConnection

logger = logging.getLogger(__name__)


@dataclass
class NatsConfig:
    """Where and how the bridge publishes"""
    servers: List[str] = field(default_factory=lambda: ["nats://localhost:4222"])
    name: str = "polygon-bridge"
    reconnect_time_wait: float = 2.0
    max_reconnect_attempts: int = -1  # -1 keeps retrying

    @classmethod
    def from_env(cls, prefix: str = "NATS") -> "NatsConfig":
        """NATS_SERVERS is a comma-separated list of URLs"""
        raw = os.getenv(f"{prefix}_SERVERS", "nats://localhost:4222")
        return cls(
            servers=[server.strip() for server in raw.split(",") if server.strip()],
            name=os.getenv(f"{prefix}_CLIENT_NAME", "polygon-bridge"),
        )


class NatsClient:
    """
    Thin publishing wrapper around a nats-py connection.

    nats-py handles reconnects itself; while it is reconnecting
    is_connected is False and callers skip publishing.
    """

    def __init__(self, config: Optional[NatsConfig] = None):
        self.config = config or NatsConfig()
        self._nc: Optional[NatsConnection] = None

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    async def connect(self) -> None:
        if self.is_connected:
            return

        async def on_error(e):
            logger.error(f"NATS error: {e}")

        async def on_disconnect():
            logger.warning(f"Lost NATS connection to {self.config.servers}")

        async def on_reconnect():
            logger.info(f"NATS reconnected to {self._nc.connected_url.netloc}")

        async def on_close():
            logger.info("NATS connection closed")

        try:
            self._nc = await nats.connect(
                servers=self.config.servers,
                name=self.config.name,
                reconnect_time_wait=self.config.reconnect_time_wait,
                max_reconnect_attempts=self.config.max_reconnect_attempts,
                error_cb=on_error,
                disconnected_cb=on_disconnect,
                reconnected_cb=on_reconnect,
                closed_cb=on_close,
            )
        except Exception as e:
            logger.error(f"Could not reach NATS at {self.config.servers}: {e}")
            raise

        logger.info(f"Publishing to NATS at {self.config.servers} as {self.config.name}")

    async def close(self) -> None:
        """Flush pending publishes and close"""
        if self._nc is None or self._nc.is_closed:
            return
        await self._nc.drain()

    async def publish_json(self, subject: str, data: str) -> None:
        """
        Publish an already-encoded JSON document.

        Raises:
            RuntimeError: If there is no live connection
        """
        if not self.is_connected:
            raise RuntimeError(f"Cannot publish to {subject}: NATS not connected")
        payload = data.encode("utf-8")
        await self._nc.publish(subject, payload)
        logger.debug(f"{subject} <- {len(payload)} bytes")


class Topics:
    """Subject names used by the bridge"""

    @staticmethod
    def _token(name: str) -> str:
        # Subject tokens cannot contain '.', '*', '>' or whitespace
        return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)

    @staticmethod
    def candles(symbol: str, timeframe: str) -> str:
        return f"candles.{Topics._token(symbol)}.{Topics._token(timeframe)}"

    @staticmethod
    def stats(symbol: str) -> str:
        return f"stats.{Topics._token(symbol)}"
