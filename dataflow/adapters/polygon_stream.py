"""
Polygon Stream Client

Maintains one live WebSocket session to the Polygon quote stream.
Authenticates, keeps the subscription set applied across reconnects and
delivers every decoded frame to a consumer callback in arrival order.

Channels per symbol:
- AM.{symbol}  - minute aggregates
- T.{symbol}   - trades
"""

import asyncio
import inspect
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from schemas.feed_messages import (
    AUTH_FAILED,
    AUTH_SUCCESS,
    FeedMessage,
    FrameDecodeError,
    StatusMessage,
    UnknownMessage,
    decode_frame,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[List[FeedMessage]], Union[None, Awaitable[None]]]


class ConnectionState(str, Enum):
    """Lifecycle states of the stream connection"""
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"
    RECONNECT_PENDING = "reconnect_pending"
    CLOSED = "closed"


LIVE_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.AUTHENTICATING,
    ConnectionState.SUBSCRIBED,
)


@dataclass
class StreamConfig:
    """Polygon stream connection configuration"""
    url: str = "wss://socket.polygon.io/stocks"
    api_key: str = ""
    reconnect_delay: float = 3.0  # Fixed delay, retried forever
    open_timeout: Optional[float] = 10.0

    @classmethod
    def from_env(cls, prefix: str = "POLYGON") -> "StreamConfig":
        """Create config from environment variables"""
        return cls(
            url=os.getenv(f"{prefix}_WS_URL", "wss://socket.polygon.io/stocks"),
            api_key=os.getenv(f"{prefix}_API_KEY", ""),
            reconnect_delay=float(os.getenv(f"{prefix}_RECONNECT_DELAY", "3.0")),
        )


def _channels(prefix: str, symbols: Iterable[str]) -> List[str]:
    return [f"{prefix}.{symbol}" for symbol in symbols]


def _normalize(symbols: Iterable[str]) -> List[str]:
    normalized = []
    for symbol in symbols:
        symbol = symbol.strip().upper()
        if symbol and symbol not in normalized:
            normalized.append(symbol)
    return normalized


class PolygonStreamClient:
    """
    Auto-reconnecting Polygon stream client.

    States: IDLE -> CONNECTING -> AUTHENTICATING -> SUBSCRIBED
            -> DISCONNECTED -> RECONNECT_PENDING -> CONNECTING -> ...
    close() moves any state to CLOSED.

    Subscriptions are sent right after the auth request without waiting for
    the auth_success status; the status only marks the session as
    authenticated for diagnostics.

    Example usage:
        client = PolygonStreamClient(StreamConfig.from_env(), on_message=handle_batch)
        await client.subscribe(["AAPL"])   # remembered until connected
        await client.connect()
        ...
        await client.close()
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        on_message: Optional[MessageCallback] = None,
        connect_factory: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.config = config or StreamConfig()
        self._on_message = on_message
        self._connect_factory = connect_factory or self._open_websocket
        self._credential: Optional[str] = None
        self._subscriptions: Dict[str, None] = {}
        self._ws: Optional[Any] = None
        self._state = ConnectionState.IDLE
        self._authenticated = False
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """True once subscriptions have been sent on a live session"""
        return self._state is ConnectionState.SUBSCRIBED

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def subscriptions(self) -> tuple:
        return tuple(self._subscriptions)

    async def _open_websocket(self, url: str) -> Any:
        return await websockets.connect(url, open_timeout=self.config.open_timeout)

    async def connect(self, credential: Optional[str] = None) -> None:
        """
        Open the stream session.

        No-op while a session is connecting or live. Failures are never
        raised; they schedule a reconnect after the fixed delay.

        Args:
            credential: API key; defaults to the last credential used, then config.api_key

        Raises:
            ValueError: If no credential is available
        """
        credential = credential or self._credential or self.config.api_key
        if not credential:
            raise ValueError("A non-empty credential is required to connect")

        if self._state is ConnectionState.CLOSED:
            logger.warning("Stream client is closed; ignoring connect()")
            return
        if self._state in LIVE_STATES:
            logger.debug(f"Stream already {self._state.value}; ignoring connect()")
            return

        self._credential = credential
        self._cancel_reconnect()
        self._state = ConnectionState.CONNECTING
        self._authenticated = False

        try:
            ws = await self._connect_factory(self.config.url)
        except Exception as e:
            logger.error(f"Failed to connect to {self.config.url}: {e}")
            if self._state is ConnectionState.CLOSED:
                return
            self._state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return

        if self._state is ConnectionState.CLOSED:
            # close() ran while the transport was opening
            await self._close_transport(ws)
            return

        self._ws = ws
        logger.info(f"Connected to {self.config.url}")

        try:
            self._state = ConnectionState.AUTHENTICATING
            await self._send({"action": "auth", "params": credential})
            await self._sync_subscriptions()
        except Exception as e:
            logger.error(f"Stream handshake failed: {e}")
            self._ws = None
            await self._close_transport(ws)
            if self._state is not ConnectionState.CLOSED:
                self._state = ConnectionState.DISCONNECTED
                self._schedule_reconnect()
            return

        if self._state is ConnectionState.CLOSED:
            return

        self._state = ConnectionState.SUBSCRIBED
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def subscribe(self, symbols: Iterable[str]) -> None:
        """
        Add symbols to the subscription set.

        Sent immediately when subscribed, otherwise applied on the next
        successful connection.
        """
        symbols = _normalize(symbols)
        if not symbols:
            return

        for symbol in symbols:
            self._subscriptions[symbol] = None

        if not self.is_connected:
            logger.warning(
                f"Cannot subscribe to {symbols} - stream not connected; "
                f"will subscribe on next connection"
            )
            return

        try:
            await self._send_subscribe(symbols)
        except Exception as e:
            logger.warning(f"Failed to send subscribe for {symbols}: {e}")

    async def unsubscribe(self, symbols: Iterable[str]) -> None:
        """Remove symbols from the subscription set"""
        symbols = _normalize(symbols)
        if not symbols:
            return

        for symbol in symbols:
            self._subscriptions.pop(symbol, None)

        if not self.is_connected:
            logger.warning(f"Cannot unsubscribe from {symbols} - stream not connected")
            return

        try:
            await self._send({
                "action": "unsubscribe",
                "params": _channels("AM", symbols) + _channels("T", symbols),
            })
            logger.info(f"Unsubscribed from {symbols}")
        except Exception as e:
            logger.warning(f"Failed to send unsubscribe for {symbols}: {e}")

    async def close(self) -> None:
        """Tear down the session and cancel any pending reconnect"""
        if self._state is ConnectionState.CLOSED:
            return

        self._state = ConnectionState.CLOSED
        self._cancel_reconnect()

        reader = self._reader_task
        self._reader_task = None
        if reader and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None:
            await self._close_transport(ws)

        logger.info("Stream client closed")

    async def _send(self, payload: dict) -> None:
        await self._ws.send(json.dumps(payload))

    async def _send_subscribe(self, symbols: List[str]) -> None:
        if not symbols:
            return
        await self._send({"action": "subscribe", "params": _channels("AM", symbols)})
        await self._send({"action": "subscribe", "params": _channels("T", symbols)})
        logger.info(f"Subscribed to {symbols}")

    async def _sync_subscriptions(self) -> None:
        """
        Send the whole subscription set on a fresh session.

        subscribe()/unsubscribe() calls made while these sends are in
        flight only touch the set, so keep sending until it settles.
        """
        sent: List[str] = []
        while True:
            pending = [symbol for symbol in self._subscriptions if symbol not in sent]
            if not pending:
                break
            await self._send_subscribe(pending)
            sent.extend(pending)

        removed = [symbol for symbol in sent if symbol not in self._subscriptions]
        if removed:
            await self._send({
                "action": "unsubscribe",
                "params": _channels("AM", removed) + _channels("T", removed),
            })

    async def _close_transport(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")

    async def _read_loop(self, ws: Any) -> None:
        """Deliver frames until the transport closes or errors"""
        try:
            async for raw in ws:
                if self._state is ConnectionState.CLOSED:
                    return
                await self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.warning(f"Stream connection closed: {e}")
        except Exception as e:
            logger.error(f"Stream transport error: {e}")

        if self._ws is ws:
            self._ws = None
        if self._state is ConnectionState.CLOSED:
            return

        logger.warning(
            f"Disconnected from {self.config.url}; "
            f"reconnecting in {self.config.reconnect_delay}s"
        )
        self._state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    async def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            batch = decode_frame(raw)
        except FrameDecodeError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        messages = []
        for message in batch:
            if isinstance(message, UnknownMessage):
                logger.debug(f"Dropping unknown message ({message.reason}): {message.payload}")
                continue
            if isinstance(message, StatusMessage):
                self._handle_status(message)
            messages.append(message)

        if messages:
            await self._deliver(messages)

    def _handle_status(self, message: StatusMessage) -> None:
        if message.status == AUTH_SUCCESS:
            self._authenticated = True
            logger.info("Authenticated with Polygon stream")
        elif message.status == AUTH_FAILED:
            logger.error(f"Polygon stream authentication failed: {message.message}")
        else:
            logger.debug(f"Stream status: {message.status} {message.message}")

    async def _deliver(self, messages: List[FeedMessage]) -> None:
        if self._on_message is None or self._state is ConnectionState.CLOSED:
            return
        try:
            result = self._on_message(messages)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Message callback failed: {e}", exc_info=True)

    def _schedule_reconnect(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        self._cancel_reconnect()
        self._state = ConnectionState.RECONNECT_PENDING
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.config.reconnect_delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        if self._state is not ConnectionState.RECONNECT_PENDING:
            return
        logger.info(f"Reconnecting to {self.config.url}...")
        await self.connect()
