# medimart_api/tracking_client/client.py

import asyncio
import json
import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from medimart_api import settings
from medimart_api.events import (
    NOTIFICATION_READ, NOTIFICATION_READ_ALL, ORDER_SUBSCRIBE, ORDER_UNSUBSCRIBE,
    SERVER_EVENT_MODELS, WireModel, frame
)
from medimart_api.tracking_client.registry import EventHandler, HandlerRegistry

logger = logging.getLogger(__name__)

# Local events, never sent by the server
SOCKET_CONNECTED = "socket:connected"
SOCKET_DISCONNECTED = "socket:disconnected"
SOCKET_ERROR = "socket:error"

CLIENT_DISCONNECT = "io client disconnect"
MAX_ATTEMPTS_REACHED = "max reconnect attempts reached"


def with_token(url: str, token: str | None) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    query = [(key, value) for key, value in parse_qsl(parts.query) if key != "token"]
    query.append(("token", token))
    return urlunsplit(parts._replace(query=urlencode(query)))


class TrackingClient:
    """
    Client end of the order tracking channel.

    ``connect()`` starts a background task that owns the socket. Dropped
    connections are retried with capped exponential backoff; after
    ``max_reconnect_attempts`` consecutive failures the client gives up,
    emits ``socket:disconnected`` and clears its handlers. A connection that
    closes before delivering a single frame counts as a failure.

    Order subscriptions are remembered and sent again after every reconnect.
    Events emitted by the server while the socket was down are not replayed.
    """

    def __init__(self, url: str | None = None, token: str | None = None, *,
                 max_reconnect_attempts: int = 5,
                 reconnect_delay: float = 1.0,
                 reconnect_delay_max: float = 5.0,
                 connect=websockets.connect):
        self.url = with_token(url or settings.WS_URL, token)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.handlers = HandlerRegistry()
        self.subscriptions: set[str] = set()

        self._connect = connect
        self._connection = None
        self._connected = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def on(self, event: str, handler: EventHandler):
        self.handlers.on(event, handler)

    def off(self, event: str, handler: EventHandler):
        self.handlers.off(event, handler)

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the ``attempt``-th consecutive failure."""
        return min(self.reconnect_delay * 2 ** (attempt - 1), self.reconnect_delay_max)

    async def connect(self):
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Returns once connected or once the client has given up."""
        if self.is_connected:
            return True
        if self._task is None:
            return False
        waiter = asyncio.ensure_future(self._connected.wait())
        await asyncio.wait({waiter, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if not waiter.done():
            waiter.cancel()
        return self.is_connected

    async def wait_closed(self):
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def disconnect(self):
        self._closing = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        connection, self._connection = self._connection, None
        self._connected.clear()
        if connection is not None:
            await connection.close()
            logger.info("Tracking socket disconnected by client")
            self.handlers.emit(SOCKET_DISCONNECTED, CLIENT_DISCONNECT)
        self.subscriptions.clear()
        self.handlers.clear()

    async def send(self, event: str, data: dict | WireModel | None = None) -> bool:
        connection = self._connection
        if connection is None:
            logger.warning(f"Cannot send {event}: socket is not connected")
            return False
        try:
            await connection.send(json.dumps(frame(event, data if data is not None else {})))
        except ConnectionClosed as e:
            logger.error(f"Failed to send {event}: {e}")
            return False
        return True

    async def subscribe_to_order(self, order_id) -> bool:
        order_id = str(order_id)
        self.subscriptions.add(order_id)
        return await self.send(ORDER_SUBSCRIBE, {"orderId": order_id})

    async def unsubscribe_from_order(self, order_id) -> bool:
        order_id = str(order_id)
        self.subscriptions.discard(order_id)
        return await self.send(ORDER_UNSUBSCRIBE, {"orderId": order_id})

    async def mark_notification_read(self, notification_id: int) -> bool:
        return await self.send(NOTIFICATION_READ, {"notificationId": notification_id})

    async def mark_all_notifications_read(self) -> bool:
        return await self.send(NOTIFICATION_READ_ALL)

    async def _run(self):
        failures = 0
        delay = 0.0
        while not self._closing:
            if delay:
                await asyncio.sleep(delay)
            try:
                connection = await self._connect(self.url)
            except Exception as e:
                failures += 1
                logger.error(f"Tracking socket connection failed ({failures}/{self.max_reconnect_attempts}): {e}")
                self.handlers.emit(SOCKET_ERROR, e)
                if failures >= self.max_reconnect_attempts:
                    self._give_up()
                    return
                delay = self.backoff(failures)
                continue

            self._connection = connection
            self._connected.set()
            logger.info(f"Tracking socket connected to {urlsplit(self.url).netloc}")
            self.handlers.emit(SOCKET_CONNECTED, None)
            for order_id in sorted(self.subscriptions):
                await self.send(ORDER_SUBSCRIBE, {"orderId": order_id})

            reason, frames = await self._receive(connection)

            self._connection = None
            self._connected.clear()
            logger.warning(f"Tracking socket disconnected: {reason}")
            self.handlers.emit(SOCKET_DISCONNECTED, reason)

            # A session that never delivered a frame counts as a failed attempt
            if frames:
                failures = 0
            else:
                failures += 1
                if failures >= self.max_reconnect_attempts:
                    self._give_up()
                    return
            delay = self.backoff(max(failures, 1))

    async def _receive(self, connection) -> tuple[str, int]:
        """Reads frames until the connection ends. Returns the reason and the frame count."""
        frames = 0
        try:
            async for raw in connection:
                frames += 1
                self._dispatch(raw)
        except ConnectionClosed as e:
            return str(e) or "connection closed", frames
        except Exception as e:
            logger.error(f"Tracking socket receive failed: {e!r}")
            self.handlers.emit(SOCKET_ERROR, e)
            await connection.close()
            return str(e) or type(e).__name__, frames
        return "connection closed", frames

    def _dispatch(self, raw: Any):
        try:
            message = json.loads(raw)
        except (ValueError, TypeError):
            logger.warning(f"Ignoring malformed frame: {raw!r}")
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            logger.warning(f"Ignoring frame without an event name: {raw!r}")
            return
        event = message["event"]
        data = message.get("data") or {}

        model = SERVER_EVENT_MODELS.get(event)
        if model is not None:
            try:
                data = model.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid {event} payload: {e}")
                return
        self.handlers.emit(event, data)

    def _give_up(self):
        logger.error("Tracking socket gave up: max reconnect attempts reached")
        self._closing = True
        self._connection = None
        self._connected.clear()
        self.handlers.emit(SOCKET_DISCONNECTED, MAX_ATTEMPTS_REACHED)
        self.handlers.clear()
        self.subscriptions.clear()
