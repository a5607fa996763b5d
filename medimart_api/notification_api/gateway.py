# medimart_api/notification_api/gateway.py
"""
Server end of the real-time channel.

Each socket belongs to one authenticated user and holds its own set of
subscribed order ids. Delivery is best effort: a socket that fails a send is
dropped and misses everything sent until the client reconnects.
"""

import logging

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from medimart_api.auth import STAFF_ROLES
from medimart_api.events import (
    CONNECTED, NOTIFICATION_NEW, ORDER_UPDATE, PAYMENT_UPDATE,
    NotificationEvent, OrderUpdateEvent, PaymentUpdateEvent, WireModel, frame
)

logger = logging.getLogger(__name__)


class ClientConnection:
    def __init__(self, websocket: WebSocket, user_id: str, role: str):
        self.websocket = websocket
        self.user_id = user_id
        self.role = role
        self.subscriptions: set[str] = set()

    def may_see(self, owner_id: str) -> bool:
        return self.user_id == owner_id or self.role in STAFF_ROLES


class ConnectionManager:
    def __init__(self):
        # websocket -> connection state
        self.connections: dict[WebSocket, ClientConnection] = {}
        # user_id -> websockets
        self.user_sockets: dict[str, set[WebSocket]] = {}
        # order_id -> websockets subscribed to it
        self.order_subscribers: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: str, role: str) -> ClientConnection:
        await websocket.accept()
        connection = ClientConnection(websocket, user_id, role)
        self.connections[websocket] = connection
        self.user_sockets.setdefault(user_id, set()).add(websocket)
        logger.info(f"Client connected for user {user_id} ({len(self.user_sockets[user_id])} open)")
        await self.send(websocket, CONNECTED, {"message": "Connected to order tracking"})
        return connection

    def disconnect(self, websocket: WebSocket):
        connection = self.connections.pop(websocket, None)
        if not connection:
            return
        for order_id in connection.subscriptions:
            subscribers = self.order_subscribers.get(order_id)
            if subscribers:
                subscribers.discard(websocket)
                if not subscribers:
                    del self.order_subscribers[order_id]
        sockets = self.user_sockets.get(connection.user_id)
        if sockets:
            sockets.discard(websocket)
            if not sockets:
                del self.user_sockets[connection.user_id]
        logger.info(f"Client disconnected for user {connection.user_id}")

    def subscribe(self, websocket: WebSocket, order_id) -> bool:
        connection = self.connections.get(websocket)
        if not connection:
            return False
        order_id = str(order_id)
        connection.subscriptions.add(order_id)
        self.order_subscribers.setdefault(order_id, set()).add(websocket)
        logger.info(f"User {connection.user_id} subscribed to order {order_id}")
        return True

    def unsubscribe(self, websocket: WebSocket, order_id) -> bool:
        connection = self.connections.get(websocket)
        if not connection:
            return False
        order_id = str(order_id)
        connection.subscriptions.discard(order_id)
        subscribers = self.order_subscribers.get(order_id)
        if subscribers:
            subscribers.discard(websocket)
            if not subscribers:
                del self.order_subscribers[order_id]
        logger.info(f"User {connection.user_id} unsubscribed from order {order_id}")
        return True

    async def send(self, websocket: WebSocket, event: str, data: dict | WireModel) -> bool:
        """Sends one frame. A socket that cannot be written to is dropped."""
        try:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.send_json(frame(event, data))
                return True
        except Exception as e:
            logger.error(f"Failed to send {event}: {e}")
        self.disconnect(websocket)
        return False

    async def emit_order_update(self, owner_id: str, event: OrderUpdateEvent) -> int:
        """
        Forwards an order update to the sockets subscribed to that order whose
        user owns it or is staff. Returns the number of sockets reached.
        """
        delivered = 0
        for websocket in list(self.order_subscribers.get(event.order_id, ())):
            connection = self.connections.get(websocket)
            if connection and connection.may_see(owner_id):
                if await self.send(websocket, ORDER_UPDATE, event):
                    delivered += 1
        return delivered

    async def send_to_user(self, user_id: str, event: str, data: dict | WireModel) -> int:
        delivered = 0
        for websocket in list(self.user_sockets.get(user_id, ())):
            if await self.send(websocket, event, data):
                delivered += 1
        return delivered

    async def emit_notification(self, user_id: str, event: NotificationEvent) -> int:
        return await self.send_to_user(user_id, NOTIFICATION_NEW, event)

    async def emit_payment_update(self, user_id: str, event: PaymentUpdateEvent) -> int:
        return await self.send_to_user(user_id, PAYMENT_UPDATE, event)
