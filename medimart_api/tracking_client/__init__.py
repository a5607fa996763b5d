from medimart_api.tracking_client.client import (
    SOCKET_CONNECTED, SOCKET_DISCONNECTED, SOCKET_ERROR, TrackingClient
)
from medimart_api.tracking_client.registry import HandlerRegistry

__all__ = [
    "HandlerRegistry",
    "SOCKET_CONNECTED",
    "SOCKET_DISCONNECTED",
    "SOCKET_ERROR",
    "TrackingClient",
]
