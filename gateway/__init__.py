from __future__ import annotations

from gateway.client import GatewayClient, GatewayRequestError
from gateway.protocols import ChatGateway, GatewayRequester

__all__ = [
    "ChatGateway",
    "GatewayClient",
    "GatewayRequestError",
    "GatewayRequester",
]
