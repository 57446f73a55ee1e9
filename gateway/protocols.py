from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from shared.models import JSONValue


@runtime_checkable
class GatewayRequester(Protocol):
    async def request(
        self,
        method: str,
        params: Mapping[str, JSONValue] | None = None,
    ) -> JSONValue: ...


@runtime_checkable
class ChatGateway(GatewayRequester, Protocol):
    async def fetch_avatar_url(self, agent_id: str) -> str | None: ...
