from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Mapping
from types import TracebackType
from urllib.parse import quote

import aiohttp

from config.gateway_config import GatewayConfig
from shared.models import GatewayEvent, JSONValue
from shared.sanitize import safe_json_loads, sanitize_params

logger = logging.getLogger("ChatLink.Gateway")


class GatewayRequestError(RuntimeError):
    def __init__(self, method: str, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
        self.message = message

    def __str__(self) -> str:
        if self.code:
            return f"{self.code}: {self.message}"
        return self.message


def _compact_params(params: Mapping[str, JSONValue] | None) -> dict[str, JSONValue]:
    if not params:
        return {}
    return {key: value for key, value in params.items() if value is not None}


class GatewayClient:
    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self.config.resolve_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    async def request(
        self,
        method: str,
        params: Mapping[str, JSONValue] | None = None,
    ) -> JSONValue:
        body = {"id": uuid.uuid4().hex, "method": method, "params": _compact_params(params)}
        session = self._client_session()
        try:
            async with session.post(
                self._url(self.config.rpc_path),
                json=body,
                headers=self._headers(),
            ) as response:
                raw = await response.text()
                status = response.status
        except asyncio.TimeoutError as exc:  # noqa: UP041
            logger.error("Gateway %s timeout", method)
            raise GatewayRequestError(method, "request timed out", code="timeout") from exc
        except aiohttp.ClientError as exc:
            logger.error(
                "Gateway %s transport error: %s",
                method,
                exc,
                extra={"params": sanitize_params(body["params"])},
            )
            raise GatewayRequestError(method, str(exc), code="unavailable") from exc

        parsed = safe_json_loads(raw) if raw else None
        if not isinstance(parsed, dict):
            logger.error("Gateway %s returned non-JSON response (status=%s)", method, status)
            raise GatewayRequestError(method, f"invalid response (status {status})")
        if status >= 400 or parsed.get("ok") is not True:
            code, message = _error_fields(parsed.get("error"), status)
            logger.error("Gateway %s failed: %s %s", method, code, message)
            raise GatewayRequestError(method, message, code=code)
        return parsed.get("result")

    async def events(self) -> AsyncIterator[GatewayEvent]:
        """Yield push events from the gateway event stream until it closes."""
        session = self._client_session()
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        async with session.get(
            self._url(self.config.events_path),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.config.timeout),
        ) as response:
            response.raise_for_status()
            data_lines: list[str] = []
            async for raw_line in response.content:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.startswith(":"):
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line or not data_lines:
                    continue
                event = _decode_event("\n".join(data_lines))
                data_lines = []
                if event is not None:
                    yield event
            if data_lines:
                event = _decode_event("\n".join(data_lines))
                if event is not None:
                    yield event

    async def fetch_avatar_url(self, agent_id: str) -> str | None:
        url = self._url(f"{self.config.base_path}/avatar/{quote(agent_id, safe='')}")
        session = self._client_session()
        try:
            async with session.get(url, params={"meta": "1"}, headers=self._headers()) as response:
                if response.status >= 400:
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:  # noqa: UP041
            logger.warning("Avatar metadata fetch failed for %s: %s", agent_id, exc)
            return None
        if not isinstance(data, dict):
            return None
        avatar_url = data.get("avatarUrl")
        if isinstance(avatar_url, str) and avatar_url.strip():
            return avatar_url.strip()
        return None


def _error_fields(error: object, status: int) -> tuple[str | None, str]:
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message")
        return (
            code if isinstance(code, str) else None,
            message if isinstance(message, str) and message else f"request failed ({status})",
        )
    if isinstance(error, str) and error:
        return None, error
    return None, f"request failed ({status})"


def _decode_event(raw: str) -> GatewayEvent | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed gateway event: %.120s", raw)
        return None
    if not isinstance(parsed, dict):
        return None
    name = parsed.get("event")
    payload = parsed.get("payload")
    if not isinstance(name, str) or not name:
        logger.warning("Skipping gateway event without a name")
        return None
    return GatewayEvent(event=name, payload=payload if isinstance(payload, dict) else {})
