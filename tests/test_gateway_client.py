from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from config.gateway_config import GatewayConfig
from gateway import ChatGateway, GatewayClient, GatewayRequestError
from shared.models import GatewayEvent


def _create_app(seen: list[dict[str, object]]) -> web.Application:
    async def rpc(request: web.Request) -> web.Response:
        body = await request.json()
        seen.append({"body": body, "authorization": request.headers.get("Authorization")})
        method = body.get("method")
        if method == "chat.history":
            return web.json_response({"ok": True, "result": {"messages": [], "echo": body["params"]}})
        if method == "broken":
            return web.Response(text="<html>bad gateway</html>", status=502)
        if method == "slow":
            await asyncio.sleep(1)
            return web.json_response({"ok": True, "result": {}})
        return web.json_response(
            {"ok": False, "error": {"code": "not_found", "message": f"unknown method {method}"}},
            status=404,
        )

    async def events(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b": keep-alive\n\n")
        await response.write(
            b'data: {"event": "chat", "payload": {"sessionKey": "main", "state": "final", '
            b'"runId": "r1"}}\n\n',
        )
        await response.write(b"data: not-json\n\n")
        await response.write(b'data: {"event": "presence"}\n\n')
        await response.write_eof()
        return response

    async def avatar(request: web.Request) -> web.Response:
        if request.query.get("meta") != "1":
            return web.json_response({"error": "meta required"}, status=400)
        if request.match_info["agent_id"] == "ops":
            return web.json_response({"avatarUrl": " https://cdn.local/ops.png "})
        return web.json_response({"error": "missing"}, status=404)

    app = web.Application()
    app.router.add_post("/rpc", rpc)
    app.router.add_get("/events", events)
    app.router.add_get("/gw/avatar/{agent_id}", avatar)
    return app


async def _start(
    seen: list[dict[str, object]],
    **config_overrides: object,
) -> tuple[TestServer, GatewayClient]:
    server = TestServer(_create_app(seen))
    await server.start_server()
    values: dict[str, object] = {
        "base_url": str(server.make_url("/")).rstrip("/"),
        "base_path": "/gw",
        "token": "secret-token",
        "timeout": 5.0,
    }
    values.update(config_overrides)
    client = GatewayClient(GatewayConfig(**values))  # type: ignore[arg-type]
    return server, client


def test_request_posts_envelope_and_returns_result() -> None:
    async def run() -> None:
        seen: list[dict[str, object]] = []
        server, client = await _start(seen)
        try:
            result = await client.request(
                "chat.history",
                {"sessionKey": "main", "limit": 5, "transcript": None},
            )
            assert result == {"messages": [], "echo": {"sessionKey": "main", "limit": 5}}
            body = seen[0]["body"]
            assert isinstance(body, dict)
            assert body["method"] == "chat.history"
            assert isinstance(body["id"], str) and body["id"]
            assert seen[0]["authorization"] == "Bearer secret-token"
        finally:
            await client.close()
            await server.close()

    asyncio.run(run())


def test_request_raises_gateway_error_from_error_envelope() -> None:
    async def run() -> None:
        server, client = await _start([])
        try:
            with pytest.raises(GatewayRequestError) as exc_info:
                await client.request("missing.method")
            assert exc_info.value.code == "not_found"
            assert exc_info.value.method == "missing.method"
            assert str(exc_info.value) == "not_found: unknown method missing.method"

            with pytest.raises(GatewayRequestError) as broken_info:
                await client.request("broken")
            assert broken_info.value.code is None
            assert str(broken_info.value) == "invalid response (status 502)"
        finally:
            await client.close()
            await server.close()

    asyncio.run(run())


def test_request_timeout_is_reported() -> None:
    async def run() -> None:
        server, client = await _start([], timeout=0.2)
        try:
            with pytest.raises(GatewayRequestError) as exc_info:
                await client.request("slow")
            assert exc_info.value.code == "timeout"
        finally:
            await client.close()
            await server.close()

    asyncio.run(run())


def test_request_transport_failure_is_unavailable() -> None:
    async def run() -> None:
        async with GatewayClient(GatewayConfig(base_url="http://127.0.0.1:1", timeout=2.0)) as client:
            with pytest.raises(GatewayRequestError) as exc_info:
                await client.request("chat.history", {"sessionKey": "main"})
        assert exc_info.value.code == "unavailable"

    asyncio.run(run())


def test_events_yields_decoded_push_events() -> None:
    async def run() -> None:
        server, client = await _start([])
        try:
            events = [event async for event in client.events()]
        finally:
            await client.close()
            await server.close()
        assert events == [
            GatewayEvent(
                event="chat",
                payload={"sessionKey": "main", "state": "final", "runId": "r1"},
            ),
            GatewayEvent(event="presence", payload={}),
        ]

    asyncio.run(run())


def test_fetch_avatar_url_uses_base_path_and_meta_query() -> None:
    async def run() -> None:
        server, client = await _start([])
        try:
            assert await client.fetch_avatar_url("ops") == "https://cdn.local/ops.png"
            assert await client.fetch_avatar_url("ghost") is None
        finally:
            await client.close()
            await server.close()

    asyncio.run(run())


def test_token_falls_back_to_environment(monkeypatch) -> None:
    monkeypatch.setenv("CHATLINK_GATEWAY_TOKEN", "env-token")

    async def run() -> None:
        seen: list[dict[str, object]] = []
        server, client = await _start(seen, token=None)
        try:
            await client.request("chat.history")
        finally:
            await client.close()
            await server.close()
        assert seen[0]["authorization"] == "Bearer env-token"

    asyncio.run(run())


def test_external_session_is_not_closed() -> None:
    async def run() -> None:
        async with aiohttp.ClientSession() as session:
            client = GatewayClient(GatewayConfig(), session=session)
            assert isinstance(client, ChatGateway)
            await client.close()
            assert not session.closed

    asyncio.run(run())
