from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from dataclasses import replace
from pathlib import Path

from chat.controller import ChatController
from chat.kv_store import SQLiteKeyValueStore
from chat.local_cache import LocalChatCache
from chat.run_state import extract_text, parse_chat_event
from chat.session import ChatSession
from chat.state import ChatState
from config.chat_config import resolve_chat_config
from config.gateway_config import resolve_gateway_config
from gateway.client import GatewayClient
from shared.models import JSONValue

logger = logging.getLogger("ChatLink.Console")

DEFAULT_SESSION_KEY = "main"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Terminal chat client for a remote agent gateway")
    parser.add_argument("--session", default=DEFAULT_SESSION_KEY)
    parser.add_argument("--gateway-url", default=None)
    parser.add_argument("--token", default=None)
    parser.add_argument("--cache-db", type=Path, default=None)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def _last_assistant_text(state: ChatState) -> str | None:
    for message in reversed(state.messages):
        if message.get("role") == "assistant":
            return extract_text(message)
    return None


def _print(text: str) -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


async def _dispatch_chat_event(session: ChatSession, raw: dict[str, JSONValue]) -> None:
    payload = parse_chat_event(raw)
    if payload is None:
        logger.warning("Ignoring malformed chat event")
        return
    outcome = await session.handle_chat_event(payload)
    if outcome == "final":
        text = _last_assistant_text(session.state)
        if text:
            _print(f"assistant> {text}")
    elif outcome == "aborted":
        _print("[run aborted]")
    elif outcome == "error":
        _print(f"[error] {session.state.last_error}")


async def _pump_events(client: GatewayClient, session: ChatSession) -> None:
    try:
        async for event in client.events():
            if event.event != "chat":
                continue
            try:
                await _dispatch_chat_event(session, event.payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("Chat event handling failed: %s", exc, exc_info=True)
                _print(f"[error] chat event failed: {exc}")
    except Exception as exc:  # noqa: BLE001
        logger.error("Gateway event stream failed: %s", exc, exc_info=True)
        _print(f"[error] event stream failed: {exc}")
        return
    logger.info("Gateway event stream closed")


async def _handle_line(session: ChatSession, line: str) -> bool:
    stripped = line.strip()
    if stripped == "/quit":
        return False
    if stripped == "/queue":
        for item in session.queue:
            _print(f"{item.id}  {item.text}")
        return True
    if stripped.startswith("/drop "):
        session.remove_queued_message(stripped[len("/drop ") :].strip())
        return True
    if stripped.startswith("/voice "):
        parts = stripped[len("/voice ") :].strip().split(maxsplit=1)
        path = Path(parts[0])
        try:
            data = path.read_bytes()
        except OSError as exc:
            _print(f"[error] cannot read {path}: {exc}")
            return True
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        await session.attach_file(
            data,
            mime_type,
            file_name=path.name,
            transcript=parts[1] if len(parts) > 1 else None,
        )
        if session.state.record_error:
            _print(f"[voice] {session.state.record_error}")
            session.clear_record_error()
        return True
    session.set_draft(line.rstrip("\n"))
    await session.handle_send()
    if session.state.last_error:
        _print(f"[error] {session.state.last_error}")
    elif session.queue:
        _print(f"[queued] {len(session.queue)} waiting")
    return True


async def _run(args: argparse.Namespace) -> int:
    chat_config = resolve_chat_config()
    if args.cache_db is not None:
        chat_config = replace(chat_config, cache_db_path=args.cache_db)
    gateway_config = resolve_gateway_config()
    if args.gateway_url:
        gateway_config = replace(gateway_config, base_url=args.gateway_url.rstrip("/"))
    if args.token:
        gateway_config = replace(gateway_config, token=args.token)

    cache = LocalChatCache.from_config(SQLiteKeyValueStore(chat_config.cache_db_path), chat_config)
    state = ChatState(session_key=args.session, connected=True)

    async with GatewayClient(gateway_config) as client:
        controller = ChatController(state, client, cache, config=chat_config)
        session = ChatSession(controller, client, config=chat_config)
        await session.refresh()
        if state.last_error:
            _print(f"[error] {state.last_error}")
        pump = asyncio.create_task(_pump_events(client, session))
        try:
            while True:
                line = await asyncio.to_thread(sys.stdin.readline)
                if not line:
                    break
                if not await _handle_line(session, line):
                    break
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
