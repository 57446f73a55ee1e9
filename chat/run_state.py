from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum
from typing import Literal, cast

from chat.state import ChatState
from shared.models import ChatEventPayload, ChatEventState, ChatMessage, JSONValue

ChatEventOutcome = Literal["delta", "final", "aborted", "error"]

DEFAULT_CHAT_ERROR = "chat error"
_EVENT_STATES = {"delta", "final", "aborted", "error"}


class EventRoute(str, Enum):
    IGNORE = "ignore"
    FOREIGN_FINAL = "foreign_final"
    OWN_RUN = "own_run"


def _now_ms() -> int:
    return int(time.time() * 1000)


def extract_text(message: JSONValue) -> str | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts) if parts else None
    text = message.get("text")
    return text if isinstance(text, str) else None


def parse_chat_event(raw: object) -> ChatEventPayload | None:
    if not isinstance(raw, dict):
        return None
    session_key = raw.get("sessionKey")
    state = raw.get("state")
    run_id = raw.get("runId")
    error_message = raw.get("errorMessage")
    if not isinstance(session_key, str) or not isinstance(state, str):
        return None
    if state not in _EVENT_STATES:
        return None
    return ChatEventPayload(
        run_id=run_id if isinstance(run_id, str) else "",
        session_key=session_key,
        state=cast(ChatEventState, state),
        message=raw.get("message"),
        error_message=error_message if isinstance(error_message, str) else None,
    )


def classify_event(state: ChatState, payload: ChatEventPayload) -> EventRoute:
    if payload.session_key != state.session_key:
        return EventRoute.IGNORE
    if payload.run_id and state.run_id and payload.run_id != state.run_id:
        if payload.state == "final":
            return EventRoute.FOREIGN_FINAL
        return EventRoute.IGNORE
    return EventRoute.OWN_RUN


def normalize_aborted_message(message: JSONValue) -> ChatMessage | None:
    if not isinstance(message, dict):
        return None
    if message.get("role") != "assistant":
        return None
    if not isinstance(message.get("content"), list):
        return None
    return dict(message)


def _on_delta(state: ChatState, payload: ChatEventPayload) -> None:
    next_text = extract_text(payload.message)
    if next_text is None:
        return
    current = state.stream or ""
    if not current or len(next_text) >= len(current):
        state.stream = next_text


def _on_final(state: ChatState, payload: ChatEventPayload) -> None:
    state.clear_run()


def _on_aborted(state: ChatState, payload: ChatEventPayload) -> None:
    normalized = normalize_aborted_message(payload.message)
    if normalized is not None:
        state.messages = [*state.messages, normalized]
    else:
        streamed = state.stream or ""
        if streamed.strip():
            state.messages = [
                *state.messages,
                {
                    "role": "assistant",
                    "content": [{"type": "text", "text": streamed}],
                    "timestamp": _now_ms(),
                },
            ]
    state.clear_run()


def _on_error(state: ChatState, payload: ChatEventPayload) -> None:
    state.clear_run()
    state.last_error = payload.error_message or DEFAULT_CHAT_ERROR


_TRANSITIONS: dict[ChatEventState, Callable[[ChatState, ChatEventPayload], None]] = {
    "delta": _on_delta,
    "final": _on_final,
    "aborted": _on_aborted,
    "error": _on_error,
}


def apply_chat_event(
    state: ChatState,
    payload: ChatEventPayload | None,
) -> ChatEventOutcome | None:
    """Advance the run for one push event and name the transition taken.

    A ``final`` from a foreign run reports ``"final"`` without touching the active run, so
    the caller can reload history for messages injected by that run.
    """
    if payload is None:
        return None
    route = classify_event(state, payload)
    if route is EventRoute.IGNORE:
        return None
    if route is EventRoute.FOREIGN_FINAL:
        return "final"
    _TRANSITIONS[payload.state](state, payload)
    return payload.state
