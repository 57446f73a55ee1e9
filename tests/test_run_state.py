from __future__ import annotations

from chat.run_state import (
    DEFAULT_CHAT_ERROR,
    EventRoute,
    apply_chat_event,
    classify_event,
    extract_text,
    parse_chat_event,
)
from chat.state import ChatState
from shared.models import ChatEventPayload, RunPhase


def _state(**overrides: object) -> ChatState:
    state = ChatState(session_key="main", connected=True)
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def _assistant(text: str) -> dict[str, object]:
    return {"role": "assistant", "content": [{"type": "text", "text": text}]}


def test_event_for_other_session_is_ignored() -> None:
    state = _state(run_id="run-1", stream="")
    payload = ChatEventPayload(run_id="run-1", session_key="other", state="final")
    assert apply_chat_event(state, payload) is None
    assert apply_chat_event(state, None) is None
    assert state.run_id == "run-1"


def test_delta_from_another_run_is_ignored() -> None:
    state = _state(run_id="run-user", stream="Hello")
    payload = ChatEventPayload(
        run_id="run-announce",
        session_key="main",
        state="delta",
        message=_assistant("Done"),
    )
    assert classify_event(state, payload) is EventRoute.IGNORE
    assert apply_chat_event(state, payload) is None
    assert state.run_id == "run-user"
    assert state.stream == "Hello"


def test_final_from_another_run_reports_final_without_clearing() -> None:
    state = _state(run_id="run-user", stream="Working...", stream_started_at=123)
    payload = ChatEventPayload(run_id="run-announce", session_key="main", state="final")
    assert classify_event(state, payload) is EventRoute.FOREIGN_FINAL
    assert apply_chat_event(state, payload) == "final"
    assert state.run_id == "run-user"
    assert state.stream == "Working..."
    assert state.stream_started_at == 123


def test_own_final_clears_run() -> None:
    state = _state(run_id="run-1", stream="partial", stream_started_at=5)
    payload = ChatEventPayload(run_id="run-1", session_key="main", state="final")
    assert apply_chat_event(state, payload) == "final"
    assert state.run_id is None
    assert state.stream is None
    assert state.stream_started_at is None
    assert state.phase is RunPhase.IDLE


def test_delta_only_grows_stream() -> None:
    state = _state(run_id="run-1", stream="")
    for text, expected in (
        ("Hel", "Hel"),
        ("Hello", "Hello"),
        ("He", "Hello"),
        ("Hello world", "Hello world"),
    ):
        payload = ChatEventPayload(
            run_id="run-1",
            session_key="main",
            state="delta",
            message=_assistant(text),
        )
        assert apply_chat_event(state, payload) == "delta"
        assert state.stream == expected
    assert state.phase is RunPhase.STREAMING


def test_delta_without_text_keeps_stream() -> None:
    state = _state(run_id="run-1", stream="partial")
    payload = ChatEventPayload(run_id="run-1", session_key="main", state="delta", message={})
    assert apply_chat_event(state, payload) == "delta"
    assert state.stream == "partial"


def test_aborted_appends_assistant_message_verbatim() -> None:
    message = {**_assistant("Partial reply"), "timestamp": 2}
    state = _state(run_id="run-1", stream="Partial")
    payload = ChatEventPayload(run_id="run-1", session_key="main", state="aborted", message=message)
    assert apply_chat_event(state, payload) == "aborted"
    assert state.messages == [message]
    assert state.run_id is None
    assert state.stream is None


def test_aborted_invalid_message_falls_back_to_stream() -> None:
    for message in ("not-an-assistant-message", {"role": "user", "content": []}, None):
        state = _state(run_id="run-1", stream="Fallback stream")
        payload = ChatEventPayload(
            run_id="run-1",
            session_key="main",
            state="aborted",
            message=message,
        )
        assert apply_chat_event(state, payload) == "aborted"
        assert len(state.messages) == 1
        assert state.messages[0]["role"] == "assistant"
        assert state.messages[0]["content"] == [{"type": "text", "text": "Fallback stream"}]
        assert state.run_id is None


def test_aborted_without_content_adds_nothing() -> None:
    state = _state(run_id="run-1", stream="   ")
    payload = ChatEventPayload(run_id="run-1", session_key="main", state="aborted")
    assert apply_chat_event(state, payload) == "aborted"
    assert state.messages == []
    assert state.run_id is None


def test_error_sets_last_error() -> None:
    state = _state(run_id="run-1", stream="x")
    payload = ChatEventPayload(
        run_id="run-1",
        session_key="main",
        state="error",
        error_message="model overloaded",
    )
    assert apply_chat_event(state, payload) == "error"
    assert state.last_error == "model overloaded"
    assert state.run_id is None

    state = _state(run_id="run-2")
    payload = ChatEventPayload(run_id="run-2", session_key="main", state="error")
    apply_chat_event(state, payload)
    assert state.last_error == DEFAULT_CHAT_ERROR


def test_event_without_active_run_applies_to_session() -> None:
    state = _state()
    payload = ChatEventPayload(
        run_id="run-x",
        session_key="main",
        state="delta",
        message=_assistant("hi"),
    )
    assert classify_event(state, payload) is EventRoute.OWN_RUN
    assert apply_chat_event(state, payload) == "delta"
    assert state.stream == "hi"


def test_parse_chat_event() -> None:
    payload = parse_chat_event(
        {"runId": "r", "sessionKey": "main", "state": "error", "errorMessage": "boom"},
    )
    assert payload == ChatEventPayload(
        run_id="r",
        session_key="main",
        state="error",
        error_message="boom",
    )
    assert parse_chat_event({"sessionKey": "main", "state": "bogus"}) is None
    assert parse_chat_event({"state": "final"}) is None
    assert parse_chat_event({"sessionKey": "main", "state": ["final"]}) is None
    assert parse_chat_event({"sessionKey": "main", "state": {}}) is None
    assert parse_chat_event([]) is None
    assert parse_chat_event({"sessionKey": "main", "state": "final"}).run_id == ""  # type: ignore[union-attr]


def test_extract_text_variants() -> None:
    assert extract_text({"content": "plain"}) == "plain"
    assert extract_text(_assistant("block")) == "block"
    assert extract_text(
        {"content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]},
    ) == "a\nb"
    assert extract_text({"text": "field"}) == "field"
    assert extract_text({"content": [{"type": "image"}]}) is None
    assert extract_text("junk") is None


def test_phase_reflects_sending_and_streaming() -> None:
    state = _state()
    assert state.phase is RunPhase.IDLE
    assert not state.busy
    state.sending = True
    assert state.phase is RunPhase.SENDING
    assert state.busy
    state.sending = False
    state.run_id = "run-1"
    assert state.phase is RunPhase.STREAMING
    assert state.busy
