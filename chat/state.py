from __future__ import annotations

from dataclasses import dataclass, field

from shared.models import ChatAttachment, ChatMessage, JSONValue, RunPhase


@dataclass
class ChatState:
    session_key: str
    connected: bool = False
    loading: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    thinking_level: str | None = None
    sending: bool = False
    draft: str = ""
    attachments: list[ChatAttachment] = field(default_factory=list)
    run_id: str | None = None
    stream: str | None = None
    stream_started_at: int | None = None
    last_error: str | None = None
    sessions: list[dict[str, JSONValue]] = field(default_factory=list)
    sessions_error: str | None = None
    avatar_url: str | None = None
    recording: bool = False
    record_error: str | None = None

    @property
    def phase(self) -> RunPhase:
        if self.sending:
            return RunPhase.SENDING
        if self.run_id:
            return RunPhase.STREAMING
        return RunPhase.IDLE

    @property
    def busy(self) -> bool:
        return self.sending or bool(self.run_id)

    def clear_run(self) -> None:
        self.run_id = None
        self.stream = None
        self.stream_started_at = None
