from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Literal

JSONPrimitive = str | bytes | int | float | bool | None
JSONValue = JSONPrimitive | Sequence["JSONValue"] | Mapping[str, "JSONValue"]

ChatMessage = dict[str, JSONValue]

AttachmentKind = Literal["image", "voice-note"]
AttachmentSource = Literal["upload", "record"]
ChatEventState = Literal["delta", "final", "aborted", "error"]


class RunPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"


@dataclass
class ChatAttachment:
    id: str
    data_url: str
    mime_type: str
    kind: AttachmentKind | None = None
    preview_url: str | None = None
    file_name: str | None = None
    source: AttachmentSource | None = None
    duration_ms: int | None = None
    transcript: str | None = None
    transcript_parts: list[str] | None = None
    persisted_note_id: str | None = None

    def copy(self) -> ChatAttachment:
        parts = list(self.transcript_parts) if self.transcript_parts is not None else None
        return replace(self, transcript_parts=parts)


@dataclass
class QueuedMessage:
    id: str
    text: str
    created_at: int
    attachments: list[ChatAttachment] | None = None
    refresh_sessions: bool = False


@dataclass(frozen=True)
class ChatEventPayload:
    run_id: str
    session_key: str
    state: ChatEventState
    message: JSONValue = None
    error_message: str | None = None


@dataclass(frozen=True)
class GatewayEvent:
    event: str
    payload: dict[str, JSONValue] = field(default_factory=dict)
