from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from chat.attachments import encode_data_url, is_voice_note_attachment
from chat.controller import ChatController
from chat.recorder import VoiceNoteRecorder, VoiceNoteRecordingError
from chat.run_state import ChatEventOutcome
from chat.state import ChatState
from config.chat_config import ChatConfig
from gateway.protocols import ChatGateway
from shared.models import ChatAttachment, ChatEventPayload, JSONValue, QueuedMessage

logger = logging.getLogger("ChatLink.Session")

DEFAULT_AGENT_ID = "main"
STOP_COMMANDS = {"/stop", "stop", "esc", "abort", "wait", "exit"}
RESET_COMMANDS = ("/new", "/reset")
PERSIST_INCOMPLETE_MESSAGE = "Voice note saved locally, but gateway persistence did not complete."
RECORDING_UNSUPPORTED_MESSAGE = "Microphone recording is not supported on this device."
_TERMINAL_OUTCOMES = {"final", "aborted", "error"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_chat_stop_command(text: str) -> bool:
    return text.strip().lower() in STOP_COMMANDS


def is_chat_reset_command(text: str) -> bool:
    normalized = text.strip().lower()
    if not normalized:
        return False
    if normalized in RESET_COMMANDS:
        return True
    return any(normalized.startswith(f"{command} ") for command in RESET_COMMANDS)


def parse_agent_session_key(session_key: str) -> str | None:
    """Agent id from keys shaped ``agent:<agentId>:<rest>``."""
    parts = session_key.strip().split(":")
    if len(parts) < 3 or parts[0].lower() != "agent":
        return None
    agent_id = parts[1].strip()
    return agent_id or None


@dataclass(frozen=True)
class ComposerSnapshot:
    draft: str
    attachments: list[ChatAttachment]


class ChatSession:
    """UI-facing host around a controller: composer, send queue, refresh and capture."""

    def __init__(
        self,
        controller: ChatController,
        client: ChatGateway | None,
        *,
        config: ChatConfig | None = None,
        recorder: VoiceNoteRecorder | None = None,
        default_agent_id: str | None = None,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.controller = controller
        self.client = client
        self.config = config or controller.config
        self.recorder = recorder
        self.default_agent_id = default_agent_id
        self.queue: list[QueuedMessage] = []
        self.refresh_sessions_after_chat: set[str] = set()
        self._clock = clock
        self._id_factory = id_factory

    @property
    def state(self) -> ChatState:
        return self.controller.state

    def set_draft(self, text: str) -> None:
        self.state.draft = text
        self.controller.sync_composer()

    def set_attachments(self, attachments: list[ChatAttachment]) -> None:
        self.state.attachments = list(attachments)
        self.controller.sync_composer()

    def clear_record_error(self) -> None:
        self.state.record_error = None

    def enqueue(
        self,
        text: str,
        attachments: list[ChatAttachment] | None = None,
        *,
        refresh_sessions: bool = False,
    ) -> QueuedMessage | None:
        trimmed = text.strip()
        has_attachments = bool(attachments)
        if not trimmed and not has_attachments:
            return None
        item = QueuedMessage(
            id=self._id_factory(),
            text=trimmed,
            created_at=self._clock(),
            attachments=[att.copy() for att in attachments or []] if has_attachments else None,
            refresh_sessions=refresh_sessions,
        )
        self.queue = [*self.queue, item]
        return item

    def remove_queued_message(self, message_id: str) -> None:
        self.queue = [item for item in self.queue if item.id != message_id]

    async def handle_abort(self) -> None:
        if not self.state.connected:
            return
        self.state.draft = ""
        self.controller.sync_composer()
        await self.controller.abort()

    async def handle_send(
        self,
        message_override: str | None = None,
        *,
        restore_draft: bool = False,
    ) -> None:
        if not self.state.connected:
            return
        previous = ComposerSnapshot(self.state.draft, list(self.state.attachments))
        message = (message_override if message_override is not None else self.state.draft).strip()
        to_send = list(previous.attachments) if message_override is None else []
        if not message and not to_send:
            return

        if is_chat_stop_command(message):
            await self.handle_abort()
            return

        refresh_sessions = is_chat_reset_command(message)
        if message_override is None:
            self.state.draft = ""
            self.state.attachments = []
            self.controller.sync_composer()

        if self.state.busy:
            self.enqueue(message, to_send, refresh_sessions=refresh_sessions)
            return

        await self._send_now(
            message,
            attachments=to_send or None,
            rollback=previous if message_override is None else None,
            restore=previous if message_override is not None and restore_draft else None,
            refresh_sessions=refresh_sessions,
        )

    async def _send_now(
        self,
        message: str,
        *,
        attachments: list[ChatAttachment] | None = None,
        rollback: ComposerSnapshot | None = None,
        restore: ComposerSnapshot | None = None,
        refresh_sessions: bool = False,
    ) -> bool:
        run_id = await self.controller.send_message(message, attachments)
        ok = bool(run_id)
        if not ok and rollback is not None:
            self.state.draft = rollback.draft
            self.state.attachments = list(rollback.attachments)
        if ok and restore is not None:
            if restore.draft.strip():
                self.state.draft = restore.draft
            if restore.attachments:
                self.state.attachments = list(restore.attachments)
        self.controller.sync_composer()
        if ok and refresh_sessions and run_id:
            self.refresh_sessions_after_chat.add(run_id)
        if ok and not self.state.run_id:
            await self.flush_queue()
        return ok

    async def flush_queue(self) -> None:
        if not self.state.connected or self.state.busy:
            return
        if not self.queue:
            return
        head, *rest = self.queue
        self.queue = rest
        ok = await self._send_now(
            head.text,
            attachments=head.attachments,
            refresh_sessions=head.refresh_sessions,
        )
        if not ok:
            self.queue = [head, *self.queue]

    async def handle_chat_event(self, payload: ChatEventPayload | None) -> ChatEventOutcome | None:
        outcome = self.controller.handle_event(payload)
        if outcome is None or payload is None:
            return outcome
        if outcome == "final":
            if payload.run_id in self.refresh_sessions_after_chat:
                self.refresh_sessions_after_chat.discard(payload.run_id)
                await self.load_sessions()
            if self.config.reload_history_on_final:
                await self.controller.load_history()
        if outcome in _TERMINAL_OUTCOMES:
            await self.flush_queue()
        return outcome

    async def refresh(self) -> None:
        await asyncio.gather(
            self.controller.load_history(),
            self.load_sessions(),
            self.refresh_avatar(),
        )

    async def load_sessions(self) -> None:
        if self.client is None or not self.state.connected:
            return
        try:
            result = await self.client.request(
                "sessions.list",
                {
                    "activeMinutes": self.config.sessions_active_minutes,
                    "includeGlobal": False,
                    "includeUnknown": False,
                },
            )
        except Exception as exc:  # noqa: BLE001
            self.state.sessions_error = str(exc)
            return
        raw_sessions = result.get("sessions") if isinstance(result, dict) else None
        sessions: list[dict[str, JSONValue]] = []
        if isinstance(raw_sessions, list):
            sessions = [dict(item) for item in raw_sessions if isinstance(item, dict)]
        self.state.sessions = sessions
        self.state.sessions_error = None

    def resolve_agent_id(self) -> str:
        parsed = parse_agent_session_key(self.state.session_key)
        if parsed:
            return parsed
        fallback = (self.default_agent_id or "").strip()
        return fallback or DEFAULT_AGENT_ID

    async def refresh_avatar(self) -> None:
        self.state.avatar_url = None
        if self.client is None or not self.state.connected:
            return
        agent_id = self.resolve_agent_id()
        try:
            self.state.avatar_url = await self.client.fetch_avatar_url(agent_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Avatar refresh failed for %s: %s", agent_id, exc)
            self.state.avatar_url = None

    async def toggle_recording(self) -> None:
        if not self.state.connected:
            return
        if self.recorder is None:
            self.state.record_error = RECORDING_UNSUPPORTED_MESSAGE
            return
        if self.recorder.active or self.state.recording:
            await self._stop_recording(self.recorder)
            return
        self.state.record_error = None
        try:
            await self.recorder.start()
        except VoiceNoteRecordingError as exc:
            self.state.recording = False
            self.state.record_error = str(exc)
            return
        self.state.recording = True

    async def _stop_recording(self, recorder: VoiceNoteRecorder) -> None:
        try:
            attachment = await recorder.stop()
        except Exception as exc:  # noqa: BLE001
            self.state.record_error = f"Unable to save voice note: {exc}"
            return
        finally:
            self.state.recording = False
        if attachment is not None:
            await self._capture_voice_note(attachment)

    async def attach_file(
        self,
        data: bytes,
        mime_type: str,
        *,
        file_name: str | None = None,
        transcript: str | None = None,
    ) -> ChatAttachment:
        attachment = ChatAttachment(
            id=self._id_factory(),
            data_url=encode_data_url(data, mime_type),
            mime_type=mime_type,
            file_name=file_name,
            source="upload",
            transcript=transcript,
        )
        if is_voice_note_attachment(attachment):
            attachment.kind = "voice-note"
            await self._capture_voice_note(attachment)
        else:
            attachment.kind = "image"
            self.set_attachments([*self.state.attachments, attachment])
        return attachment

    async def _capture_voice_note(self, attachment: ChatAttachment) -> None:
        self.state.attachments = [*self.state.attachments, attachment]
        self.controller.append_local_voice_note(attachment, timestamp=self._clock())
        self.controller.sync_composer()
        try:
            note_id = await self.controller.persist_voice_note(attachment)
        except Exception as exc:  # noqa: BLE001
            logger.warning("voice note persist failed: %s", exc)
            self.state.record_error = f"Unable to persist voice note: {exc}"
            return
        if not note_id:
            self.state.record_error = PERSIST_INCOMPLETE_MESSAGE
