from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import replace

from chat.attachments import (
    build_image_api_attachments,
    build_image_content_block,
    build_voice_note_content_block,
    build_voice_note_prompt_text,
    is_voice_note_attachment,
    normalize_transcript,
    parse_data_url,
    split_transcript_parts,
)
from chat.history import (
    build_local_voice_note_message,
    has_local_voice_note_message,
    merge_local_voice_notes,
    patch_persisted_note_id,
    upsert_local_voice_note_message,
)
from chat.local_cache import LocalChatCache
from chat.run_state import ChatEventOutcome, apply_chat_event
from chat.state import ChatState
from config.chat_config import ChatConfig
from gateway.protocols import GatewayRequester
from shared.models import ChatAttachment, ChatEventPayload, ChatMessage, JSONValue

logger = logging.getLogger("ChatLink.Controller")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_run_id() -> str:
    return str(uuid.uuid4())


def _persisted_id_from_result(result: JSONValue) -> str | None:
    if not isinstance(result, dict):
        return None
    note = result.get("note")
    if not isinstance(note, dict):
        return None
    note_id = note.get("id")
    if isinstance(note_id, str) and note_id.strip():
        return note_id.strip()
    return None


class ChatController:
    """Owns one session's chat state: history, the active run and voice-note persistence."""

    def __init__(
        self,
        state: ChatState,
        client: GatewayRequester | None,
        cache: LocalChatCache,
        *,
        config: ChatConfig | None = None,
        clock: Callable[[], int] = _now_ms,
        run_id_factory: Callable[[], str] = _new_run_id,
    ) -> None:
        self.state = state
        self.client = client
        self.cache = cache
        self.config = config or ChatConfig()
        self._clock = clock
        self._run_id_factory = run_id_factory
        self._persist_locks: dict[str, asyncio.Lock] = {}
        self._persisted_ids: dict[str, str] = {}

    def _ready_client(self) -> GatewayRequester | None:
        if self.client is None or not self.state.connected:
            return None
        return self.client

    def sync_composer(self) -> None:
        self.cache.sync_composer(self.state.session_key, self.state.draft, self.state.attachments)

    def restore_composer(self) -> None:
        draft, attachments = self.cache.load_composer(self.state.session_key)
        if not self.state.draft and draft is not None:
            self.state.draft = draft
        if not self.state.attachments and attachments:
            self.state.attachments = attachments

    def append_local_voice_note(
        self,
        attachment: ChatAttachment,
        *,
        timestamp: int | None = None,
    ) -> None:
        at = timestamp if timestamp is not None else self._clock()
        self.state.messages = upsert_local_voice_note_message(self.state.messages, attachment, at)
        self.cache.append_voice_note(self.state.session_key, attachment, at)

    async def persist_voice_note(self, attachment: ChatAttachment) -> str | None:
        """Save a voice note durably once and patch the id into history and the cache.

        Calls for the same attachment id are serialized; once an id is known no further
        save request is issued.
        """
        client = self._ready_client()
        if client is None:
            return None
        existing = (attachment.persisted_note_id or "").strip() or self._persisted_ids.get(
            attachment.id,
        )
        if existing:
            attachment.persisted_note_id = existing
            return existing

        # Removed from the map once saved; queued waiters hold their own reference.
        lock = self._persist_locks.setdefault(attachment.id, asyncio.Lock())
        async with lock:
            known = self._persisted_ids.get(attachment.id)
            if known:
                attachment.persisted_note_id = known
                return known
            parsed = parse_data_url(attachment.data_url)
            if parsed is None:
                return None
            mime_type, content = parsed
            transcript = normalize_transcript(attachment)
            result = await client.request(
                "voice-notes.save",
                {
                    "sessionKey": self.state.session_key,
                    "source": attachment.source or "upload",
                    "durationMs": attachment.duration_ms,
                    "transcript": transcript or None,
                    "transcriptParts": split_transcript_parts(transcript) if transcript else None,
                    "audio": {
                        "mimeType": mime_type or attachment.mime_type,
                        "fileName": attachment.file_name,
                        "content": content,
                    },
                },
            )
            note_id = _persisted_id_from_result(result)
            if note_id is None:
                return None
            attachment.persisted_note_id = note_id
            self._persisted_ids[attachment.id] = note_id
            self._persist_locks.pop(attachment.id, None)
            self._apply_persisted_id(attachment.id, note_id)
            return note_id

    def _apply_persisted_id(self, attachment_id: str, note_id: str) -> None:
        self.state.attachments = [
            replace(item, persisted_note_id=note_id) if item.id == attachment_id else item
            for item in self.state.attachments
        ]
        self.state.messages = [
            patch_persisted_note_id(message, attachment_id, note_id)
            for message in self.state.messages
        ]
        self.cache.patch_persisted_note_id(self.state.session_key, attachment_id, note_id)

    async def load_history(self) -> None:
        client = self._ready_client()
        if client is None:
            return
        self.state.loading = True
        self.state.last_error = None
        try:
            result = await client.request(
                "chat.history",
                {"sessionKey": self.state.session_key, "limit": self.config.history_limit},
            )
            payload = result if isinstance(result, dict) else {}
            raw_messages = payload.get("messages")
            remote: list[ChatMessage] = (
                [dict(item) for item in raw_messages if isinstance(item, dict)]
                if isinstance(raw_messages, list)
                else []
            )
            local = [
                build_local_voice_note_message(attachment, timestamp)
                for attachment, timestamp in self.cache.load_voice_notes(self.state.session_key)
            ]
            self.state.messages = merge_local_voice_notes(remote, local)
            thinking_level = payload.get("thinkingLevel")
            self.state.thinking_level = thinking_level if isinstance(thinking_level, str) else None
            self.restore_composer()
        except Exception as exc:  # noqa: BLE001
            self.state.last_error = str(exc)
        finally:
            self.state.loading = False

    async def _persist_for_send(
        self,
        attachment: ChatAttachment,
        persisted: dict[str, str],
    ) -> None:
        known = (attachment.persisted_note_id or "").strip()
        if known:
            persisted[attachment.id] = known
            return
        try:
            note_id = await self.persist_voice_note(attachment)
        except Exception as exc:  # noqa: BLE001
            logger.warning("voice note persist failed: %s", exc)
            return
        if note_id:
            persisted[attachment.id] = note_id

    async def send_message(
        self,
        message: str,
        attachments: list[ChatAttachment] | None = None,
    ) -> str | None:
        client = self._ready_client()
        if client is None:
            return None
        text = message.strip()
        all_attachments = list(attachments or [])
        images = [item for item in all_attachments if not is_voice_note_attachment(item)]
        voice_notes = [item for item in all_attachments if is_voice_note_attachment(item)]
        if not text and not images and not voice_notes:
            return None

        voice_prompt = build_voice_note_prompt_text(voice_notes)
        outbound = "\n\n".join(part for part in (text, voice_prompt) if part)

        now = self._clock()
        persisted: dict[str, str] = {}
        if voice_notes:
            await asyncio.gather(*(self._persist_for_send(item, persisted) for item in voice_notes))

        blocks: list[JSONValue] = []
        if text:
            blocks.append({"type": "text", "text": text})
        for image in images:
            blocks.append(build_image_content_block(image))
        for note in voice_notes:
            if has_local_voice_note_message(self.state.messages, note.id):
                continue
            blocks.append(
                build_voice_note_content_block(
                    note,
                    persisted_note_id=persisted.get(note.id),
                    include_preview_url=True,
                ),
            )

        bubble: ChatMessage | None = None
        if blocks:
            bubble = {"role": "user", "content": blocks, "timestamp": now}
            self.state.messages = [*self.state.messages, bubble]

        self.state.sending = True
        self.state.last_error = None
        run_id = self._run_id_factory()
        self.state.run_id = run_id
        self.state.stream = ""
        self.state.stream_started_at = now

        try:
            await client.request(
                "chat.send",
                {
                    "sessionKey": self.state.session_key,
                    "message": outbound,
                    "deliver": False,
                    "idempotencyKey": run_id,
                    "attachments": build_image_api_attachments(images),
                },
            )
            return run_id
        except Exception as exc:  # noqa: BLE001
            error = str(exc)
            logger.warning("Chat send failed for session %s: %s", self.state.session_key, error)
            if self.state.run_id == run_id:
                self.state.clear_run()
            self.state.last_error = error
            if bubble is not None:
                self.state.messages = [item for item in self.state.messages if item is not bubble]
            return None
        finally:
            self.state.sending = False

    async def abort(self) -> bool:
        client = self._ready_client()
        if client is None:
            return False
        params: dict[str, JSONValue] = {"sessionKey": self.state.session_key}
        if self.state.run_id:
            params["runId"] = self.state.run_id
        try:
            await client.request("chat.abort", params)
        except Exception as exc:  # noqa: BLE001
            self.state.last_error = str(exc)
            return False
        return True

    def handle_event(self, payload: ChatEventPayload | None) -> ChatEventOutcome | None:
        return apply_chat_event(self.state, payload)
