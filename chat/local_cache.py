from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import TypedDict

from chat.attachments import StoredAttachment, from_stored_attachment, to_stored_attachment
from chat.kv_store import KeyValueStore
from config.chat_config import (
    DEFAULT_ATTACHMENTS_LIMIT,
    DEFAULT_CACHE_VERSION,
    DEFAULT_STORAGE_KEY,
    DEFAULT_VOICE_NOTES_LIMIT,
    ChatConfig,
)
from shared.models import ChatAttachment
from shared.sanitize import safe_json_loads

logger = logging.getLogger("ChatLink.LocalCache")


class StoredVoiceNote(TypedDict):
    id: str
    timestamp: int
    attachment: StoredAttachment


class SessionCacheEntry(TypedDict, total=False):
    draft: str
    attachments: list[StoredAttachment]
    voiceNotes: list[StoredVoiceNote]


class CacheStore(TypedDict):
    version: int
    sessions: dict[str, SessionCacheEntry]


EntryUpdater = Callable[[SessionCacheEntry], SessionCacheEntry | None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_entry_empty(entry: SessionCacheEntry) -> bool:
    draft = entry.get("draft")
    attachments = entry.get("attachments")
    voice_notes = entry.get("voiceNotes")
    has_draft = isinstance(draft, str) and len(draft) > 0
    has_attachments = isinstance(attachments, list) and len(attachments) > 0
    has_voice_notes = isinstance(voice_notes, list) and len(voice_notes) > 0
    return not (has_draft or has_attachments or has_voice_notes)


def _compact_entry(entry: SessionCacheEntry) -> SessionCacheEntry:
    compacted: SessionCacheEntry = {}
    draft = entry.get("draft")
    if isinstance(draft, str) and draft:
        compacted["draft"] = draft
    attachments = entry.get("attachments")
    if isinstance(attachments, list) and attachments:
        compacted["attachments"] = attachments
    voice_notes = entry.get("voiceNotes")
    if isinstance(voice_notes, list) and voice_notes:
        compacted["voiceNotes"] = voice_notes
    return compacted


class LocalChatCache:
    """Per-session composer and voice-note cache on top of a single storage key.

    The whole store is one JSON document ``{"version": N, "sessions": {...}}``. Reads fail
    soft (any malformed or foreign-version document reads as absent) and writes swallow
    backend failures, so the caller's in-memory state stays authoritative.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
        version: int = DEFAULT_CACHE_VERSION,
        attachments_limit: int = DEFAULT_ATTACHMENTS_LIMIT,
        voice_notes_limit: int = DEFAULT_VOICE_NOTES_LIMIT,
    ) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._version = version
        self._attachments_limit = attachments_limit
        self._voice_notes_limit = voice_notes_limit

    @classmethod
    def from_config(cls, storage: KeyValueStore, config: ChatConfig) -> LocalChatCache:
        return cls(
            storage,
            storage_key=config.storage_key,
            version=config.cache_version,
            attachments_limit=config.attachments_limit,
            voice_notes_limit=config.voice_notes_limit,
        )

    def read_store(self) -> CacheStore | None:
        try:
            raw = self._storage.get_item(self._storage_key)
        except Exception:  # noqa: BLE001
            logger.debug("Local chat cache read failed", exc_info=True)
            return None
        if not raw:
            return None
        parsed = safe_json_loads(raw)
        if not isinstance(parsed, dict):
            return None
        version = parsed.get("version")
        sessions = parsed.get("sessions")
        if isinstance(version, bool) or version != self._version:
            return None
        if not isinstance(sessions, dict):
            return None
        return {"version": self._version, "sessions": sessions}

    def write_store(self, store: CacheStore) -> None:
        try:
            payload = json.dumps(store, ensure_ascii=False)
            self._storage.set_item(self._storage_key, payload)
        except Exception:  # noqa: BLE001
            logger.debug("Local chat cache write failed", exc_info=True)

    def read(self, session_key: str) -> SessionCacheEntry | None:
        if not session_key.strip():
            return None
        store = self.read_store()
        if store is None:
            return None
        entry = store["sessions"].get(session_key)
        if not isinstance(entry, dict):
            return None
        return entry

    def update(self, session_key: str, updater: EntryUpdater) -> None:
        if not session_key.strip():
            return
        store = self.read_store() or {"version": self._version, "sessions": {}}
        current = store["sessions"].get(session_key)
        next_entry = updater(dict(current) if isinstance(current, dict) else {})  # type: ignore[arg-type]
        if next_entry is None or is_entry_empty(next_entry):
            store["sessions"].pop(session_key, None)
        else:
            store["sessions"][session_key] = _compact_entry(next_entry)
        self.write_store(store)

    def sync_composer(
        self,
        session_key: str,
        draft: str,
        attachments: list[ChatAttachment],
    ) -> None:
        stored: list[StoredAttachment] = []
        for attachment in attachments:
            converted = to_stored_attachment(attachment)
            if converted is not None:
                stored.append(converted)
        stored = stored[-self._attachments_limit :]

        def _apply(current: SessionCacheEntry) -> SessionCacheEntry | None:
            next_entry: SessionCacheEntry = dict(current)  # type: ignore[assignment]
            next_entry.pop("draft", None)
            next_entry.pop("attachments", None)
            if draft:
                next_entry["draft"] = draft
            if stored:
                next_entry["attachments"] = stored
            return next_entry

        self.update(session_key, _apply)

    def append_voice_note(
        self,
        session_key: str,
        attachment: ChatAttachment,
        timestamp: int,
    ) -> None:
        stored = to_stored_attachment(attachment)
        if stored is None:
            return

        def _apply(current: SessionCacheEntry) -> SessionCacheEntry | None:
            existing = current.get("voiceNotes")
            voice_notes = [
                entry
                for entry in (existing if isinstance(existing, list) else [])
                if isinstance(entry, dict) and entry.get("id") != attachment.id
            ]
            voice_notes.append({"id": attachment.id, "timestamp": timestamp, "attachment": stored})
            voice_notes.sort(key=_voice_note_timestamp)
            next_entry: SessionCacheEntry = dict(current)  # type: ignore[assignment]
            next_entry["voiceNotes"] = voice_notes[-self._voice_notes_limit :]
            return next_entry

        self.update(session_key, _apply)

    def patch_persisted_note_id(
        self,
        session_key: str,
        attachment_id: str,
        persisted_note_id: str,
    ) -> None:
        def _apply(current: SessionCacheEntry) -> SessionCacheEntry | None:
            next_entry: SessionCacheEntry = dict(current)  # type: ignore[assignment]
            voice_notes = current.get("voiceNotes")
            if isinstance(voice_notes, list):
                patched_notes: list[StoredVoiceNote] = []
                for entry in voice_notes:
                    if isinstance(entry, dict) and entry.get("id") == attachment_id:
                        attachment = dict(entry.get("attachment") or {})
                        attachment["persistedNoteId"] = persisted_note_id
                        entry = {**entry, "attachment": attachment}  # type: ignore[typeddict-item]
                    patched_notes.append(entry)
                next_entry["voiceNotes"] = patched_notes
            attachments = current.get("attachments")
            if isinstance(attachments, list):
                next_entry["attachments"] = [
                    {**entry, "persistedNoteId": persisted_note_id}
                    if isinstance(entry, dict) and entry.get("id") == attachment_id
                    else entry
                    for entry in attachments
                ]
            return next_entry

        self.update(session_key, _apply)

    def load_voice_notes(self, session_key: str) -> list[tuple[ChatAttachment, int]]:
        entry = self.read(session_key)
        if entry is None:
            return []
        raw_notes = entry.get("voiceNotes")
        if not isinstance(raw_notes, list):
            return []
        loaded: list[tuple[ChatAttachment, int]] = []
        for raw in raw_notes:
            if not isinstance(raw, dict):
                continue
            note_id = raw.get("id")
            if not isinstance(note_id, str) or not note_id.strip():
                continue
            attachment = from_stored_attachment(raw.get("attachment"))
            if attachment is None:
                continue
            attachment.id = note_id.strip()
            timestamp = raw.get("timestamp")
            if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
                timestamp = _now_ms()
            loaded.append((attachment, int(timestamp)))
        loaded.sort(key=lambda item: item[1])
        return loaded

    def load_composer(self, session_key: str) -> tuple[str | None, list[ChatAttachment]]:
        entry = self.read(session_key)
        if entry is None:
            return None, []
        draft = entry.get("draft")
        raw_attachments = entry.get("attachments")
        restored: list[ChatAttachment] = []
        if isinstance(raw_attachments, list):
            for raw in raw_attachments:
                attachment = from_stored_attachment(raw)
                if attachment is not None:
                    restored.append(attachment)
        return (draft if isinstance(draft, str) else None), restored


def _voice_note_timestamp(entry: StoredVoiceNote) -> int:
    timestamp = entry.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return 0
    return int(timestamp)
