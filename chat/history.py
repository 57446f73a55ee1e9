from __future__ import annotations

from collections.abc import Sequence

from chat.attachments import build_voice_note_content_block
from shared.models import ChatAttachment, ChatMessage, JSONValue

LOCAL_MARKER_KEY = "__chatlink"
LOCAL_VOICE_NOTE_KIND = "local-voice-note"
_VOICE_BLOCK_TYPES = {"voice_note", "audio"}


def get_local_voice_note_marker_id(message: object) -> str | None:
    if not isinstance(message, dict):
        return None
    marker = message.get(LOCAL_MARKER_KEY)
    if not isinstance(marker, dict) or marker.get("kind") != LOCAL_VOICE_NOTE_KIND:
        return None
    marker_id = marker.get("id")
    if isinstance(marker_id, str) and marker_id.strip():
        return marker_id.strip()
    return None


def build_local_voice_note_message(attachment: ChatAttachment, timestamp: int) -> ChatMessage:
    return {
        "role": "user",
        "content": [build_voice_note_content_block(attachment, include_preview_url=True)],
        "timestamp": timestamp,
        LOCAL_MARKER_KEY: {"kind": LOCAL_VOICE_NOTE_KIND, "id": attachment.id},
    }


def has_local_voice_note_message(messages: Sequence[object], attachment_id: str) -> bool:
    return any(get_local_voice_note_marker_id(message) == attachment_id for message in messages)


def upsert_local_voice_note_message(
    messages: Sequence[ChatMessage],
    attachment: ChatAttachment,
    timestamp: int,
) -> list[ChatMessage]:
    """Replace the marker message for ``attachment`` in place, or append one."""
    replacement = build_local_voice_note_message(attachment, timestamp)
    replaced = False
    updated: list[ChatMessage] = []
    for message in messages:
        if get_local_voice_note_marker_id(message) == attachment.id:
            updated.append(replacement)
            replaced = True
        else:
            updated.append(message)
    if not replaced:
        updated.append(replacement)
    return updated


def patch_persisted_note_id(
    message: ChatMessage,
    attachment_id: str,
    persisted_note_id: str,
) -> ChatMessage:
    if get_local_voice_note_marker_id(message) != attachment_id:
        return message
    content = message.get("content")
    if not isinstance(content, list):
        return message
    patched: list[JSONValue] = []
    for block in content:
        if isinstance(block, dict):
            block_type = block.get("type")
            if isinstance(block_type, str) and block_type.lower() in _VOICE_BLOCK_TYPES:
                block = {**block, "persistedNoteId": persisted_note_id}
        patched.append(block)
    return {**message, "content": patched}


def merge_local_voice_notes(
    history: Sequence[ChatMessage],
    local_voice_notes: Sequence[ChatMessage],
) -> list[ChatMessage]:
    """Append cached voice-note bubbles the remote history does not already carry.

    ``history`` keeps its order; local entries follow in timestamp order. Entries whose
    marker id already appears (for example once the backend echoes the note back) are
    dropped, which makes the merge idempotent.
    """
    merged = list(history)
    if not local_voice_notes:
        return merged
    seen: set[str] = set()
    for message in history:
        marker_id = get_local_voice_note_marker_id(message)
        if marker_id:
            seen.add(marker_id)
    for message in sorted(local_voice_notes, key=_message_timestamp):
        marker_id = get_local_voice_note_marker_id(message)
        if not marker_id or marker_id in seen:
            continue
        merged.append(message)
        seen.add(marker_id)
    return merged


def _message_timestamp(message: ChatMessage) -> float:
    timestamp = message.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return 0
    return float(timestamp)
