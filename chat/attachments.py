from __future__ import annotations

import base64
import math
import re
from typing import TypedDict, cast

from shared.models import AttachmentKind, AttachmentSource, ChatAttachment, JSONValue

_DATA_URL_RE = re.compile(r"^data:([^,]+?);base64,(.+)$", re.DOTALL)
_LINE_SPLIT_RE = re.compile(r"\r?\n")


class StoredAttachment(TypedDict, total=False):
    id: str
    kind: AttachmentKind
    dataUrl: str
    mimeType: str
    fileName: str
    source: AttachmentSource
    durationMs: int
    transcript: str
    transcriptParts: list[str]
    persistedNoteId: str


def parse_data_url(data_url: str) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<payload>`` into ``(mime, payload)``.

    MIME parameters such as ``;codecs=opus`` stay part of the returned type.
    """
    match = _DATA_URL_RE.match(data_url)
    if match is None:
        return None
    return match.group(1), match.group(2)


def is_voice_note_attachment(attachment: ChatAttachment) -> bool:
    if attachment.kind == "voice-note":
        return True
    return attachment.mime_type.lower().startswith("audio/")


def split_transcript_parts(transcript: str) -> list[str]:
    return [part.strip() for part in _LINE_SPLIT_RE.split(transcript) if part.strip()]


def normalize_transcript(attachment: ChatAttachment) -> str:
    if isinstance(attachment.transcript, str):
        return attachment.transcript.strip()
    if not isinstance(attachment.transcript_parts, list):
        return ""
    parts = [part.strip() if isinstance(part, str) else "" for part in attachment.transcript_parts]
    return "\n".join(part for part in parts if part)


def _optional_str(value: object) -> str | None:
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    return None


def _normalize_duration(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0, round(value))


def _normalize_source(value: object) -> AttachmentSource | None:
    if value == "record" or value == "upload":
        return cast(AttachmentSource, value)
    return None


def to_stored_attachment(attachment: ChatAttachment) -> StoredAttachment | None:
    attachment_id = _optional_str(attachment.id)
    data_url = _optional_str(attachment.data_url)
    mime_type = _optional_str(attachment.mime_type)
    if attachment_id is None or data_url is None or mime_type is None:
        return None

    stored: StoredAttachment = {
        "id": attachment_id,
        "kind": "voice-note" if is_voice_note_attachment(attachment) else "image",
        "dataUrl": data_url,
        "mimeType": mime_type,
    }
    file_name = _optional_str(attachment.file_name)
    if file_name is not None:
        stored["fileName"] = file_name
    source = _normalize_source(attachment.source)
    if source is not None:
        stored["source"] = source
    duration_ms = _normalize_duration(attachment.duration_ms)
    if duration_ms is not None:
        stored["durationMs"] = duration_ms
    transcript = normalize_transcript(attachment)
    if transcript:
        stored["transcript"] = transcript
        stored["transcriptParts"] = split_transcript_parts(transcript)
    persisted_note_id = _optional_str(attachment.persisted_note_id)
    if persisted_note_id is not None:
        stored["persistedNoteId"] = persisted_note_id
    return stored


def from_stored_attachment(value: object) -> ChatAttachment | None:
    if not isinstance(value, dict):
        return None
    attachment_id = _optional_str(value.get("id"))
    data_url = _optional_str(value.get("dataUrl"))
    mime_type = _optional_str(value.get("mimeType"))
    if attachment_id is None or data_url is None or mime_type is None:
        return None
    kind_raw = value.get("kind")
    transcript = _optional_str(value.get("transcript"))
    return ChatAttachment(
        id=attachment_id,
        kind=cast(AttachmentKind, kind_raw) if kind_raw in {"voice-note", "image"} else None,
        data_url=data_url,
        mime_type=mime_type,
        file_name=_optional_str(value.get("fileName")),
        source=_normalize_source(value.get("source")),
        duration_ms=_normalize_duration(value.get("durationMs")),
        transcript=transcript,
        transcript_parts=split_transcript_parts(transcript) if transcript else None,
        persisted_note_id=_optional_str(value.get("persistedNoteId")),
    )


def build_voice_note_content_block(
    attachment: ChatAttachment,
    *,
    persisted_note_id: str | None = None,
    include_preview_url: bool = False,
) -> dict[str, JSONValue]:
    transcript = normalize_transcript(attachment)
    note_id = _optional_str(persisted_note_id) or _optional_str(attachment.persisted_note_id)
    block: dict[str, JSONValue] = {
        "type": "voice_note",
        "source": {
            "type": "base64",
            "media_type": attachment.mime_type,
            "data": attachment.data_url,
        },
        "mimeType": attachment.mime_type,
        "fileName": attachment.file_name,
    }
    if include_preview_url and attachment.preview_url:
        block["url"] = attachment.preview_url
    if transcript:
        block["transcript"] = transcript
        block["transcriptParts"] = split_transcript_parts(transcript)
    if note_id:
        block["persistedNoteId"] = note_id
    return block


def build_image_content_block(attachment: ChatAttachment) -> dict[str, JSONValue]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": attachment.mime_type,
            "data": attachment.data_url,
        },
    }


def build_image_api_attachments(
    attachments: list[ChatAttachment],
) -> list[dict[str, JSONValue]] | None:
    if not attachments:
        return None
    converted: list[dict[str, JSONValue]] = []
    for attachment in attachments:
        parsed = parse_data_url(attachment.data_url)
        if parsed is None:
            continue
        mime_type, content = parsed
        converted.append({"type": "image", "mimeType": mime_type, "content": content})
    return converted


def build_voice_note_prompt_text(voice_notes: list[ChatAttachment]) -> str:
    sections: list[str] = []
    for index, attachment in enumerate(voice_notes, start=1):
        label = _optional_str(attachment.file_name) or f"Voice note {index}"
        transcript = normalize_transcript(attachment)
        if transcript:
            sections.append(f"[{label} transcript]\n{transcript}")
        else:
            sections.append(f"[{label}]")
    return "\n\n".join(sections).strip()


def encode_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
