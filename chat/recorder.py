from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from chat.attachments import encode_data_url
from shared.models import ChatAttachment

logger = logging.getLogger("ChatLink.Recorder")

RECORDER_MIME_CANDIDATES = (
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/ogg;codecs=opus",
    "audio/ogg",
    "audio/mp4;codecs=opus",
    "audio/mp4;codecs=aac",
    "audio/mp4",
    "audio/aac",
)
DEFAULT_RECORDING_MIME = "audio/webm"
MIC_PERMISSION_DENIED = "Microphone access denied. Allow mic permissions and try recording again."


class VoiceNoteRecordingError(RuntimeError):
    pass


class RecordingHandle(Protocol):
    mime_type: str

    def chunks(self) -> AsyncIterator[bytes]: ...

    async def stop(self) -> str: ...

    def release(self) -> None: ...


class MediaRecorderSource(Protocol):
    def is_type_supported(self, mime_type: str) -> bool: ...

    async def open(self, mime_type: str | None) -> RecordingHandle: ...


def pick_recorder_mime_type(source: MediaRecorderSource) -> str:
    for candidate in RECORDER_MIME_CANDIDATES:
        if source.is_type_supported(candidate):
            return candidate
    return ""


def resolve_voice_note_extension(mime_type: str) -> str:
    normalized = mime_type.lower()
    if "ogg" in normalized:
        return "ogg"
    if "mp4" in normalized or "m4a" in normalized or "aac" in normalized:
        return "m4a"
    if "mpeg" in normalized or "mp3" in normalized:
        return "mp3"
    return "webm"


def build_voice_note_file_name(now_ms: int, mime_type: str) -> str:
    stamp = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).strftime("%Y%m%d%H%M%S")  # noqa: UP017
    return f"voice-note-{stamp}.{resolve_voice_note_extension(mime_type)}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _ActiveRecording:
    handle: RecordingHandle
    started_at: int
    mime_type: str
    collector: asyncio.Task[None]
    chunks: list[bytes] = field(default_factory=list)
    stopping: bool = False


class VoiceNoteRecorder:
    """Drives one capture device and turns a finished recording into an attachment."""

    def __init__(
        self,
        source: MediaRecorderSource,
        *,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._source = source
        self._clock = clock
        self._id_factory = id_factory
        self._active: _ActiveRecording | None = None

    @property
    def active(self) -> bool:
        return self._active is not None

    async def start(self) -> None:
        if self._active is not None:
            return
        mime_type = pick_recorder_mime_type(self._source)
        try:
            handle = await self._source.open(mime_type or None)
        except PermissionError as exc:
            raise VoiceNoteRecordingError(MIC_PERMISSION_DENIED) from exc
        except Exception as exc:  # noqa: BLE001
            raise VoiceNoteRecordingError(f"Unable to start recording: {exc}") from exc

        chunks: list[bytes] = []

        async def _collect() -> None:
            async for chunk in handle.chunks():
                if chunk:
                    chunks.append(chunk)

        self._active = _ActiveRecording(
            handle=handle,
            started_at=self._clock(),
            mime_type=handle.mime_type or mime_type or DEFAULT_RECORDING_MIME,
            collector=asyncio.create_task(_collect()),
            chunks=chunks,
        )

    async def stop(self) -> ChatAttachment | None:
        active = self._active
        if active is None or active.stopping:
            return None
        active.stopping = True
        try:
            final_mime = await active.handle.stop()
            await active.collector
            data = b"".join(active.chunks)
            if not data:
                raise VoiceNoteRecordingError("voice note recording was empty")
            now = self._clock()
            mime_type = final_mime or active.mime_type or DEFAULT_RECORDING_MIME
            return ChatAttachment(
                id=self._id_factory(),
                kind="voice-note",
                data_url=encode_data_url(data, mime_type),
                mime_type=mime_type,
                file_name=build_voice_note_file_name(now, mime_type),
                source="record",
                duration_ms=max(0, now - active.started_at),
            )
        finally:
            if not active.collector.done():
                active.collector.cancel()
            active.handle.release()
            self._active = None
            logger.debug("Voice recording released")
