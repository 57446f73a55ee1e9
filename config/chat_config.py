from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HISTORY_LIMIT = 200
DEFAULT_ATTACHMENTS_LIMIT = 8
DEFAULT_VOICE_NOTES_LIMIT = 40
DEFAULT_SESSIONS_ACTIVE_MINUTES = 120
DEFAULT_STORAGE_KEY = "chatlink.chat.local.v1"
DEFAULT_CACHE_VERSION = 1
DEFAULT_CACHE_DB_PATH = Path(".run/chat_cache.db")
DEFAULT_PATH = Path("config/chat.json")

_INT_FIELDS = (
    "history_limit",
    "attachments_limit",
    "voice_notes_limit",
    "sessions_active_minutes",
    "cache_version",
)


@dataclass(frozen=True)
class ChatConfig:
    history_limit: int = DEFAULT_HISTORY_LIMIT
    attachments_limit: int = DEFAULT_ATTACHMENTS_LIMIT
    voice_notes_limit: int = DEFAULT_VOICE_NOTES_LIMIT
    sessions_active_minutes: int = DEFAULT_SESSIONS_ACTIVE_MINUTES
    storage_key: str = DEFAULT_STORAGE_KEY
    cache_version: int = DEFAULT_CACHE_VERSION
    cache_db_path: Path = DEFAULT_CACHE_DB_PATH
    reload_history_on_final: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "history_limit": self.history_limit,
            "attachments_limit": self.attachments_limit,
            "voice_notes_limit": self.voice_notes_limit,
            "sessions_active_minutes": self.sessions_active_minutes,
            "storage_key": self.storage_key,
            "cache_version": self.cache_version,
            "cache_db_path": str(self.cache_db_path),
            "reload_history_on_final": self.reload_history_on_final,
        }


def load_chat_config(path: Path = DEFAULT_PATH) -> ChatConfig:
    if not path.exists():
        return ChatConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to read {path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain an object.")

    defaults = ChatConfig()
    values: dict[str, int] = {}
    for name in _INT_FIELDS:
        raw = data.get(name, getattr(defaults, name))
        if not isinstance(raw, int) or isinstance(raw, bool) or raw <= 0:
            raise ValueError(f"chat.{name} must be a positive int.")
        values[name] = raw

    storage_key = data.get("storage_key", DEFAULT_STORAGE_KEY)
    if not isinstance(storage_key, str) or not storage_key.strip():
        raise ValueError("chat.storage_key must be a non-empty string.")
    cache_db_path = data.get("cache_db_path", str(DEFAULT_CACHE_DB_PATH))
    if not isinstance(cache_db_path, str) or not cache_db_path.strip():
        raise ValueError("chat.cache_db_path must be a non-empty string.")
    reload_history_on_final = data.get("reload_history_on_final", True)
    if not isinstance(reload_history_on_final, bool):
        raise ValueError("chat.reload_history_on_final must be bool.")

    return ChatConfig(
        history_limit=values["history_limit"],
        attachments_limit=values["attachments_limit"],
        voice_notes_limit=values["voice_notes_limit"],
        sessions_active_minutes=values["sessions_active_minutes"],
        storage_key=storage_key.strip(),
        cache_version=values["cache_version"],
        cache_db_path=Path(cache_db_path.strip()),
        reload_history_on_final=reload_history_on_final,
    )


def _env_int(name: str, current: int) -> int:
    raw = os.getenv(name)
    if not isinstance(raw, str) or not raw.strip():
        return current
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be int.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive.")
    return value


def resolve_chat_config(path: Path = DEFAULT_PATH) -> ChatConfig:
    config = load_chat_config(path)
    cache_db_raw = os.getenv("CHATLINK_CACHE_DB")
    cache_db_path = config.cache_db_path
    if isinstance(cache_db_raw, str) and cache_db_raw.strip():
        cache_db_path = Path(cache_db_raw.strip())
    return ChatConfig(
        history_limit=_env_int("CHATLINK_HISTORY_LIMIT", config.history_limit),
        attachments_limit=_env_int("CHATLINK_ATTACHMENTS_LIMIT", config.attachments_limit),
        voice_notes_limit=_env_int("CHATLINK_VOICE_NOTES_LIMIT", config.voice_notes_limit),
        sessions_active_minutes=config.sessions_active_minutes,
        storage_key=config.storage_key,
        cache_version=config.cache_version,
        cache_db_path=cache_db_path,
        reload_history_on_final=config.reload_history_on_final,
    )
