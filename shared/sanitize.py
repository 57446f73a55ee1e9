from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from shared.models import JSONValue

SECRET_KEYS = {
    "api_key",
    "authorization",
    "token",
    "secret",
}
PAYLOAD_KEYS = {"content", "data", "dataurl", "data_url"}
MAX_FIELD_PREVIEW = 96


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8", errors="replace")
    try:
        return json.dumps(value, ensure_ascii=False).encode("utf-8", errors="replace")
    except (TypeError, ValueError):
        return str(value).encode("utf-8", errors="replace")


def summarize_payload(value: Any) -> dict[str, JSONValue]:
    raw_bytes = _to_bytes(value)
    preview = raw_bytes[:MAX_FIELD_PREVIEW].decode("utf-8", errors="replace")
    if len(raw_bytes) > MAX_FIELD_PREVIEW:
        preview += "…[truncated]"
    return {
        "preview": preview,
        "bytes_count": len(raw_bytes),
        "sha256": hashlib.sha256(raw_bytes).hexdigest(),
    }


def _sanitize_value(key: str | None, value: Any) -> JSONValue:
    key_lower = key.lower() if isinstance(key, str) else ""
    if key_lower in SECRET_KEYS:
        return "[secret]"
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    if isinstance(value, Mapping):
        return {str(k): _sanitize_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(key, item) for item in value]
    if isinstance(value, (str, bytes)):
        if key_lower in PAYLOAD_KEYS and len(_to_bytes(value)) > MAX_FIELD_PREVIEW:
            return summarize_payload(value)
        return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
    return str(value)


def sanitize_params(params: Mapping[str, Any]) -> dict[str, JSONValue]:
    """Copy of request params that is safe to put into a log record."""
    return {str(key): _sanitize_value(str(key), value) for key, value in params.items()}


def safe_json_loads(raw: str) -> object | None:
    try:
        parsed: object = json.loads(raw)
        return parsed
    except json.JSONDecodeError:
        return None
