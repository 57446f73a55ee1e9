from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_BASE_URL = "http://127.0.0.1:18789"
DEFAULT_TIMEOUT = 30.0
DEFAULT_RPC_PATH = "/rpc"
DEFAULT_EVENTS_PATH = "/events"
DEFAULT_PATH = Path("config/gateway.json")


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str = DEFAULT_BASE_URL
    base_path: str = ""
    token: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    rpc_path: str = DEFAULT_RPC_PATH
    events_path: str = DEFAULT_EVENTS_PATH

    def resolve_token(self) -> str | None:
        return self.token or os.getenv("CHATLINK_GATEWAY_TOKEN")


def normalize_base_path(raw: str) -> str:
    value = raw.strip()
    if not value or value == "/":
        return ""
    if not value.startswith("/"):
        value = "/" + value
    return value.rstrip("/")


def _require_path(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.startswith("/"):
        raise ValueError(f"gateway.{key} must be a path starting with '/'.")
    return value


def load_gateway_config(path: Path = DEFAULT_PATH) -> GatewayConfig:
    if not path.exists():
        return GatewayConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to read {path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain an object.")
    base_url = data.get("base_url", DEFAULT_BASE_URL)
    base_path = data.get("base_path", "")
    token = data.get("token")
    timeout = data.get("timeout", DEFAULT_TIMEOUT)
    if not isinstance(base_url, str) or not base_url.strip():
        raise ValueError("gateway.base_url must be a non-empty string.")
    if not isinstance(base_path, str):
        raise ValueError("gateway.base_path must be a string.")
    if token is not None and not isinstance(token, str):
        raise ValueError("gateway.token must be a string or null.")
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        raise ValueError("gateway.timeout must be a positive number.")
    return GatewayConfig(
        base_url=base_url.strip().rstrip("/"),
        base_path=normalize_base_path(base_path),
        token=token.strip() if isinstance(token, str) and token.strip() else None,
        timeout=float(timeout),
        rpc_path=_require_path(data, "rpc_path", DEFAULT_RPC_PATH),
        events_path=_require_path(data, "events_path", DEFAULT_EVENTS_PATH),
    )


def resolve_gateway_config(path: Path = DEFAULT_PATH) -> GatewayConfig:
    config = load_gateway_config(path)
    url_raw = os.getenv("CHATLINK_GATEWAY_URL")
    token_raw = os.getenv("CHATLINK_GATEWAY_TOKEN")
    timeout_raw = os.getenv("CHATLINK_GATEWAY_TIMEOUT")

    base_url = config.base_url
    if isinstance(url_raw, str) and url_raw.strip():
        base_url = url_raw.strip().rstrip("/")

    token = config.token
    if isinstance(token_raw, str) and token_raw.strip():
        token = token_raw.strip()

    timeout = config.timeout
    if isinstance(timeout_raw, str) and timeout_raw.strip():
        try:
            timeout = float(timeout_raw.strip())
        except ValueError as exc:
            raise ValueError("CHATLINK_GATEWAY_TIMEOUT must be a number.") from exc

    return GatewayConfig(
        base_url=base_url,
        base_path=config.base_path,
        token=token,
        timeout=timeout,
        rpc_path=config.rpc_path,
        events_path=config.events_path,
    )
