from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_chatlink_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CHATLINK_GATEWAY_URL",
        "CHATLINK_GATEWAY_TOKEN",
        "CHATLINK_GATEWAY_TIMEOUT",
        "CHATLINK_HISTORY_LIMIT",
        "CHATLINK_ATTACHMENTS_LIMIT",
        "CHATLINK_VOICE_NOTES_LIMIT",
        "CHATLINK_CACHE_DB",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _close_sqlite_connections(monkeypatch: pytest.MonkeyPatch):
    connections: list[sqlite3.Connection] = []
    original_connect = sqlite3.connect

    def _connect(*args: object, **kwargs: object) -> sqlite3.Connection:
        conn = original_connect(*args, **kwargs)
        connections.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", _connect)

    yield

    for conn in connections:
        conn.close()
