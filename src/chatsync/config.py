from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .ingestion import GLOBAL_CHANNEL
from .presence import PresenceConfig
from .profiles import DEFAULT_HISTORY_PATH
from .visibility import PLACEHOLDER_TEXT


@dataclass(frozen=True)
class SyncConfig:
    base_url: Optional[str] = None
    session_token: Optional[str] = None
    typing_window_s: float = 2.5
    global_channel: str = GLOBAL_CHANNEL
    presence_channel: str = "online-status"
    attachments_prefix: str = "chat-attachments"
    avatars_prefix: str = "avatars"
    placeholder_text: str = PLACEHOLDER_TEXT
    history_size: int = 5
    history_path: Path = DEFAULT_HISTORY_PATH
    request_timeout_s: float = 10.0

    def presence_config(self) -> PresenceConfig:
        return PresenceConfig(typing_window_seconds=self.typing_window_s)

    def typing_channel(self, conv_id: str) -> str:
        return f"chat_presence_{conv_id}"

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            base_url=_parse_str("CHATSYNC_BASE_URL", None),
            session_token=_parse_str("CHATSYNC_TOKEN", None),
            typing_window_s=_parse_positive_float("CHATSYNC_TYPING_WINDOW_S", 2.5),
            global_channel=_parse_str("CHATSYNC_GLOBAL_CHANNEL", GLOBAL_CHANNEL),
            presence_channel=_parse_str("CHATSYNC_PRESENCE_CHANNEL", "online-status"),
            attachments_prefix=_parse_str("CHATSYNC_ATTACHMENTS_PREFIX", "chat-attachments"),
            avatars_prefix=_parse_str("CHATSYNC_AVATARS_PREFIX", "avatars"),
            placeholder_text=_parse_str("CHATSYNC_PLACEHOLDER_TEXT", PLACEHOLDER_TEXT),
            history_size=_parse_positive_int("CHATSYNC_HISTORY_SIZE", 5),
            history_path=Path(_parse_str("CHATSYNC_HISTORY_PATH", str(DEFAULT_HISTORY_PATH))).expanduser(),
            request_timeout_s=_parse_positive_float("CHATSYNC_REQUEST_TIMEOUT_S", 10.0),
        )


def _parse_str(name: str, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed
