from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .conversations import DEFAULT_BROADCAST_ID, DEFAULT_BROADCAST_TITLE
from .typing_signal import DEFAULT_IDLE_SECONDS

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ChatConfig:
    typing_idle_ms: int = int(DEFAULT_IDLE_SECONDS * 1000)
    presence_heartbeat_s: int = 60
    broadcast_id: str = DEFAULT_BROADCAST_ID
    broadcast_title: str = DEFAULT_BROADCAST_TITLE
    upload_url: str | None = None
    upload_preset: str | None = None
    upload_timeout_s: int = 30
    log_level: str = "INFO"

    @property
    def typing_idle_seconds(self) -> float:
        return self.typing_idle_ms / 1000

    @property
    def uploads_enabled(self) -> bool:
        return bool(self.upload_url)

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_str(name: str, default: str | None) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _parse_log_level(name: str, default: str) -> str:
    raw = _parse_str(name, default)
    level = (raw or default).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_chat_config_from_env() -> ChatConfig:
    defaults = ChatConfig()
    return ChatConfig(
        typing_idle_ms=_parse_positive_int("CHAT_TYPING_IDLE_MS", defaults.typing_idle_ms),
        presence_heartbeat_s=_parse_positive_int("CHAT_PRESENCE_HEARTBEAT_S", defaults.presence_heartbeat_s),
        broadcast_id=_parse_str("CHAT_BROADCAST_ID", defaults.broadcast_id) or defaults.broadcast_id,
        broadcast_title=_parse_str("CHAT_BROADCAST_TITLE", defaults.broadcast_title) or defaults.broadcast_title,
        upload_url=_parse_str("CHAT_UPLOAD_URL", None),
        upload_preset=_parse_str("CHAT_UPLOAD_PRESET", None),
        upload_timeout_s=_parse_positive_int("CHAT_UPLOAD_TIMEOUT_S", defaults.upload_timeout_s),
        log_level=_parse_log_level("CHAT_LOG_LEVEL", defaults.log_level),
    )
