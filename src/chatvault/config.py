from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


def _default_chat_db() -> str:
    configured = os.getenv("CHATVAULT_CHAT_DB")
    if configured:
        return str(Path(configured).expanduser())
    return str(Path.home() / "Library" / "Messages" / "chat.db")


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


class ChatVaultSettings(BaseModel):
    """Runtime configuration for the message store reader."""

    chat_db_path: str = Field(default_factory=_default_chat_db)
    query_timeout_seconds: float = Field(default_factory=lambda: _env_float("CHATVAULT_QUERY_TIMEOUT", "15"))
    converter_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("CHATVAULT_CONVERTER_TIMEOUT", "5")
    )
    legacy_converter: Literal["plistlib", "plutil"] = Field(
        default_factory=lambda: os.getenv("CHATVAULT_LEGACY_CONVERTER", "plistlib").lower()
    )
    default_limit: int = Field(default_factory=lambda: _env_int("CHATVAULT_DEFAULT_LIMIT", "50"))
    max_limit: int = Field(default_factory=lambda: _env_int("CHATVAULT_MAX_LIMIT", "500"))
    fallback_multiplier: int = Field(default_factory=lambda: _env_int("CHATVAULT_FALLBACK_MULTIPLIER", "10"))
    fallback_cap: int = Field(default_factory=lambda: _env_int("CHATVAULT_FALLBACK_CAP", "500"))
    fallback_batch_size: int = Field(default_factory=lambda: _env_int("CHATVAULT_FALLBACK_BATCH", "50"))
    handle_substring_cap: int = Field(default_factory=lambda: _env_int("CHATVAULT_HANDLE_SUBSTRING_CAP", "10"))
    attachment_row_cap: int = Field(default_factory=lambda: _env_int("CHATVAULT_ATTACHMENT_ROW_CAP", "10"))
    default_region: str = Field(default_factory=lambda: os.getenv("CHATVAULT_DEFAULT_REGION", "US"))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(self.max_limit, int(limit)))


@lru_cache(maxsize=1)
def get_settings() -> ChatVaultSettings:
    return ChatVaultSettings()


__all__ = ["ChatVaultSettings", "get_settings"]
