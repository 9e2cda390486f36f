from __future__ import annotations

FULL_DISK_ACCESS_HINT = (
    "Failed to read the Messages database. Grant Full Disk Access to your terminal/CLI "
    "(System Settings > Privacy & Security > Full Disk Access) and try again."
)
TIMEOUT_HINT = "The Messages database did not answer in time. Narrow the scope or limit and try again."
SCOPE_HINT = "Provide chat_id, participant, or a since/until time bound to narrow the search."
DECODE_HINT = "The message body could not be decoded; it is returned without text."


class ChatVaultError(Exception):
    """Base error carrying a plain-language remediation hint."""

    default_hint = ""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint if hint is not None else self.default_hint

    def user_message(self) -> str:
        if not self.hint:
            return self.message
        return f"{self.hint} Error: {self.message}"


class StoreUnavailable(ChatVaultError):
    default_hint = FULL_DISK_ACCESS_HINT


class QueryTimeout(StoreUnavailable):
    default_hint = TIMEOUT_HINT


class ScopeRequired(ChatVaultError):
    default_hint = SCOPE_HINT


class DecodeFailure(ChatVaultError):
    default_hint = DECODE_HINT


class PlistConversionError(DecodeFailure):
    pass


__all__ = [
    "ChatVaultError",
    "DecodeFailure",
    "PlistConversionError",
    "QueryTimeout",
    "ScopeRequired",
    "StoreUnavailable",
]
