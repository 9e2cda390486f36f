"""Typed contracts returned to callers."""

from .contracts import (  # noqa: F401
    AttachmentHint,
    AttachmentRecord,
    ChatSummary,
    ContextResult,
    DecodedPayload,
    DetectedEntity,
    HandleSet,
    LinkEntity,
    Mention,
    MessageList,
    NormalizedMessage,
    SearchRequest,
    SearchResult,
    TextRange,
)
