from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DecodeProvenance = Literal["primary-parser", "legacy-extraction", "none"]
TextSource = Literal["text", "primary-parser", "legacy-extraction", "none"]
MessageType = Literal["text", "reaction", "reaction_removed", "effect", "attachment", "unknown"]
HandleStrategy = Literal["handle", "person", "chat_name", "substring", "fallback"]


class TextRange(BaseModel):
    """Span into recovered text, counted in string indices."""

    model_config = ConfigDict(frozen=True)

    offset: int = Field(default=0, ge=0)
    length: int = Field(default=0, ge=0)

    @property
    def end(self) -> int:
        return self.offset + self.length


class AttachmentHint(TextRange):
    guid: str | None = None
    filename: str | None = None


class Mention(TextRange):
    handle: str


class LinkEntity(TextRange):
    url: str


class DetectedEntity(TextRange):
    kind: str
    text: str | None = None


class DecodedPayload(BaseModel):
    """Result of decoding one rich-text payload."""

    model_config = ConfigDict(frozen=True)

    text: str | None = None
    provenance: DecodeProvenance = "none"
    canonical_link: str | None = None
    attachment_hints: List[AttachmentHint] = Field(default_factory=list)
    mentions: List[Mention] = Field(default_factory=list)
    links: List[LinkEntity] = Field(default_factory=list)
    detected_entities: List[DetectedEntity] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _ranges_within_text(self) -> "DecodedPayload":
        if self.text is None:
            if self.provenance != "none":
                raise ValueError("provenance must be 'none' when no text was recovered")
            return self
        limit = len(self.text)
        for span in (*self.attachment_hints, *self.mentions, *self.links, *self.detected_entities):
            if span.end > limit:
                raise ValueError(f"entity range {span.offset}+{span.length} exceeds text length {limit}")
        return self


class NormalizedMessage(BaseModel):
    """Canonical, typed projection of one message row."""

    message_rowid: int
    chat_id: int | None = None
    guid: str
    from_me: bool = False
    text: str | None = None
    text_source: TextSource = "none"
    sender: str | None = None
    unix_ms: int | None = None
    iso_utc: str | None = None
    iso_local: str | None = None
    has_attachments: bool = False
    attachment_hints: List[AttachmentHint] = Field(default_factory=list)
    service: str | None = None
    account: str | None = None
    subject: str | None = None
    message_type: MessageType = "unknown"
    subtype: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HandleSet(BaseModel):
    """Handles a participant query resolved to, plus the strategy that won."""

    query: str
    handles: List[str]
    strategy: HandleStrategy

    @model_validator(mode="after")
    def _never_empty(self) -> "HandleSet":
        if not self.handles:
            raise ValueError("a handle set always carries at least one handle")
        return self

    def __len__(self) -> int:
        return len(self.handles)

    def __contains__(self, handle: object) -> bool:
        return handle in self.handles


class ChatSummary(BaseModel):
    chat_id: int
    guid: str
    display_name: str | None = None
    participants: List[str] = Field(default_factory=list)
    last_message_unix_ms: int | None = None
    last_message_iso_utc: str | None = None


class AttachmentRecord(BaseModel):
    attachment_rowid: int
    message_rowid: int
    guid: str | None = None
    filename: str | None = None
    transfer_name: str | None = None
    mime_type: str | None = None
    uti: str | None = None
    total_bytes: int | None = None
    path: str | None = None


class SearchRequest(BaseModel):
    """Scoped search request. At least one scope must be present."""

    query: str | None = None
    chat_id: int | None = None
    participant: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    from_me: bool | None = None
    has_attachments: bool | None = None
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)

    def has_scope(self) -> bool:
        return (
            self.chat_id is not None
            or bool(self.participant and self.participant.strip())
            or self.since is not None
            or self.until is not None
        )

    @property
    def needle(self) -> Optional[str]:
        if self.query is None:
            return None
        stripped = self.query.strip()
        return stripped or None


class SearchResult(BaseModel):
    query: str | None = None
    results: List[NormalizedMessage] = Field(default_factory=list)
    total_considered: int = 0
    truncated: bool = False
    fallback_matches: int = 0
    handles: HandleSet | None = None


class MessageList(BaseModel):
    messages: List[NormalizedMessage] = Field(default_factory=list)
    handles: HandleSet | None = None


class ContextResult(BaseModel):
    anchor_rowid: int
    chat_id: int | None = None
    messages: List[NormalizedMessage] = Field(default_factory=list)
    total_considered: int = 0
    truncated: bool = False


__all__ = [
    "AttachmentHint",
    "AttachmentRecord",
    "ChatSummary",
    "ContextResult",
    "DecodeProvenance",
    "DecodedPayload",
    "DetectedEntity",
    "HandleSet",
    "HandleStrategy",
    "LinkEntity",
    "Mention",
    "MessageList",
    "MessageType",
    "NormalizedMessage",
    "SearchRequest",
    "SearchResult",
    "TextRange",
    "TextSource",
]
