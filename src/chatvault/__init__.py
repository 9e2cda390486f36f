"""Normalization and scoped search over the macOS Messages store."""

from .config import ChatVaultSettings, get_settings  # noqa: F401
from .errors import (  # noqa: F401
    ChatVaultError,
    DecodeFailure,
    PlistConversionError,
    QueryTimeout,
    ScopeRequired,
    StoreUnavailable,
)
from .logging import ensure_logging, get_logger, setup_logging  # noqa: F401
from .models import (  # noqa: F401
    AttachmentRecord,
    ChatSummary,
    ContextResult,
    DecodedPayload,
    HandleSet,
    MessageList,
    NormalizedMessage,
    SearchRequest,
    SearchResult,
)
from .pipeline import MessageNormalizer, RichTextDecoder  # noqa: F401
from .services import MessageService, SearchEngine  # noqa: F401
