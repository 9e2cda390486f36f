"""Read operations over the message store."""

from .messages import MessageService, resolve_attachment_path
from .queries import Scope
from .search import SearchEngine

__all__ = [
    "MessageService",
    "Scope",
    "SearchEngine",
    "resolve_attachment_path",
]
