"""Decoding and normalization of message rows."""

from .decoder import DecodeCache, RichTextDecoder, build_decoder  # noqa: F401
from .normalizer import MessageNormalizer, classify  # noqa: F401
from .text import extract_longest_printable, normalize_message_text, truncate_for_log  # noqa: F401
