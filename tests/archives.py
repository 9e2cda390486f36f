"""Builders for message-body payloads used by the fixtures."""

from __future__ import annotations

import plistlib
from typing import Any, Dict, List, Optional, Sequence, Tuple

TAG_INTEGER_2 = 0x81
TAG_INTEGER_4 = 0x82
TAG_NEW = 0x84
TAG_NIL = 0x85
TAG_END_OF_OBJECT = 0x86
FIRST_REFERENCE = -110

STRING_CHAIN = ("NSString", "NSObject")
NUMBER_CHAIN = ("NSNumber", "NSValue", "NSObject")
DICTIONARY_CHAIN = ("NSDictionary", "NSObject")
ATTRIBUTED_CHAIN = ("NSAttributedString", "NSObject")
CLASS_VERSIONS = {"NSString": 1}

PART_KEY = "__kIMMessagePartAttributeName"
ATTACHMENT_GUID_KEY = "__kIMFileTransferGUIDAttributeName"
ATTACHMENT_FILENAME_KEY = "__kIMFilenameAttributeName"
MENTION_KEY = "__kIMMentionConfirmedMention"
LINK_KEY = "__kIMLinkAttributeName"
RICH_LINK_KEY = "__kIMLinkIsRichLinkAttributeName"
BOLD_KEY = "__kIMTextBoldAttributeName"


def utf16_length(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


class TypedStreamWriter:
    """Writes the subset of the streamtyped format that message bodies use."""

    def __init__(self) -> None:
        self._out = bytearray()
        self._strings: Dict[bytes, int] = {}
        self._classes: Dict[str, int] = {}
        self._next_object = 0

    def integer(self, value: int) -> None:
        if 0 <= value <= 0x7F:
            self._out.append(value)
        elif -0x8000 <= value <= 0x7FFF:
            self._out.append(TAG_INTEGER_2)
            self._out += value.to_bytes(2, "little", signed=True)
        else:
            self._out.append(TAG_INTEGER_4)
            self._out += value.to_bytes(4, "little", signed=True)

    def _reference(self, index: int) -> None:
        value = index + FIRST_REFERENCE
        if index <= 109:
            self._out.append(value & 0xFF)
        else:
            self._out.append(TAG_INTEGER_2)
            self._out += value.to_bytes(2, "little", signed=True)

    def shared_string(self, value: bytes) -> None:
        if value in self._strings:
            self._reference(self._strings[value])
            return
        self._strings[value] = len(self._strings)
        self._out.append(TAG_NEW)
        self.integer(len(value))
        self._out += value

    def _class(self, chain: Sequence[str]) -> None:
        if not chain:
            self._out.append(TAG_NIL)
            return
        name = chain[0]
        if name in self._classes:
            self._reference(self._classes[name])
            return
        self._classes[name] = self._next_object
        self._next_object += 1
        self._out.append(TAG_NEW)
        self.shared_string(name.encode("utf-8"))
        self.integer(CLASS_VERSIONS.get(name, 0))
        self._class(chain[1:])

    def _begin(self, chain: Sequence[str]) -> None:
        self._out.append(TAG_NEW)
        self._next_object += 1
        self._class(chain)

    def _end(self) -> None:
        self._out.append(TAG_END_OF_OBJECT)

    def string_object(self, text: str) -> None:
        data = text.encode("utf-8")
        self._begin(STRING_CHAIN)
        self.shared_string(b"+")
        self.integer(len(data))
        self._out += data
        self._end()

    def c_string(self, value: bytes) -> None:
        self._out.append(TAG_NEW)
        self._next_object += 1
        self.shared_string(value)

    def number_object(self, value: int) -> None:
        # NSNumber archives its objCType as a C string, then the value.
        self._begin(NUMBER_CHAIN)
        self.shared_string(b"*")
        self.c_string(b"i")
        self.shared_string(b"i")
        self.integer(int(value))
        self._end()

    def value_object(self, value: Any) -> None:
        if isinstance(value, str):
            self.string_object(value)
        else:
            self.number_object(int(value))

    def dictionary_object(self, entries: Dict[str, Any]) -> None:
        self._begin(DICTIONARY_CHAIN)
        self.shared_string(b"i")
        self.integer(len(entries))
        for key, value in entries.items():
            self.shared_string(b"@")
            self.string_object(key)
            self.shared_string(b"@")
            self.value_object(value)
        self._end()

    def attributed_string(self, text: str, runs: Sequence[Tuple[int, Dict[str, Any]]]) -> None:
        self._begin(ATTRIBUTED_CHAIN)
        self.shared_string(b"@")
        self.string_object(text)
        for run_id, (length, attributes) in enumerate(runs, start=1):
            self.shared_string(b"iI")
            self.integer(run_id)
            self.integer(length)
            self.shared_string(b"@")
            self.dictionary_object(attributes)
        self._end()

    def header(self) -> None:
        self.integer(4)
        self.integer(len(b"streamtyped"))
        self._out += b"streamtyped"
        self.integer(1000)

    def getvalue(self) -> bytes:
        return bytes(self._out)


def attributed_body(text: str, runs: Optional[List[Tuple[int, Dict[str, Any]]]] = None) -> bytes:
    """Typedstream NSAttributedString; ``runs`` are (utf16 length, attributes)."""
    if runs is None:
        runs = [(utf16_length(text), {PART_KEY: 0})]
    writer = TypedStreamWriter()
    writer.header()
    writer.shared_string(b"@")
    writer.attributed_string(text, runs)
    return writer.getvalue()


def plain_string_body(text: str) -> bytes:
    writer = TypedStreamWriter()
    writer.header()
    writer.shared_string(b"@")
    writer.string_object(text)
    return writer.getvalue()


def attachment_only_body(guid: str, filename: str | None = None) -> bytes:
    attributes: Dict[str, Any] = {PART_KEY: 0, ATTACHMENT_GUID_KEY: guid}
    if filename:
        attributes[ATTACHMENT_FILENAME_KEY] = filename
    return attributed_body("\ufffc", [(1, attributes)])


def keyed_archive(text: str) -> bytes:
    return plistlib.dumps(
        {
            "$version": 100000,
            "$archiver": "NSKeyedArchiver",
            "$top": {"root": plistlib.UID(1)},
            "$objects": [
                "$null",
                {"NS.string": plistlib.UID(2), "$class": plistlib.UID(3)},
                text,
                {"$classname": "NSAttributedString", "$classes": ["NSAttributedString", "NSObject"]},
            ],
        },
        fmt=plistlib.FMT_BINARY,
    )


def loose_plist(text: str) -> bytes:
    """A property list that is not a keyed archive but still carries text."""
    return plistlib.dumps(
        {"$objects": ["$null", "NSAttributedString", {"body": text}, "NSDictionary"]},
        fmt=plistlib.FMT_BINARY,
    )
