"""Reader for the ``streamtyped`` archive format used by message bodies.

Message bodies are NSAttributedString instances written with NSArchiver.
The stream is a header followed by typed groups: each group is a shared
type-encoding string followed by one value per type character. Objects are
a class chain followed by groups until an end-of-object tag, which lets the
reader walk classes it has no special knowledge of.

Only the classes that carry message text or attributes are materialised
into Python values; everything else becomes an :class:`ArchivedObject`.
"""

from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

TAG_INTEGER_2 = 0x81
TAG_INTEGER_4 = 0x82
TAG_FLOATING_POINT = 0x83
TAG_NEW = 0x84
TAG_NIL = 0x85
TAG_END_OF_OBJECT = 0x86
# Reference numbers are stored relative to this signed value (0x92).
FIRST_REFERENCE = -110

SIGNATURES = {b"streamtyped": "little", b"typedstream": "big"}
STRING_CLASSES = {"NSString", "NSMutableString"}
ATTRIBUTED_CLASSES = {"NSAttributedString", "NSMutableAttributedString"}
DICTIONARY_CLASSES = {"NSDictionary", "NSMutableDictionary"}
ARRAY_CLASSES = {"NSArray", "NSMutableArray"}
DATA_CLASSES = {"NSData", "NSMutableData"}
NUMBER_CLASSES = {"NSNumber", "NSValue"}
SIGNED_INTEGER_TYPES = b"silq"
UNSIGNED_INTEGER_TYPES = b"SILQ"


class TypedStreamError(ValueError):
    """Raised when the payload is not a well-formed typedstream."""


@dataclass
class ArchivedClass:
    name: str
    version: int
    superclass: Optional["ArchivedClass"] = None


@dataclass
class ArchivedObject:
    class_name: str
    values: List[Any] = field(default_factory=list)


@dataclass
class AttributeRun:
    offset: int
    length: int
    attributes: Dict[str, Any]


@dataclass
class ArchivedAttributedString:
    text: str
    runs: List[AttributeRun] = field(default_factory=list)


def looks_like_typedstream(data: bytes) -> bool:
    return any(signature in data[:16] for signature in SIGNATURES)


class TypedStreamReader:
    def __init__(self, data: bytes, *, max_depth: int = 64) -> None:
        self._data = bytes(data)
        self._pos = 0
        self._max_depth = max_depth
        self._byteorder = "little"
        self._shared_strings: List[bytes] = []
        self._objects: List[Any] = []
        self.version = 0
        self.system_version = 0

    # -- primitives -------------------------------------------------------

    def _read_byte(self) -> int:
        if self._pos >= len(self._data):
            raise TypedStreamError("unexpected end of stream")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def _peek_byte(self) -> int:
        if self._pos >= len(self._data):
            raise TypedStreamError("unexpected end of stream")
        return self._data[self._pos]

    def _read_exact(self, count: int) -> bytes:
        if count < 0 or self._pos + count > len(self._data):
            raise TypedStreamError(f"cannot read {count} bytes at offset {self._pos}")
        chunk = self._data[self._pos : self._pos + count]
        self._pos += count
        return chunk

    def _integer_from_head(self, head: int, *, signed: bool) -> int:
        if head == TAG_INTEGER_2:
            return int.from_bytes(self._read_exact(2), self._byteorder, signed=signed)
        if head == TAG_INTEGER_4:
            return int.from_bytes(self._read_exact(4), self._byteorder, signed=signed)
        if head in (TAG_FLOATING_POINT, TAG_NEW, TAG_NIL, TAG_END_OF_OBJECT):
            raise TypedStreamError(f"expected integer, found tag 0x{head:02x}")
        if signed and head > 0x7F:
            return head - 0x100
        return head

    def read_integer(self, *, signed: bool = True) -> int:
        return self._integer_from_head(self._read_byte(), signed=signed)

    def _read_reference(self, head: int) -> int:
        return self._integer_from_head(head, signed=True) - FIRST_REFERENCE

    def _read_float(self, size: int) -> float:
        head = self._read_byte()
        if head != TAG_FLOATING_POINT:
            return float(self._integer_from_head(head, signed=True))
        order = "<" if self._byteorder == "little" else ">"
        fmt = f"{order}{'f' if size == 4 else 'd'}"
        return struct.unpack(fmt, self._read_exact(size))[0]

    def _read_shared_string(self) -> Optional[bytes]:
        head = self._read_byte()
        if head == TAG_NIL:
            return None
        if head == TAG_NEW:
            length = self.read_integer(signed=False)
            value = self._read_exact(length)
            self._shared_strings.append(value)
            return value
        index = self._read_reference(head)
        if not 0 <= index < len(self._shared_strings):
            raise TypedStreamError(f"dangling string reference {index}")
        return self._shared_strings[index]

    def _read_c_string(self) -> Optional[bytes]:
        # Literal C strings also occupy a slot in the object table.
        head = self._read_byte()
        if head == TAG_NIL:
            return None
        if head == TAG_NEW:
            value = self._read_shared_string()
            self._objects.append(value)
            return value
        index = self._read_reference(head)
        if not 0 <= index < len(self._objects) or not isinstance(self._objects[index], bytes):
            raise TypedStreamError(f"dangling C string reference {index}")
        return self._objects[index]

    # -- header -------------------------------------------------------------

    def _read_header(self) -> None:
        self.version = self.read_integer(signed=False)
        signature = self._read_exact(self.read_integer(signed=False))
        byteorder = SIGNATURES.get(signature)
        if byteorder is None:
            raise TypedStreamError(f"unknown signature {signature!r}")
        self._byteorder = byteorder
        self.system_version = self.read_integer()

    # -- objects ----------------------------------------------------------

    def _read_class(self) -> Optional[ArchivedClass]:
        head = self._read_byte()
        if head == TAG_NIL:
            return None
        if head == TAG_NEW:
            index = len(self._objects)
            self._objects.append(None)
            name = self._read_shared_string()
            if name is None:
                raise TypedStreamError("class without a name")
            version = self.read_integer()
            archived = ArchivedClass(name.decode("utf-8", errors="replace"), version)
            self._objects[index] = archived
            archived.superclass = self._read_class()
            return archived
        index = self._read_reference(head)
        if not 0 <= index < len(self._objects) or not isinstance(self._objects[index], ArchivedClass):
            raise TypedStreamError(f"dangling class reference {index}")
        return self._objects[index]

    def _read_object(self, depth: int) -> Any:
        if depth > self._max_depth:
            raise TypedStreamError("object graph nested too deeply")
        head = self._read_byte()
        if head == TAG_NIL:
            return None
        if head == TAG_NEW:
            index = len(self._objects)
            self._objects.append(None)
            archived_class = self._read_class()
            if archived_class is None:
                raise TypedStreamError("object without a class")
            values: List[Any] = []
            while self._peek_byte() != TAG_END_OF_OBJECT:
                values.extend(self._read_group(depth + 1))
            self._pos += 1
            value = _materialize(archived_class.name, values)
            self._objects[index] = value
            return value
        index = self._read_reference(head)
        if not 0 <= index < len(self._objects):
            raise TypedStreamError(f"dangling object reference {index}")
        return self._objects[index]

    def _read_group(self, depth: int) -> List[Any]:
        encoding = self._read_shared_string()
        if not encoding:
            raise TypedStreamError("group without a type encoding")
        return [self._read_value(part, depth) for part in split_encoding(encoding)]

    def _read_value(self, encoding: bytes, depth: int) -> Any:
        code = encoding[:1]
        if code == b"@":
            return self._read_object(depth)
        if code == b"#":
            return self._read_class()
        if code == b"+":
            return self._read_exact(self.read_integer(signed=False))
        if code == b"*":
            return self._read_c_string()
        if code in (b"%", b":"):
            return self._read_shared_string()
        if code in (b"c", b"C"):
            return int.from_bytes(self._read_exact(1), self._byteorder, signed=code == b"c")
        if code and code in SIGNED_INTEGER_TYPES:
            return self.read_integer(signed=True)
        if code and code in UNSIGNED_INTEGER_TYPES:
            return self.read_integer(signed=False)
        if code == b"f":
            return self._read_float(4)
        if code == b"d":
            return self._read_float(8)
        if code == b"[":
            return self._read_array(encoding, depth)
        if code == b"{":
            inner = encoding[1:-1]
            _, _, members = inner.partition(b"=")
            return [self._read_value(part, depth) for part in split_encoding(members)]
        raise TypedStreamError(f"unsupported type encoding {encoding!r}")

    def _read_array(self, encoding: bytes, depth: int) -> Any:
        body = encoding[1:-1]
        digits = len(body) - len(body.lstrip(b"0123456789"))
        if digits == 0:
            raise TypedStreamError(f"array without a count {encoding!r}")
        count = int(body[:digits])
        element = body[digits:]
        if element in (b"c", b"C"):
            return self._read_exact(count)
        return [self._read_value(element, depth) for _ in range(count)]

    def read_root(self) -> Any:
        self._pos = 0
        self._shared_strings.clear()
        self._objects.clear()
        self._read_header()
        values = self._read_group(0)
        return values[0] if values else None


def split_encoding(encoding: bytes) -> List[bytes]:
    """Split a type-encoding string into one entry per encoded value."""
    parts: List[bytes] = []
    index = 0
    closers = {ord("["): ord("]"), ord("{"): ord("}"), ord("("): ord(")")}
    while index < len(encoding):
        opener = encoding[index]
        if opener in closers:
            depth = 0
            end = index
            while end < len(encoding):
                if encoding[end] in closers:
                    depth += 1
                elif encoding[end] in closers.values():
                    depth -= 1
                    if depth == 0:
                        break
                end += 1
            if end >= len(encoding):
                raise TypedStreamError(f"unbalanced type encoding {encoding!r}")
            parts.append(encoding[index : end + 1])
            index = end + 1
        else:
            parts.append(encoding[index : index + 1])
            index += 1
    return parts


def _utf16_index_map(text: str) -> List[int]:
    """Cumulative UTF-16 offsets at the start of each character."""
    offsets = [0]
    for ch in text:
        offsets.append(offsets[-1] + (2 if ord(ch) > 0xFFFF else 1))
    return offsets


def _to_char_index(units: int, offsets: List[int]) -> int:
    return max(0, bisect.bisect_right(offsets, units) - 1)


def _attributed_string(values: List[Any]) -> ArchivedAttributedString:
    text = values[0] if values and isinstance(values[0], str) else ""
    offsets = _utf16_index_map(text)
    dictionaries: List[Dict[str, Any]] = []
    runs: List[AttributeRun] = []
    cursor = 0
    index = 1
    while index + 1 < len(values):
        run_id, length = values[index], values[index + 1]
        if not isinstance(run_id, int) or not isinstance(length, int):
            break
        index += 2
        if index < len(values) and isinstance(values[index], dict):
            dictionaries.append(values[index])
            index += 1
        attributes = dictionaries[run_id - 1] if 1 <= run_id <= len(dictionaries) else {}
        start = _to_char_index(cursor, offsets)
        end = _to_char_index(cursor + max(length, 0), offsets)
        runs.append(AttributeRun(offset=start, length=max(0, end - start), attributes=attributes))
        cursor += max(length, 0)
    return ArchivedAttributedString(text=text, runs=runs)


def _materialize(class_name: str, values: List[Any]) -> Any:
    if class_name in STRING_CLASSES:
        raw = next((value for value in values if isinstance(value, bytes)), b"")
        return raw.decode("utf-8", errors="replace")
    if class_name in ATTRIBUTED_CLASSES:
        return _attributed_string(values)
    if class_name in DICTIONARY_CLASSES:
        entries = values[1:] if values and isinstance(values[0], int) else values
        result: Dict[str, Any] = {}
        for key, value in zip(entries[0::2], entries[1::2]):
            if isinstance(key, str):
                result[key] = value
        return result
    if class_name in ARRAY_CLASSES:
        return list(values[1:] if values and isinstance(values[0], int) else values)
    if class_name == "NSURL":
        strings = [value for value in values if isinstance(value, str)]
        return strings[-1] if strings else ArchivedObject(class_name, values)
    if class_name in DATA_CLASSES:
        return next((value for value in values if isinstance(value, bytes)), b"")
    if class_name in NUMBER_CLASSES:
        numbers = [value for value in values if isinstance(value, (int, float)) and not isinstance(value, bool)]
        return numbers[-1] if numbers else ArchivedObject(class_name, values)
    return ArchivedObject(class_name, values)


def unarchive(data: bytes) -> Any:
    return TypedStreamReader(data).read_root()


__all__ = [
    "ArchivedAttributedString",
    "ArchivedClass",
    "ArchivedObject",
    "AttributeRun",
    "TypedStreamError",
    "TypedStreamReader",
    "looks_like_typedstream",
    "split_encoding",
    "unarchive",
]
