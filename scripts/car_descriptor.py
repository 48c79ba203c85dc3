#!/usr/bin/env python3
"""
Binary Car Descriptor Parser
============================

Reads the sandbox's binary ``.car`` descriptor found inside an intermediate
bundle. The file is a length-prefixed tree:

    0x01 <pad>                      blob mark + 1 padding byte
    u32 type, u32 child_count       root section "Car"
    child*:
        key   'S' u32 len utf-8     | 'N' f64          (other bytes: filler)
        value '0' | '1'                                  bool
              'N' f64                                    real
              'S' u32 len utf-8  (0x01-led payload = blob bytes)
              'T' u32 type, u32 child_count, child*      nested section

A section is complete once it has read child_count children. All integers
are little-endian.

The parser walks the buffer with an explicit cursor object; nothing is kept
in module state. Nodes are addressable by path, e.g. ``"Car/Variant/UID"``.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from crane_errors import DescriptorParseError

logger = logging.getLogger(__name__)

BLOB_MARK = 0x01
KEY_TEXT = ord("S")
KEY_NUMBER = ord("N")
VALUE_FALSE = ord("0")
VALUE_TRUE = ord("1")
VALUE_NUMBER = ord("N")
VALUE_TEXT = ord("S")
VALUE_SECTION = ord("T")

# Descriptor layout moved some engine attributes from Car/Family onto
# Car/Variant at this version.
LEGACY_LAYOUT_BOUNDARY = 2200000000
SANDBOX_4_2_VERSION = 2111220000
ELLISBURY_VERSION = 2312150000

_U32 = struct.Struct("<I")
_F64 = struct.Struct("<d")

AttributeValue = Union[bool, float, str, bytes]


class DescriptorLayout(Enum):
    LEGACY = "legacy"
    CURRENT = "current"


def descriptor_layout(version: Optional[float]) -> DescriptorLayout:
    """Layout for a descriptor version. Unknown versions are treated as current."""
    if version is not None and version < LEGACY_LAYOUT_BOUNDARY:
        return DescriptorLayout.LEGACY
    return DescriptorLayout.CURRENT


def sandbox_release(version: float) -> str:
    """Human label for the sandbox release that wrote ``version``."""
    if version < SANDBOX_4_2_VERSION:
        return "pre-4.2"
    if version >= ELLISBURY_VERSION:
        return "ellisbury"
    return "4.2"


# =============================================================================
# Tree
# =============================================================================

@dataclass
class DescriptorSection:
    """A named section: typed attributes plus nested sections."""
    name: str
    section_type: int = 0
    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    sections: Dict[str, "DescriptorSection"] = field(default_factory=dict)

    def find(self, path: str) -> Optional[Union[AttributeValue, "DescriptorSection"]]:
        """
        Resolve a path relative to this section's parent, so the root
        section "Car" answers "Car/Variant/UID".
        """
        parts = [p for p in path.split("/") if p]
        if not parts or parts[0] != self.name:
            return None
        return self._walk(parts[1:])

    def _walk(self, parts: List[str]) -> Optional[Union[AttributeValue, "DescriptorSection"]]:
        if not parts:
            return self
        head, rest = parts[0], parts[1:]
        if head in self.sections:
            return self.sections[head]._walk(rest)
        if not rest and head in self.attributes:
            return self.attributes[head]
        return None

    def find_section(self, path: str) -> Optional["DescriptorSection"]:
        node = self.find(path)
        return node if isinstance(node, DescriptorSection) else None

    def find_attribute(self, path: str) -> Optional[AttributeValue]:
        node = self.find(path)
        return None if isinstance(node, DescriptorSection) else node


# =============================================================================
# Cursor
# =============================================================================

class _Cursor:
    """Bounds-checked reader over the descriptor buffer."""

    def __init__(self, data: bytes, artifact: str):
        self.data = data
        self.pos = 0
        self.artifact = artifact

    @property
    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def error(self, reason: str) -> DescriptorParseError:
        return DescriptorParseError(self.artifact, reason, self.pos)

    def peek_u8(self) -> int:
        if self.at_end:
            raise self.error("unexpected end of data")
        return self.data[self.pos]

    def read(self, count: int, what: str) -> bytes:
        if self.pos + count > len(self.data):
            raise self.error(f"truncated while reading {what}")
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def read_u8(self, what: str = "byte") -> int:
        return self.read(1, what)[0]

    def read_u32(self, what: str = "u32") -> int:
        return _U32.unpack(self.read(4, what))[0]

    def read_f64(self, what: str = "f64") -> float:
        return _F64.unpack(self.read(8, what))[0]


# =============================================================================
# Parser
# =============================================================================

def _number_key(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def _read_key(cursor: _Cursor) -> str:
    """Skip filler bytes until a key marker, then read the key."""
    while True:
        marker = cursor.peek_u8()
        if marker == KEY_TEXT:
            cursor.pos += 1
            length = cursor.read_u32("key length")
            raw = cursor.read(length, "key")
            if raw[:1] == bytes([BLOB_MARK]):
                continue
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError:
                raise cursor.error("key is not UTF-8") from None
        if marker == KEY_NUMBER:
            cursor.pos += 1
            return _number_key(cursor.read_f64("numeric key"))
        cursor.pos += 1


def _read_children(cursor: _Cursor, section: DescriptorSection, count: int) -> None:
    for _ in range(count):
        key = _read_key(cursor)
        marker = cursor.read_u8("value type")
        if marker == VALUE_FALSE:
            section.attributes[key] = False
        elif marker == VALUE_TRUE:
            section.attributes[key] = True
        elif marker == VALUE_NUMBER:
            section.attributes[key] = cursor.read_f64(f"{key} value")
        elif marker == VALUE_TEXT:
            length = cursor.read_u32(f"{key} length")
            if length and cursor.peek_u8() == BLOB_MARK:
                section.attributes[key] = cursor.read(length, f"{key} blob")
            else:
                raw = cursor.read(length, f"{key} text")
                try:
                    section.attributes[key] = raw.decode("utf-8")
                except UnicodeDecodeError:
                    raise cursor.error(f"{key} is not UTF-8") from None
        elif marker == VALUE_SECTION:
            child = DescriptorSection(key, cursor.read_u32(f"{key} section type"))
            child_count = cursor.read_u32(f"{key} child count")
            _read_children(cursor, child, child_count)
            section.sections[key] = child
        else:
            cursor.pos -= 1
            raise cursor.error(f"unknown value type 0x{marker:02x} for {key}")


def parse_descriptor(data: bytes, artifact: str = "car descriptor") -> DescriptorSection:
    """Parse descriptor bytes and return the root "Car" section."""
    cursor = _Cursor(data, artifact)
    if cursor.read_u8("blob mark") != BLOB_MARK:
        raise DescriptorParseError(artifact, "missing opening blob mark", 0)
    cursor.read(1, "header padding")

    root = DescriptorSection("Car", cursor.read_u32("root section type"))
    _read_children(cursor, root, cursor.read_u32("root child count"))
    if not cursor.at_end:
        logger.debug(f"{artifact}: ignoring {len(data) - cursor.pos} trailing bytes")
    return root


# =============================================================================
# Version-aware access
# =============================================================================

def descriptor_version(root: DescriptorSection) -> Optional[float]:
    """Version stamp: Car/Version, falling back to Car/Variant/GameVersion."""
    for path in ("Car/Version", "Car/Variant/GameVersion"):
        value = root.find_attribute(path)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def engine_attribute(root: DescriptorSection, name: str) -> Optional[AttributeValue]:
    """
    Read an engine-family attribute where the descriptor's layout keeps it.

    Legacy descriptors hold family-level engine attributes on Car/Family;
    current ones moved several of them onto Car/Variant.
    """
    layout = descriptor_layout(descriptor_version(root))
    if layout is DescriptorLayout.LEGACY:
        order = ("Car/Family", "Car/Variant")
    else:
        order = ("Car/Variant", "Car/Family")
    for section in order:
        value = root.find_attribute(f"{section}/{name}")
        if value is not None:
            return value
    return None
