#!/usr/bin/env python3
"""
Packed Data Archive Codec (data.acd)
====================================

The target sim can ship a car's data folder as a single obfuscated archive,
``<car>/data.acd``, instead of a plain ``data/`` directory. The archive is a
flat list of entries:

    [optional DLC header]  A9 FB FF FF <4-byte pack id>
    entry*                 u32 name_len | name | u32 content_len |
                           content_len * 4 bytes (one encoded byte + 3 zero bytes)

Each content byte is shifted by the character codes of a key derived from the
car folder name, cycling over the key string.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Optional

from crane_errors import ParseError

logger = logging.getLogger(__name__)

DLC_BYTE_MARKER = bytes([0xA9, 0xFB, 0xFF, 0xFF])

DLC_PACKS = {
    bytes([0x91, 0x46, 0x0A, 0x00]): "DreamPack1",
    bytes([0xFD, 0xEA, 0x0D, 0x00]): "DreamPack2",
    bytes([0xB1, 0xEB, 0x0B, 0x00]): "DreamPack3",
    bytes([0x87, 0xB7, 0x03, 0x00]): "JapaneseCarPack",
    bytes([0x35, 0x57, 0x0B, 0x00]): "RedPack",
    bytes([0x91, 0xC7, 0x04, 0x00]): "TRIPL3Pack",
    bytes([0xA1, 0x09, 0x0E, 0x00]): "PorschePack1",
    bytes([0x3F, 0xC0, 0x0C, 0x00]): "PorschePack2",
    bytes([0xF2, 0x05, 0x09, 0x00]): "PorschePack3",
    bytes([0xBF, 0xE4, 0x07, 0x00]): "ReadytoRace",
    bytes([0xDA, 0xEB, 0x0D, 0x00]): "FerrariPack",
}

_U32 = struct.Struct("<I")


# =============================================================================
# Key Generation
# =============================================================================

def _trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def generate_acd_key(folder_name: str) -> str:
    """
    Derive the archive key from the car folder name.

    Eight integer components, each reduced to its low byte and joined with
    '-'. Division truncates toward zero.
    """
    if len(folder_name) < 4:
        raise ValueError(f"Folder name {folder_name!r} is too short to derive an archive key")

    codes = [ord(c) for c in folder_name]
    n = len(codes)
    components = []

    key_1 = sum(codes)
    components.append(key_1)

    key_2 = 0
    for idx in range(0, n - 1, 2):
        key_2 *= codes[idx]
        key_2 -= codes[idx + 1]
    components.append(key_2)

    key_3 = 0
    for idx in range(1, n - 3, 3):
        key_3 *= codes[idx]
        key_3 = _trunc_div(key_3, codes[idx + 1] + 0x1b)
        key_3 += -0x1b - codes[idx - 1]
    components.append(key_3)

    key_4 = 0x1683 - sum(codes[1:])
    components.append(key_4)

    key_5 = 0x42
    for idx in range(1, n - 4, 4):
        tmp = (codes[idx] + 0xf) * key_5
        key_5 = (codes[idx - 1] + 0xf) * tmp + 0x16
    components.append(key_5)

    key_6 = 0x65
    for code in codes[0:n - 2:2]:
        key_6 -= code
    components.append(key_6)

    key_7 = 0xab
    for code in codes[0:n - 2:2]:
        key_7 %= code
    components.append(key_7)

    key_8 = 0xab
    for idx in range(0, n - 1):
        key_8 = _trunc_div(key_8, codes[idx])
        key_8 += codes[idx + 1]
    components.append(key_8)

    return "-".join(str(value & 0xff) for value in components)


# =============================================================================
# Archive Contents
# =============================================================================

@dataclass
class AcdContents:
    """Decoded archive: ordered file map plus the optional DLC header."""
    files: Dict[str, bytes] = field(default_factory=dict)
    dlc_header: Optional[bytes] = None

    @property
    def dlc_pack(self) -> Optional[str]:
        if self.dlc_header is None:
            return None
        return DLC_PACKS.get(self.dlc_header[4:8], "Unknown")


def unpack_acd(data: bytes, key: str, artifact: str = "data.acd") -> AcdContents:
    """Decode archive bytes with the given key."""
    contents = AcdContents()
    pos = 0

    def take(count: int, what: str) -> bytes:
        nonlocal pos
        if pos + count > len(data):
            raise ParseError(artifact, f"reached end of data while reading {what}", pos)
        chunk = data[pos:pos + count]
        pos += count
        return chunk

    if data[:4] == DLC_BYTE_MARKER:
        contents.dlc_header = take(8, "DLC header")
        logger.debug(f"{artifact}: DLC archive ({contents.dlc_pack})")

    key_codes = [ord(c) & 0xff for c in key]
    while pos < len(data):
        (name_len,) = _U32.unpack(take(4, "filename length"))
        try:
            name = take(name_len, "filename").decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(artifact, f"filename is not UTF-8: {e}", pos) from None
        (content_len,) = _U32.unpack(take(4, f"{name} content length"))
        packed = take(content_len * 4, f"{name} content")
        contents.files[name] = bytes(
            (packed[i * 4] - key_codes[i % len(key_codes)]) & 0xff
            for i in range(content_len)
        )
        logger.debug(f"{artifact}: {name} - {content_len} bytes")
    return contents


def pack_acd(contents: AcdContents, key: str) -> bytes:
    """Encode an archive. Inverse of unpack_acd for the same key."""
    key_codes = [ord(c) & 0xff for c in key]
    out = bytearray()
    if contents.dlc_header is not None:
        out += contents.dlc_header
    for name, payload in contents.files.items():
        encoded_name = name.encode("utf-8")
        out += _U32.pack(len(encoded_name))
        out += encoded_name
        out += _U32.pack(len(payload))
        for i, byte in enumerate(payload):
            out += bytes(((byte + key_codes[i % len(key_codes)]) & 0xff, 0, 0, 0))
    return bytes(out)
