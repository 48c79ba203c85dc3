#!/usr/bin/env python3
"""
Tests for acd_archive.py: key derivation and the packed data codec.
"""

import struct
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from acd_archive import DLC_BYTE_MARKER, AcdContents, generate_acd_key, pack_acd, unpack_acd
from crane_errors import ParseError


# =============================================================================
# Key Derivation
# =============================================================================

def test_key_abarth500():
    assert generate_acd_key("abarth500") == "7-248-6-221-246-250-21-49"


def test_key_maserati_gt4():
    assert generate_acd_key("ks_maserati_gt_mc_gt4") == "16-39-7-162-182-31-30-101"


def test_key_shape():
    parts = generate_acd_key("test_car").split("-")
    assert len(parts) == 8
    assert all(0 <= int(p) <= 255 for p in parts)


def test_key_short_name_rejected():
    try:
        generate_acd_key("abc")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


# =============================================================================
# Codec
# =============================================================================

class TestAcdCodec(unittest.TestCase):

    def setUp(self):
        self.key = generate_acd_key("abarth500")
        self.contents = AcdContents(files={
            "engine.ini": b"[ENGINE_DATA]\nLIMITER=7000\n",
            "power.lut": b"1000|10\n2000|20\n",
        })

    def test_pack_layout(self):
        packed = pack_acd(self.contents, self.key)
        (name_len,) = struct.unpack_from("<I", packed, 0)
        self.assertEqual(packed[4:4 + name_len], b"engine.ini")
        (content_len,) = struct.unpack_from("<I", packed, 4 + name_len)
        self.assertEqual(content_len, len(self.contents.files["engine.ini"]))
        first = packed[8 + name_len:12 + name_len]
        expected = (ord("[") + ord(self.key[0])) & 0xff
        self.assertEqual(first, bytes((expected, 0, 0, 0)))

    def test_unpack_restores_files_in_order(self):
        unpacked = unpack_acd(pack_acd(self.contents, self.key), self.key)
        self.assertEqual(list(unpacked.files), ["engine.ini", "power.lut"])
        self.assertEqual(unpacked.files, self.contents.files)
        self.assertIsNone(unpacked.dlc_header)

    def test_dlc_header_kept(self):
        header = DLC_BYTE_MARKER + bytes([0x87, 0xB7, 0x03, 0x00])
        contents = AcdContents(files={"car.ini": b"[HEADER]\n"}, dlc_header=header)
        unpacked = unpack_acd(pack_acd(contents, self.key), self.key)
        self.assertEqual(unpacked.dlc_header, header)
        self.assertEqual(unpacked.dlc_pack, "JapaneseCarPack")

    def test_wrong_key_garbles_content(self):
        packed = pack_acd(self.contents, self.key)
        other = unpack_acd(packed, generate_acd_key("ks_maserati_gt_mc_gt4"))
        self.assertNotEqual(other.files["engine.ini"], self.contents.files["engine.ini"])

    def test_truncated_archive(self):
        packed = pack_acd(self.contents, self.key)
        with self.assertRaises(ParseError):
            unpack_acd(packed[:-3], self.key)


if __name__ == '__main__':
    unittest.main(verbosity=2)
