#!/usr/bin/env python3
"""
Tests for ini_store.py: comment-preserving sectioned documents.

Covers:
  - Byte-exact round trip of untouched documents (LF, CRLF, BOM, no final newline)
  - Typed reads and their failure kinds
  - In-place edits keeping indentation, spacing and trailing comments
  - Parse failures with line numbers
"""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from crane_errors import FieldTypeError, IniParseError, MissingField, MissingSection
from ini_store import TOP_LEVEL, IniDocument, coerce_value, format_number


SAMPLE = (
    "; engine data\n"
    "[HEADER]\n"
    "VERSION=1\n"
    "POWER_CURVE=power.lut   ; external\n"
    "\n"
    "[ENGINE_DATA]\n"
    "  INERTIA = 0.120 ; flywheel\n"
    "LIMITER=7000\n"
    "MINIMUM=850\n"
)


def make_doc(text: str = SAMPLE, artifact: str = "engine.ini") -> IniDocument:
    return IniDocument.load(text.encode("utf-8"), artifact=artifact)


# =============================================================================
# Round Trip
# =============================================================================

def test_round_trip_unchanged():
    assert make_doc().serialize() == SAMPLE.encode("utf-8")


def test_round_trip_crlf():
    data = SAMPLE.replace("\n", "\r\n").encode("utf-8")
    assert IniDocument.load(data).serialize() == data


def test_round_trip_bom_and_no_final_newline():
    data = b"\xef\xbb\xbf[A]\nX=1"
    assert IniDocument.load(data).serialize() == data


def test_round_trip_latin1():
    data = "[INFO]\nSCREEN_NAME=Citro\xebn\n".encode("latin-1")
    doc = IniDocument.load(data)
    assert doc.get("INFO", "SCREEN_NAME") == "Citro\xebn"
    assert doc.serialize() == data


def test_top_level_keys():
    doc = make_doc("ROOT=1\n[A]\nX=2\n")
    assert doc.get(TOP_LEVEL, "ROOT") == "1"
    assert doc.sections() == ["A"]


# =============================================================================
# Typed Reads
# =============================================================================

class TestTypedReads(unittest.TestCase):

    def setUp(self):
        self.doc = make_doc()

    def test_int_and_float(self):
        self.assertEqual(self.doc.get_required("ENGINE_DATA", "LIMITER", int), 7000)
        self.assertAlmostEqual(self.doc.get_required("ENGINE_DATA", "INERTIA", float), 0.12)

    def test_value_stops_at_comment(self):
        self.assertEqual(self.doc.get("HEADER", "POWER_CURVE"), "power.lut")

    def test_missing_section(self):
        with self.assertRaises(MissingSection) as ctx:
            self.doc.get_required("TURBO_0", "MAX_BOOST", float)
        self.assertEqual(ctx.exception.section, "TURBO_0")

    def test_missing_field(self):
        with self.assertRaises(MissingField) as ctx:
            self.doc.get_required("ENGINE_DATA", "LIMITER_HZ", int)
        self.assertEqual(ctx.exception.key, "LIMITER_HZ")

    def test_bad_type(self):
        with self.assertRaises(FieldTypeError):
            self.doc.get_required("HEADER", "POWER_CURVE", int)

    def test_optional_absent(self):
        self.assertIsNone(self.doc.get_optional("ENGINE_DATA", "LIMITER_HZ", int))
        self.assertIsNone(self.doc.get_optional("NOPE", "X", int))


def test_coerce_bool_and_list():
    assert coerce_value("1", bool) is True
    assert coerce_value("false", bool) is False
    assert coerce_value("1.0, 2.5,3", list) == [1.0, 2.5, 3.0]


def test_coerce_integral_float_as_int():
    assert coerce_value("7000.0", int) == 7000


def test_coerce_fractional_float_as_int_fails():
    try:
        coerce_value("7000.5", int)
    except FieldTypeError as e:
        assert e.raw == "7000.5"
    else:
        raise AssertionError("expected FieldTypeError")


# =============================================================================
# Edits
# =============================================================================

def test_set_keeps_spacing_and_comment():
    doc = make_doc()
    doc.set("ENGINE_DATA", "INERTIA", 0.125, precision=3)
    assert "  INERTIA = 0.125 ; flywheel" in doc.serialize().decode()


def test_set_keeps_previous_precision():
    doc = make_doc()
    doc.set("ENGINE_DATA", "INERTIA", 0.1)
    assert doc.get("ENGINE_DATA", "INERTIA") == "0.100"


def test_set_only_touches_one_line():
    doc = make_doc()
    doc.set("ENGINE_DATA", "LIMITER", 7200)
    before = SAMPLE.splitlines()
    after = doc.serialize().decode().splitlines()
    changed = [i for i, (a, b) in enumerate(zip(before, after)) if a != b]
    assert len(before) == len(after)
    assert changed == [7]
    assert after[7] == "LIMITER=7200"


def test_set_new_key_after_last_property():
    doc = make_doc()
    doc.set("HEADER", "TORQUE_CURVE", "(1000=1|2000=2)")
    lines = doc.serialize().decode().splitlines()
    assert lines[4] == "TORQUE_CURVE=(1000=1|2000=2)"
    assert lines[5] == ""


def test_set_new_section_appended():
    doc = make_doc()
    doc.set("THERMAL", "COOLANT_CAPACITY", 6.5, precision=2)
    text = doc.serialize().decode()
    assert text.endswith("MINIMUM=850\n\n[THERMAL]\nCOOLANT_CAPACITY=6.50\n")


def test_remove_key_and_section():
    doc = make_doc()
    assert doc.remove("ENGINE_DATA", "MINIMUM")
    assert not doc.remove("ENGINE_DATA", "MINIMUM")
    assert doc.remove_section("HEADER")
    assert not doc.has_section("HEADER")
    assert "POWER_CURVE" not in doc.serialize().decode()


def test_format_number():
    assert format_number(True) == "1"
    assert format_number(275) == "275"
    assert format_number(3.0) == "3"
    assert format_number(92.15349, 3) == "92.153"
    assert format_number(0.5, None, "0.25") == "0.50"
    assert format_number(-0.0001, 2) == "0.00"


# =============================================================================
# Parse Failures
# =============================================================================

class TestParseFailures(unittest.TestCase):

    def assertParseError(self, text: str, line: int):
        with self.assertRaises(IniParseError) as ctx:
            make_doc(text)
        self.assertEqual(ctx.exception.offset, line)

    def test_unclosed_header(self):
        self.assertParseError("[A]\nX=1\n[B\n", 3)

    def test_line_without_equals(self):
        self.assertParseError("[A]\nX=1\njunk\n", 3)

    def test_line_starting_with_equals(self):
        self.assertParseError("[A]\n=1\n", 2)

    def test_duplicate_section(self):
        self.assertParseError("[A]\nX=1\n[A]\n", 3)

    def test_duplicate_key(self):
        self.assertParseError("[A]\nX=1\nX=2\n", 3)


if __name__ == '__main__':
    unittest.main(verbosity=2)
