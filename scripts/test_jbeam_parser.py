#!/usr/bin/env python3
"""
Tests for jbeam_parser.py: lenient JBeam parsing and torque table helpers.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from crane_errors import ParseError
from jbeam_parser import JBeamParser, detect_table_format, extract_wot_curve, is_header_row


def test_strict_json_passes_through():
    assert JBeamParser.parse(b'{"a": {"Limiter": 6800}}') == {"a": {"Limiter": 6800}}


def test_comments_stripped_but_urls_kept():
    text = '{\n  // engine\n  "url": "https://example.com/x", /* block */ "n": 1\n}'
    assert JBeamParser.strip_comments(text).count("https://example.com/x") == 1
    assert JBeamParser.parse(text.encode()) == {"url": "https://example.com/x", "n": 1}


def test_missing_and_trailing_commas():
    text = b'{\n"ABC-1": {\n"Limiter": 6800\n"Torque": [\n[800 150]\n[5000 340],\n],\n},\n}'
    parsed = JBeamParser.parse(text)
    assert parsed["ABC-1"]["Limiter"] == 6800
    assert parsed["ABC-1"]["Torque"] == [[800, 150], [5000, 340]]


def test_bom_accepted():
    assert JBeamParser.parse(b'\xef\xbb\xbf{"x": true}') == {"x": True}


def test_unparseable_raises():
    try:
        JBeamParser.parse(b'{"a": [1, 2', artifact="engine.jbeam")
    except ParseError as e:
        assert e.artifact == "engine.jbeam"
    else:
        raise AssertionError("expected ParseError")


def test_top_level_must_be_object():
    try:
        JBeamParser.parse(b"[1, 2]")
    except ParseError as e:
        assert "object" in e.reason
    else:
        raise AssertionError("expected ParseError")


# =============================================================================
# Torque Tables
# =============================================================================

def test_header_row_detection():
    assert is_header_row(["rpm", "torque"])
    assert not is_header_row([800, 150])


def test_detect_formats():
    assert detect_table_format([["rpm", "torque"], [800, 150]]) == "beamng_2col"
    assert detect_table_format([[100, 800, 150, 0, 0]]) == "camso_5col"
    assert detect_table_format([[1, 2, 3]]) is None
    assert detect_table_format([]) is None


def test_extract_wot_from_camso_table():
    table = [
        ["throttle", "rpm", "torque", "FMEP", "pumpingLoss"],
        [0, 1000, 10, 0, 0],
        [100, 4000, 220, 0, 0],
        [100, 1000, 80, 0, 0],
    ]
    assert extract_wot_curve(table) == [[1000.0, 80.0], [4000.0, 220.0]]


def test_extract_wot_sorted_two_column():
    assert extract_wot_curve([["rpm", "torque"], [5000, 340], [800, 150]]) == [[800.0, 150.0], [5000.0, 340.0]]
    assert extract_wot_curve(None) == []
