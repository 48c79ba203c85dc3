#!/usr/bin/env python3
"""
Lenient JBeam Document Parser

The intermediate bundle carries its engine parameters as a JBeam document:
JSON with comments, optional commas and trailing commas. Strict JSON is tried
first; only documents that fail it go through the comma-repair pipeline.

Comma-repair patterns follow the JBeamToJson approach: complete quoted strings
are matched as atomic units so string contents are never rewritten.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from crane_errors import ParseError

logger = logging.getLogger(__name__)

_URL_SCHEMES = ("https://", "http://", "file://", "local://")

# (pattern, replacement) in application order
_COMMA_FIXES = [
    (r'(\]|})\s*?(\{|\[)', r'\1,\2'),                      # ] or } then { or [
    (r'(}|])\s*"', r'\1,"'),                               # ] or } then "
    (r'"{', r'", {'),                                       # string then {
    (r'"\s+("|\{)', r'",\1'),                               # string, whitespace, " or {
    (r'(false|true)\s+"', r'\1,"'),                         # literal then "
    (r',\s*,', r','),                                       # collapse doubled commas
    (r'("[a-zA-Z0-9_]*")\s(-?[0-9\[])', r'\1, \2'),         # string then number or [
    (r'(\d\.*\d*)\s*{', r'\1, {'),                          # number then {
    (r'([0-9])\n', r'\1,\n'),                               # number at end of line
    (r'(-?[0-9])\s+(-?[0-9])', r'\1,\2'),                   # two numbers
    (r'([0-9])\s*("[a-zA-Z0-9_]*")', r'\1, \2'),            # number then string
    (r'("[a-zA-Z0-9_$.]*")\s*("[a-zA-Z0-9_$.]*")', r'\1, \2'),  # two strings
    (r':(false|true)("[a-zA-Z_]+")', r':\1, \2'),           # literal then key
    (r'([,\[:\s])\+(\d)', r'\1\2'),                         # explicit + sign
]


class JBeamParser:
    """Static helpers turning JBeam text into plain Python data."""

    @staticmethod
    def strip_comments(content: str) -> str:
        """Drop // and /* */ comments, leaving URL schemes intact."""
        for i, scheme in enumerate(_URL_SCHEMES):
            content = content.replace(scheme, f"<<<SCHEME_{i}>>>")
        content = re.sub(r'(?<!/)/\*[\s\S]*?\*/', '', content, flags=re.DOTALL)
        content = re.sub(r'//.*$', '', content, flags=re.MULTILINE)
        for i, scheme in enumerate(_URL_SCHEMES):
            content = content.replace(f"<<<SCHEME_{i}>>>", scheme)
        return content

    @staticmethod
    def add_missing_commas(content: str) -> str:
        for pattern, replacement in _COMMA_FIXES:
            content = re.sub(pattern, replacement, content)
        return content

    @staticmethod
    def remove_trailing_commas(content: str) -> str:
        for bad, good in ((",,", ","), ("[,", "["), ("{,", "{"), (",:", ":")):
            content = content.replace(bad, good)
        content = re.sub(r',\s*?(]|})', r'\1', content)
        stripped = content.rstrip()
        if stripped.endswith(","):
            content = stripped[:-1]
        return content

    @classmethod
    def parse(cls, data: bytes, artifact: str = "jbeam") -> Dict[str, Any]:
        """Parse document bytes into a dict. Raises ParseError."""
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(artifact, f"not UTF-8: {e}") from None

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            cleaned = cls.strip_comments(text)
            cleaned = cls.add_missing_commas(cleaned)
            cleaned = cls.remove_trailing_commas(cleaned)
            try:
                parsed = json.loads(cleaned)
            except json.JSONDecodeError as e:
                raise ParseError(artifact, e.msg, e.pos) from None
            logger.debug(f"{artifact}: parsed after JBeam clean-up")

        if not isinstance(parsed, dict):
            raise ParseError(artifact, "top level is not an object")
        return parsed


# =============================================================================
# Torque table helpers
# =============================================================================

def is_header_row(row: List[Any]) -> bool:
    """A table row is a header when it holds any string."""
    return any(isinstance(v, str) for v in row)


def detect_table_format(table: List[List[Any]]) -> Optional[str]:
    """
    "camso_5col" for [throttle, rpm, torque, ...] rows, "beamng_2col" for
    [rpm, torque] rows, None when unrecognisable.
    """
    for row in table:
        if not isinstance(row, list):
            return None
        if is_header_row(row):
            continue
        if len(row) >= 5:
            return "camso_5col"
        if len(row) == 2:
            return "beamng_2col"
        return None
    return None


def extract_wot_curve(table: Optional[List[List[Any]]]) -> List[List[float]]:
    """
    Wide-open-throttle [rpm, torque] pairs from a torque table, ascending by rpm.

    Camso tables are filtered to throttle == 100; header rows are skipped.
    """
    if not table:
        return []
    fmt = detect_table_format(table)
    wot: List[List[float]] = []
    if fmt == "camso_5col":
        for row in table:
            if not is_header_row(row) and row[0] == 100:
                wot.append([float(row[1]), float(row[2])])
    elif fmt == "beamng_2col":
        for row in table:
            if not is_header_row(row):
                wot.append([float(row[0]), float(row[1])])
    return sorted(wot, key=lambda row: row[0])
