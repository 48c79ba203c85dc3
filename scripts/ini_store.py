#!/usr/bin/env python3
"""
Sectioned Key/Value Document Store
==================================

In-memory model of the target sim's INI-style data files (engine.ini,
drivetrain.ini, car.ini, electronics.ini) and of the direct-export donor
format, which shares the same syntax.

The store keeps every raw line it loaded. Untouched properties serialise from
their original text, so ``serialize(load(b)) == b`` for any well-formed input
(line endings normalised to the dominant style of the file). Modified
properties keep their indentation, the spacing around ``=`` and any trailing
comment.

Syntax:
    [SECTION]          ; opens a section (names are case-sensitive)
    KEY=VALUE          ; property inside the current section
    ; comment          ; ';' or '#' start a comment
    KEY=VALUE ; note   ; the value ends at the first comment character

Keys that appear before the first section belong to the top-level
pseudo-section, addressed by the empty string.

Usage:
    doc = IniDocument.load(data, artifact="engine.ini")
    limiter = doc.get_required("ENGINE_DATA", "LIMITER", int)
    doc.set("ENGINE_DATA", "INERTIA", 0.125, precision=3)
    data = doc.serialize()
"""

import codecs
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from crane_errors import FieldTypeError, IniParseError, MissingField, MissingSection

logger = logging.getLogger(__name__)

COMMENT_CHARS = (";", "#")
TOP_LEVEL = ""

_LINE_SPLIT = re.compile(r"\r\n|\n")
_DECIMAL_RAW = re.compile(r"^[-+]?\d*\.(\d+)$")


# =============================================================================
# Line Model
# =============================================================================

@dataclass
class _Property:
    """A single KEY=VALUE line, split so it can be re-rendered in place."""
    key: str
    value: str
    raw: str
    indent: str = ""
    key_text: str = ""
    value_prefix: str = ""
    suffix: str = ""

    @classmethod
    def parse(cls, line: str) -> "_Property":
        eq = line.index("=")
        left, right = line[:eq], line[eq + 1:]
        indent = left[:len(left) - len(left.lstrip())]
        key_text = left[len(indent):]

        comment_at = _first_comment(right)
        region = right if comment_at is None else right[:comment_at]
        value = region.strip()
        value_prefix = region[:len(region) - len(region.lstrip())]
        suffix = right[len(value_prefix) + len(value):]
        return cls(
            key=key_text.strip(),
            value=value,
            raw=line,
            indent=indent,
            key_text=key_text,
            value_prefix=value_prefix,
            suffix=suffix,
        )

    @classmethod
    def new(cls, key: str, value: str) -> "_Property":
        prop = cls(key=key, value=value, raw="", key_text=key)
        prop.raw = prop.render()
        return prop

    def render(self) -> str:
        return f"{self.indent}{self.key_text}={self.value_prefix}{self.value}{self.suffix}"

    def replace_value(self, value: str) -> None:
        self.value = value
        self.raw = self.render()


@dataclass
class _Section:
    """A section header plus the lines (properties, comments, blanks) under it."""
    name: str
    header: Optional[str]
    entries: List[Union[str, _Property]]
    props: Dict[str, _Property]

    def last_property_index(self) -> int:
        for i in range(len(self.entries) - 1, -1, -1):
            if isinstance(self.entries[i], _Property):
                return i
        return -1


def _first_comment(text: str) -> Optional[int]:
    positions = [text.find(c) for c in COMMENT_CHARS if c in text]
    return min(positions) if positions else None


# =============================================================================
# Value Rendering & Coercion
# =============================================================================

def format_number(value: Union[int, float], precision: Optional[int] = None,
                  previous_raw: Optional[str] = None) -> str:
    """
    Render a number for an INI value.

    Explicit precision wins; otherwise a real keeps the fractional digit
    count of the value it replaces. Integral reals with no remembered
    precision render without a point.
    """
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)

    if precision is None and previous_raw is not None:
        match = _DECIMAL_RAW.match(previous_raw.strip())
        if match:
            precision = len(match.group(1))

    if precision is not None:
        rendered = f"{value:.{precision}f}"
        if rendered.startswith("-") and float(rendered) == 0:
            rendered = rendered[1:]
        return rendered
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def render_value(value: Any, precision: Optional[int] = None,
                 previous_raw: Optional[str] = None) -> str:
    """Render any supported Python value as raw INI text."""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ",".join(render_value(v, precision) for v in value)
    if isinstance(value, (bool, int, float)):
        return format_number(value, precision, previous_raw)
    raise TypeError(f"Unsupported INI value type: {type(value).__name__}")


def coerce_value(raw: str, kind: type) -> Any:
    """Coerce a raw value string into ``kind`` (int, float, str, bool or list)."""
    try:
        if kind is str:
            return raw
        if kind is bool:
            lowered = raw.strip().lower()
            if lowered in ("1", "true"):
                return True
            if lowered in ("0", "false"):
                return False
            raise ValueError(raw)
        if kind is int:
            try:
                return int(raw)
            except ValueError:
                as_float = float(raw)
                if not as_float.is_integer():
                    raise
                return int(as_float)
        if kind is float:
            return float(raw)
        if kind is list:
            if not raw.strip():
                return []
            return [float(part) for part in raw.split(",")]
    except ValueError:
        raise FieldTypeError(kind.__name__, raw) from None
    raise FieldTypeError(getattr(kind, "__name__", str(kind)), raw)


# =============================================================================
# Document
# =============================================================================

class IniDocument:
    """Ordered, comment-preserving INI document."""

    def __init__(self, artifact: str = "<ini>"):
        self.artifact = artifact
        self._sections: Dict[str, _Section] = {
            TOP_LEVEL: _Section(TOP_LEVEL, None, [], {})
        }
        self._newline = "\n"
        self._final_newline = True
        self._bom = False
        self._encoding = "utf-8"

    # ── Loading ──────────────────────────────────────────────────────────

    @classmethod
    def load(cls, data: bytes, artifact: str = "<ini>") -> "IniDocument":
        """Parse bytes into a document. Raises IniParseError with a line number."""
        doc = cls(artifact)
        if data.startswith(codecs.BOM_UTF8):
            doc._bom = True
            data = data[len(codecs.BOM_UTF8):]
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
            doc._encoding = "latin-1"
            logger.debug(f"{artifact}: not UTF-8, decoded as latin-1")

        if "\r\n" in text:
            doc._newline = "\r\n"
        lines = _LINE_SPLIT.split(text)
        if lines and lines[-1] == "":
            lines.pop()
            doc._final_newline = True
        else:
            doc._final_newline = False

        current = doc._sections[TOP_LEVEL]
        for lineno, line in enumerate(lines, start=1):
            stripped = line.strip()
            if not stripped or stripped[0] in COMMENT_CHARS:
                current.entries.append(line)
                continue

            if stripped[0] == "[":
                close = stripped.find("]")
                if close < 0:
                    raise IniParseError(artifact, "unclosed section header", lineno)
                trailing = stripped[close + 1:].strip()
                if trailing and trailing[0] not in COMMENT_CHARS:
                    raise IniParseError(artifact, f"unexpected text after section header: {trailing!r}", lineno)
                name = stripped[1:close].strip()
                if name in doc._sections:
                    raise IniParseError(artifact, f"duplicate section [{name}]", lineno)
                current = _Section(name, line, [], {})
                doc._sections[name] = current
                continue

            eq = line.find("=")
            comment_at = _first_comment(line)
            if eq < 0 or (comment_at is not None and comment_at < eq):
                raise IniParseError(artifact, f"expected KEY=VALUE, got {stripped!r}", lineno)
            prop = _Property.parse(line)
            if not prop.key:
                raise IniParseError(artifact, "property without a key", lineno)
            if prop.key in current.props:
                raise IniParseError(artifact, f"duplicate key {prop.key} in [{current.name}]", lineno)
            current.entries.append(prop)
            current.props[prop.key] = prop

        logger.debug(f"Loaded {artifact}: {len(doc._sections) - 1} sections")
        return doc

    # ── Queries ──────────────────────────────────────────────────────────

    def sections(self) -> List[str]:
        """Section names in document order (excluding the top-level pseudo-section)."""
        return [name for name in self._sections if name != TOP_LEVEL]

    def has_section(self, section: str) -> bool:
        return section in self._sections

    def keys(self, section: str) -> List[str]:
        sec = self._sections.get(section)
        if sec is None:
            raise MissingSection(self.artifact, section)
        return list(sec.props)

    def get(self, section: str, key: str) -> Optional[str]:
        """Raw value string, or None when the section or key is absent."""
        sec = self._sections.get(section)
        if sec is None:
            return None
        prop = sec.props.get(key)
        return prop.value if prop is not None else None

    def get_required(self, section: str, key: str, kind: type = str) -> Any:
        sec = self._sections.get(section)
        if sec is None:
            raise MissingSection(self.artifact, section)
        prop = sec.props.get(key)
        if prop is None:
            raise MissingField(self.artifact, section, key)
        return coerce_value(prop.value, kind)

    def get_optional(self, section: str, key: str, kind: type = str) -> Any:
        raw = self.get(section, key)
        if raw is None:
            return None
        return coerce_value(raw, kind)

    # ── Mutation ─────────────────────────────────────────────────────────

    def set(self, section: str, key: str, value: Any, precision: Optional[int] = None) -> None:
        """Create or update a property, creating the section if needed."""
        sec = self._sections.get(section)
        if sec is None:
            sec = self._append_section(section)

        prop = sec.props.get(key)
        if prop is not None:
            prop.replace_value(render_value(value, precision, prop.value))
            return

        prop = _Property.new(key, render_value(value, precision))
        sec.entries.insert(sec.last_property_index() + 1, prop)
        sec.props[key] = prop

    def remove(self, section: str, key: str) -> bool:
        """Remove a property. Returns False when it was not present."""
        sec = self._sections.get(section)
        if sec is None or key not in sec.props:
            return False
        prop = sec.props.pop(key)
        sec.entries.remove(prop)
        return True

    def remove_section(self, section: str) -> bool:
        if section == TOP_LEVEL or section not in self._sections:
            return False
        del self._sections[section]
        return True

    def _append_section(self, name: str) -> _Section:
        last = list(self._sections.values())[-1]
        has_content = any(s.header is not None or s.entries for s in self._sections.values())
        if has_content:
            tail = last.entries[-1] if last.entries else last.header
            if isinstance(tail, _Property) or (isinstance(tail, str) and tail.strip()):
                last.entries.append("")
        sec = _Section(name, f"[{name}]", [], {})
        self._sections[name] = sec
        return sec

    # ── Serialisation ────────────────────────────────────────────────────

    def lines(self) -> List[str]:
        out: List[str] = []
        for sec in self._sections.values():
            if sec.header is not None:
                out.append(sec.header)
            for entry in sec.entries:
                out.append(entry.raw if isinstance(entry, _Property) else entry)
        return out

    def serialize(self) -> bytes:
        lines = self.lines()
        text = self._newline.join(lines)
        if lines and self._final_newline:
            text += self._newline
        data = text.encode(self._encoding)
        if self._bom:
            data = codecs.BOM_UTF8 + data
        return data

    def __repr__(self) -> str:
        return f"IniDocument({self.artifact!r}, sections={self.sections()})"
