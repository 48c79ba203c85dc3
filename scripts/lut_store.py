#!/usr/bin/env python3
"""
Lookup Table Store
==================

Two-column lookup tables (integer x, integer or real y) used for torque and
power curves. A table lives in one of two places, recorded as a tagged source
owned by the Lut itself:

    InlineSource   HEADER key holds "(1000=80|4000=220|7000=180)"
    ExternalSource HEADER key holds a filename; the file has one "x|y" pair
                   per line (";" comments allowed, "," accepted as delimiter)

All callers go through Lut.load() and Lut.apply_to(); nobody branches on the
storage shape. Serialisation mirrors the loaded shape.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from crane_errors import DataFileNotFound, LutParseError, MissingField, MissingLut
from ini_store import IniDocument, format_number

logger = logging.getLogger(__name__)

Number = Union[int, float]
Sample = Tuple[int, Number]

_INLINE_PATTERN = re.compile(r"^\((.*)\)$")
_EXTERNAL_SPLIT = re.compile(r"\r\n|\n")


@dataclass(frozen=True)
class InlineSource:
    """Table stored in the header value itself."""
    section: str
    key: str


@dataclass(frozen=True)
class ExternalSource:
    """Table stored in a sibling file of the data folder."""
    filename: str


LutSource = Union[InlineSource, ExternalSource]


# =============================================================================
# Interpolation
# =============================================================================

def interpolate(samples: Sequence[Tuple[Number, Number]], x: float) -> float:
    """Linear interpolation over sorted samples, clamped to the end points."""
    if not samples:
        raise ValueError("cannot interpolate an empty table")
    if x <= samples[0][0]:
        return samples[0][1]
    if x >= samples[-1][0]:
        return samples[-1][1]

    for (x0, y0), (x1, y1) in zip(samples, samples[1:]):
        if x0 <= x <= x1:
            if x1 == x0:
                return y0
            t = (x - x0) / (x1 - x0)
            return y0 + t * (y1 - y0)
    return samples[-1][1]


def validate_samples(samples: Sequence[Tuple[Number, Number]], artifact: str) -> None:
    """Enforce table invariants: >= 2 points, x non-negative and strictly increasing."""
    if len(samples) < 2:
        raise LutParseError(artifact, f"table needs at least two points, got {len(samples)}")
    previous = None
    for x, _ in samples:
        if x < 0:
            raise LutParseError(artifact, f"negative x value {x}")
        if previous is not None and x <= previous:
            raise LutParseError(artifact, f"x values not strictly increasing at {x}")
        previous = x


# =============================================================================
# Token Parsing
# =============================================================================

def _parse_x(token: str, artifact: str, offset: Optional[int]) -> int:
    token = token.strip()
    try:
        return int(token)
    except ValueError:
        pass
    try:
        value = float(token)
    except ValueError:
        raise LutParseError(artifact, f"bad x value {token!r}", offset) from None
    if not value.is_integer():
        raise LutParseError(artifact, f"x value {token!r} is not an integer", offset)
    return int(value)


def _parse_y(token: str, artifact: str, offset: Optional[int]) -> Number:
    token = token.strip()
    try:
        return int(token)
    except ValueError:
        pass
    try:
        return float(token)
    except ValueError:
        raise LutParseError(artifact, f"bad y value {token!r}", offset) from None


def parse_inline(raw: str, artifact: str) -> List[Sample]:
    match = _INLINE_PATTERN.match(raw.strip())
    if not match:
        raise LutParseError(artifact, f"inline table must look like (x=y|x=y), got {raw!r}")
    samples: List[Sample] = []
    for index, pair in enumerate(match.group(1).split("|")):
        if "=" not in pair:
            raise LutParseError(artifact, f"inline pair {pair!r} has no '='", index)
        x, y = pair.split("=", 1)
        samples.append((_parse_x(x, artifact, index), _parse_y(y, artifact, index)))
    validate_samples(samples, artifact)
    return samples


def parse_external(data: bytes, artifact: str) -> Tuple[List[Sample], str, str, List[str]]:
    """
    Parse an external table file.

    Returns (samples, delimiter, newline, leading comment lines).
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    newline = "\r\n" if "\r\n" in text else "\n"

    samples: List[Sample] = []
    delimiter = "|"
    leading: List[str] = []
    for lineno, line in enumerate(_EXTERNAL_SPLIT.split(text), start=1):
        content = line.split(";", 1)[0].strip()
        if not content:
            if not samples and line.strip():
                leading.append(line)
            continue
        if "|" in content:
            delimiter = "|"
        elif "," in content:
            delimiter = ","
        else:
            raise LutParseError(artifact, f"expected 'x|y', got {content!r}", lineno)
        x, y = content.split(delimiter, 1)
        samples.append((_parse_x(x, artifact, lineno), _parse_y(y, artifact, lineno)))

    validate_samples(samples, artifact)
    return samples, delimiter, newline, leading


# =============================================================================
# Lut
# =============================================================================

class Lut:
    """A lookup table bound to the place it was loaded from."""

    def __init__(self, samples: Sequence[Sample], source: LutSource,
                 precision: Optional[int] = None, delimiter: str = "|",
                 newline: str = "\n", leading_comments: Sequence[str] = ()):
        self._samples: List[Sample] = list(samples)
        self.source = source
        self.precision = precision
        self.delimiter = delimiter
        self.newline = newline
        self.leading_comments = list(leading_comments)

    @property
    def name(self) -> str:
        if isinstance(self.source, ExternalSource):
            return self.source.filename
        return f"{self.source.section}.{self.source.key}"

    @property
    def is_inline(self) -> bool:
        return isinstance(self.source, InlineSource)

    @classmethod
    def load(cls, section: str, key: str, doc: IniDocument, gateway) -> "Lut":
        """
        Load the table referenced by ``doc[section][key]``.

        Raises MissingField when the header key is absent and MissingLut when
        it names an external file the data folder does not have.
        """
        raw = doc.get(section, key)
        if raw is None:
            raise MissingField(doc.artifact, section, key)

        if raw.strip().startswith("("):
            samples = parse_inline(raw, f"{doc.artifact}:{section}.{key}")
            logger.debug(f"Loaded inline LUT {section}.{key} ({len(samples)} points)")
            return cls(samples, InlineSource(section, key))

        filename = raw.strip()
        try:
            data = gateway.read(filename)
        except DataFileNotFound:
            raise MissingLut(filename) from None
        samples, delimiter, newline, leading = parse_external(data, filename)
        logger.debug(f"Loaded external LUT {filename} ({len(samples)} points)")
        return cls(samples, ExternalSource(filename), delimiter=delimiter,
                   newline=newline, leading_comments=leading)

    def samples(self) -> List[Sample]:
        return list(self._samples)

    def xs(self) -> List[int]:
        return [x for x, _ in self._samples]

    def ys(self) -> List[Number]:
        return [y for _, y in self._samples]

    def update(self, samples: Sequence[Sample], precision: Optional[int] = None) -> List[Sample]:
        """Replace the samples in place and return the previous ones."""
        new = [(int(x), y) for x, y in samples]
        validate_samples(new, self.name)
        old = self._samples
        self._samples = new
        if precision is not None:
            self.precision = precision
        return old

    def resample(self, xs: Sequence[float]) -> List[float]:
        return [interpolate(self._samples, x) for x in xs]

    # ── Serialisation ────────────────────────────────────────────────────

    def _render_y(self, y: Number) -> str:
        if isinstance(y, int) and not isinstance(y, bool):
            return str(y)
        return format_number(float(y), self.precision)

    def serialize_inline(self) -> str:
        return "(" + "|".join(f"{x}={self._render_y(y)}" for x, y in self._samples) + ")"

    def serialize_external(self) -> bytes:
        lines = list(self.leading_comments)
        lines.extend(f"{x}{self.delimiter}{self._render_y(y)}" for x, y in self._samples)
        return (self.newline.join(lines) + self.newline).encode("utf-8")

    def apply_to(self, doc: IniDocument, gateway) -> None:
        """Write the table back where it came from."""
        if isinstance(self.source, InlineSource):
            doc.set(self.source.section, self.source.key, self.serialize_inline())
        else:
            gateway.write(self.source.filename, self.serialize_external())

    def __repr__(self) -> str:
        return f"Lut({self.name!r}, {self._samples!r})"
