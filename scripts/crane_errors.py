#!/usr/bin/env python3
"""
Engine Crane error hierarchy.

Every failure the transplant pipeline can surface is a subclass of
EngineCraneError. Decoders and loaders raise these unchanged; the transplant
engine wraps them in a TransplantError that keeps the original as __cause__.
"""

from enum import Enum
from typing import Iterable, Optional


class EngineCraneError(Exception):
    """Base class for all engine-crane errors."""
    pass


# =============================================================================
# Parse Errors
# =============================================================================

class ParseError(EngineCraneError):
    """Malformed donor or car file."""

    def __init__(self, artifact: str, reason: str, offset: Optional[int] = None):
        self.artifact = artifact
        self.reason = reason
        self.offset = offset
        where = f" at {offset}" if offset is not None else ""
        super().__init__(f"Failed to parse {artifact}{where}: {reason}")


class IniParseError(ParseError):
    """Malformed sectioned text document. Offset is a 1-based line number."""
    pass


class LutParseError(ParseError):
    """Malformed lookup table."""
    pass


class DescriptorParseError(ParseError):
    """Malformed binary car descriptor. Offset is a byte offset."""
    pass


# =============================================================================
# Missing Inputs
# =============================================================================

class MissingSection(EngineCraneError):
    """A mandatory section is absent from a document."""

    def __init__(self, artifact: str, section: str):
        self.artifact = artifact
        self.section = section
        super().__init__(f"Missing section [{section}] in {artifact}")


class MissingField(EngineCraneError):
    """A mandatory key is absent from a section."""

    def __init__(self, artifact: str, section: str, key: str):
        self.artifact = artifact
        self.section = section
        self.key = key
        super().__init__(f"Missing field {section}.{key} in {artifact}")


class MissingArtifact(EngineCraneError):
    """A required input file or archive member is absent."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Missing artifact: {name}")


class MissingLut(MissingArtifact):
    """An external lookup table referenced by a header key does not exist."""
    pass


class DataFileNotFound(MissingArtifact):
    """Data-folder gateway could not find the named blob."""
    pass


class FieldTypeError(EngineCraneError):
    """A raw value could not be coerced to the requested kind."""

    def __init__(self, kind: str, raw: str):
        self.kind = kind
        self.raw = raw
        super().__init__(f"Cannot read {raw!r} as {kind}")


# =============================================================================
# Donor Errors
# =============================================================================

class BundleExtractError(EngineCraneError):
    """The intermediate bundle could not be opened or read."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot extract bundle {path}: {reason}")


class UnknownUid(EngineCraneError):
    """The engine document has no branch for the descriptor's UID."""

    def __init__(self, uid: str, available: Iterable[str] = ()):
        self.uid = uid
        self.available = list(available)
        super().__init__(
            f"Engine document has no entry for UID {uid!r} "
            f"(available: {', '.join(self.available) or 'none'})"
        )


class CurveUnitMismatch(EngineCraneError):
    """The unit of a donor curve is undeclared or declared inconsistently."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Curve unit mismatch: {reason}")


class InvalidDonor(EngineCraneError):
    """A decoded crate engine violates the record invariants."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# =============================================================================
# Transplant Errors
# =============================================================================

class IncompatibleCar(EngineCraneError):
    """The compatibility gate rejected the donor/car pairing."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class PostConditionFailed(EngineCraneError):
    """The mutated car violates a cross-section invariant; nothing is committed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class DataIOError(EngineCraneError):
    """Underlying filesystem failure during read, write or rename."""

    def __init__(self, operation: str, target: str, reason: str):
        self.operation = operation
        self.target = target
        self.reason = reason
        super().__init__(f"I/O failure during {operation} of {target}: {reason}")


class TransplantErrorKind(Enum):
    """Uniform kinds surfaced by transplant()."""
    PARSE = "parse"
    MISSING = "missing"
    INVALID_DONOR = "invalid_donor"
    INCOMPATIBLE_CAR = "incompatible_car"
    POST_CONDITION = "post_condition"
    IO = "io"


class TransplantError(EngineCraneError):
    """
    Top-level failure of a transplant.

    Always raised with ``from cause`` so the decoder or loader error is
    available as ``__cause__`` as well as ``.cause``.
    """

    def __init__(self, kind: TransplantErrorKind, cause: EngineCraneError):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Transplant failed ({kind.value}): {cause}")


def classify_error(error: EngineCraneError) -> TransplantErrorKind:
    """Map a pipeline error onto its TransplantErrorKind."""
    if isinstance(error, (ParseError, FieldTypeError, BundleExtractError)):
        return TransplantErrorKind.PARSE
    if isinstance(error, DataIOError):
        return TransplantErrorKind.IO
    if isinstance(error, (MissingSection, MissingField, MissingArtifact)):
        return TransplantErrorKind.MISSING
    if isinstance(error, IncompatibleCar):
        return TransplantErrorKind.INCOMPATIBLE_CAR
    if isinstance(error, PostConditionFailed):
        return TransplantErrorKind.POST_CONDITION
    # InvalidDonor, UnknownUid, CurveUnitMismatch
    return TransplantErrorKind.INVALID_DONOR
