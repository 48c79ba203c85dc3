#!/usr/bin/env python3
"""
Provenance Descriptor
=====================

Small, versioned record of which donor artifacts produced a car. It is
written next to the car's data as ``engine-crane.provenance``:

    {
      "format_version": 1,
      "source_kind": "direct-export",
      "hashes": [
        "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"
      ]
    }

Hashes are SHA-256 of the raw artifact bytes, positional per donor kind
(intermediate bundle: descriptor, engine document, auxiliary file). A null
entry means that artifact was absent when the car was built.

Readers that meet a newer format_version get a soft result
(``supported=False``) instead of an exception.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from crane_errors import ParseError
from crate_engine import CrateEngine, DonorKind

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
PROVENANCE_FILENAME = "engine-crane.provenance"


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


@dataclass(frozen=True)
class ProvenanceDescriptor:
    source_kind: DonorKind
    hashes: Tuple[Optional[bytes], ...]

    @classmethod
    def from_engine(cls, engine: CrateEngine) -> "ProvenanceDescriptor":
        return cls(engine.kind, tuple(engine.provenance))

    def hex_hashes(self) -> List[Optional[str]]:
        return [h.hex() if h is not None else None for h in self.hashes]

    def to_bytes(self) -> bytes:
        payload = {
            "format_version": FORMAT_VERSION,
            "source_kind": self.source_kind.value,
            "hashes": self.hex_hashes(),
        }
        return (json.dumps(payload, indent=2) + "\n").encode("utf-8")

    def changed_artifacts(self, previous: "ProvenanceDescriptor") -> List[int]:
        """Positions whose hash differs from ``previous`` (a different donor kind differs everywhere)."""
        width = max(len(self.hashes), len(previous.hashes))
        if self.source_kind is not previous.source_kind:
            return list(range(width))
        mine = list(self.hashes) + [None] * (width - len(self.hashes))
        theirs = list(previous.hashes) + [None] * (width - len(previous.hashes))
        return [i for i in range(width) if mine[i] != theirs[i]]


@dataclass(frozen=True)
class ProvenanceReadResult:
    """
    Outcome of reading a provenance file.

    Attributes:
        descriptor: Parsed descriptor, None when the version is unsupported.
        supported: False for a format version this reader does not know.
        reason: Explanation when not supported.
        format_version: Version found in the file.
    """
    descriptor: Optional[ProvenanceDescriptor]
    supported: bool
    reason: str = ""
    format_version: Optional[int] = None


def _parse_hashes(raw: Sequence) -> Tuple[Optional[bytes], ...]:
    hashes = []
    for index, item in enumerate(raw):
        if item is None:
            hashes.append(None)
            continue
        try:
            digest = bytes.fromhex(item)
        except (TypeError, ValueError):
            raise ParseError(PROVENANCE_FILENAME, f"hash {index} is not hex") from None
        if len(digest) != 32:
            raise ParseError(PROVENANCE_FILENAME, f"hash {index} is not 32 bytes")
        hashes.append(digest)
    return tuple(hashes)


def read_provenance(data: bytes) -> ProvenanceReadResult:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(PROVENANCE_FILENAME, str(e)) from None
    if not isinstance(payload, dict) or not isinstance(payload.get("format_version"), int):
        raise ParseError(PROVENANCE_FILENAME, "missing integer format_version")

    version = payload["format_version"]
    if version != FORMAT_VERSION:
        reason = f"unsupported provenance format version {version} (reader knows {FORMAT_VERSION})"
        logger.warning(reason)
        return ProvenanceReadResult(None, False, reason, version)

    try:
        kind = DonorKind(payload.get("source_kind"))
    except ValueError:
        raise ParseError(PROVENANCE_FILENAME, f"unknown source kind {payload.get('source_kind')!r}") from None
    raw_hashes = payload.get("hashes")
    if not isinstance(raw_hashes, list):
        raise ParseError(PROVENANCE_FILENAME, "hashes must be a list")
    return ProvenanceReadResult(ProvenanceDescriptor(kind, _parse_hashes(raw_hashes)), True,
                                format_version=version)
