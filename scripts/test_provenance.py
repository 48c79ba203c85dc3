#!/usr/bin/env python3
"""
Tests for provenance.py: descriptor serialisation and tolerant reading.
"""

import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from crane_errors import ParseError
from crate_engine import DonorKind
from provenance import (
    FORMAT_VERSION,
    ProvenanceDescriptor,
    read_provenance,
    sha256_digest,
)


def make_descriptor(**overrides) -> ProvenanceDescriptor:
    values = {
        "source_kind": DonorKind.INTERMEDIATE_BUNDLE,
        "hashes": (sha256_digest(b"car"), sha256_digest(b"engine"), None),
    }
    values.update(overrides)
    return ProvenanceDescriptor(**values)


def test_sha256_known_vector():
    assert sha256_digest(b"abc").hex() == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad")


def test_to_bytes_layout():
    text = make_descriptor().to_bytes().decode("utf-8")
    assert text.endswith("}\n")
    assert list(json.loads(text)) == ["format_version", "source_kind", "hashes"]
    assert '  "format_version": 1,' in text
    assert json.loads(text)["hashes"][2] is None


def test_to_bytes_idempotent():
    assert make_descriptor().to_bytes() == make_descriptor().to_bytes()


def test_changed_artifacts():
    old = make_descriptor()
    new = make_descriptor(hashes=(sha256_digest(b"car"), sha256_digest(b"engine v2"),
                                  sha256_digest(b"info")))
    assert new.changed_artifacts(old) == [1, 2]
    other_kind = make_descriptor(source_kind=DonorKind.DIRECT_EXPORT)
    assert other_kind.changed_artifacts(old) == [0, 1, 2]


class TestReadProvenance(unittest.TestCase):

    def test_read_back(self):
        descriptor = make_descriptor()
        result = read_provenance(descriptor.to_bytes())
        self.assertTrue(result.supported)
        self.assertEqual(result.format_version, FORMAT_VERSION)
        self.assertEqual(result.descriptor, descriptor)

    def test_unknown_version_is_soft(self):
        data = json.dumps({"format_version": 99, "future": "field"}).encode()
        with self.assertLogs("provenance", level="WARNING"):
            result = read_provenance(data)
        self.assertFalse(result.supported)
        self.assertIsNone(result.descriptor)
        self.assertEqual(result.format_version, 99)
        self.assertIn("99", result.reason)

    def test_malformed_json(self):
        with self.assertRaises(ParseError):
            read_provenance(b"{not json")

    def test_bad_hash(self):
        data = json.dumps({"format_version": 1, "source_kind": "direct-export",
                           "hashes": ["abcd"]}).encode()
        with self.assertRaises(ParseError):
            read_provenance(data)

    def test_unknown_source_kind(self):
        data = json.dumps({"format_version": 1, "source_kind": "carrier-pigeon",
                           "hashes": []}).encode()
        with self.assertRaises(ParseError):
            read_provenance(data)


if __name__ == '__main__':
    unittest.main(verbosity=2)
