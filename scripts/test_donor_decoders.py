#!/usr/bin/env python3
"""
Tests for donor_decoders.py.

Bundles and direct exports are generated on disk with crane_test_data so the
decoders are exercised end to end (zip members, binary descriptor, JBeam
document, info.json).
"""

import sys
import tempfile
import unittest
import zipfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from crane_errors import (
    BundleExtractError,
    CurveUnitMismatch,
    FieldTypeError,
    InvalidDonor,
    MissingArtifact,
    MissingField,
    ParseError,
    UnknownUid,
)
from crane_test_data import (
    BUNDLE_UID,
    LEGACY_GAME_VERSION,
    build_bundle,
    encode_descriptor,
    make_descriptor_tree,
    make_direct_export,
    make_engine_branch,
    render_engine_document,
)
from crate_engine import Aspiration, DonorKind
from donor_decoders import _find_engine_member, decode_bundle, decode_direct_export, decode_donor
from provenance import sha256_digest


class BundleTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()


# =============================================================================
# Intermediate Bundle
# =============================================================================

class TestDecodeBundle(BundleTestCase):

    def test_uid_match(self):
        path = build_bundle(self.dir)
        engine = decode_bundle(path)

        self.assertEqual(engine.kind, DonorKind.INTERMEDIATE_BUNDLE)
        self.assertEqual(engine.uuid, BUNDLE_UID)
        self.assertEqual(engine.torque_curve, ((800, 150.0), (5000, 340.0), (6500, 300.0)))
        self.assertEqual(engine.limits.limiter, 6800)
        self.assertEqual(engine.limits.idle, 800)
        self.assertEqual(engine.geometry.cylinders, 8)
        self.assertAlmostEqual(engine.geometry.displacement_cc, 4200.0)
        self.assertIs(engine.geometry.aspiration, Aspiration.NATURAL)
        self.assertEqual(engine.family, "Crate Family")
        self.assertIsNone(engine.thermal)

    def test_provenance_order(self):
        descriptor = encode_descriptor(make_descriptor_tree())
        document = render_engine_document({BUNDLE_UID: make_engine_branch()})
        engine = decode_bundle(build_bundle(self.dir, descriptor=descriptor, engine_document=document))
        self.assertEqual(len(engine.provenance), 3)
        self.assertEqual(engine.provenance[0], sha256_digest(descriptor))
        self.assertEqual(engine.provenance[1], sha256_digest(document))
        self.assertEqual(engine.provenance[2], sha256_digest(b'{"TorqueUnit": "Nm"}'))

    def test_missing_info_leaves_null_hash(self):
        document = render_engine_document({BUNDLE_UID: make_engine_branch(TorqueUnit="Nm")})
        engine = decode_bundle(build_bundle(self.dir, engine_document=document, include_info=False))
        self.assertIsNone(engine.provenance[2])

    def test_unknown_uid(self):
        document = render_engine_document({"XYZ-9": make_engine_branch()})
        with self.assertRaises(UnknownUid) as ctx:
            decode_bundle(build_bundle(self.dir, engine_document=document))
        self.assertEqual(ctx.exception.uid, BUNDLE_UID)
        self.assertEqual(ctx.exception.available, ["XYZ-9"])

    def test_lbft_converted(self):
        engine = decode_bundle(build_bundle(self.dir, info={"TorqueUnit": "lbft"}))
        self.assertAlmostEqual(engine.peak_torque(), 340 * 1.3558179483, places=6)

    def test_undeclared_unit(self):
        with self.assertRaises(CurveUnitMismatch):
            decode_bundle(build_bundle(self.dir, info={}))

    def test_conflicting_units(self):
        document = render_engine_document({BUNDLE_UID: make_engine_branch(TorqueUnit="lbft")})
        with self.assertRaises(CurveUnitMismatch):
            decode_bundle(build_bundle(self.dir, engine_document=document))

    def test_forced_induction_branch(self):
        branch = make_engine_branch(Aspiration="turbo",
                                    AspirationParams={"MaxBoost": 1.1, "ReferenceRPM": 4200},
                                    CoolantCapacity=7.5, FuelConsumption=0.0042)
        engine = decode_bundle(build_bundle(
            self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))
        self.assertIs(engine.geometry.aspiration, Aspiration.TURBO)
        self.assertEqual(engine.geometry.aspiration_param("max_boost"), 1.1)
        self.assertEqual(engine.thermal.coolant_capacity, 7.5)
        self.assertEqual(engine.fuel.consumption, 0.0042)

    def test_aspiration_params_not_an_object(self):
        branch = make_engine_branch(Aspiration="turbo", AspirationParams="big")
        with self.assertRaises(ParseError) as ctx:
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))
        self.assertEqual(ctx.exception.artifact, "vehicles/crate/camso_engine_ABC-1.jbeam")

    def test_aspiration_param_not_a_number(self):
        branch = make_engine_branch(Aspiration="turbo", AspirationParams={"MaxBoost": "high"})
        with self.assertRaises(ParseError):
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))

    def test_torque_table_cell_not_a_number(self):
        branch = make_engine_branch(Torque=[["rpm", "torque"], [800, 150], [5000, None], [6500, 300]])
        with self.assertRaises(ParseError) as ctx:
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))
        self.assertIn("Torque", ctx.exception.reason)

    def test_torque_table_not_a_list(self):
        branch = make_engine_branch(Torque={"800": 150})
        with self.assertRaises(ParseError):
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))

    def test_limiter_not_a_number(self):
        branch = make_engine_branch(Limiter="fast")
        with self.assertRaises(FieldTypeError):
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))

    def test_inertia_and_dry_mass(self):
        branch = make_engine_branch(Inertia=0.18, DryMass=182)
        engine = decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))
        self.assertEqual(engine.inertia, 0.18)
        self.assertEqual(engine.dry_mass, 182.0)

    def test_invalid_branch(self):
        branch = make_engine_branch(IdleRPM=7000)
        with self.assertRaises(InvalidDonor):
            decode_bundle(build_bundle(self.dir, engine_document=render_engine_document({BUNDLE_UID: branch})))

    def test_legacy_descriptor_layout(self):
        descriptor = encode_descriptor(make_descriptor_tree(game_version=LEGACY_GAME_VERSION, legacy=True))
        engine = decode_bundle(build_bundle(self.dir, descriptor=descriptor))
        self.assertEqual(engine.geometry.cylinders, 8)
        self.assertEqual(engine.version, int(LEGACY_GAME_VERSION))

    def test_missing_game_version(self):
        tree = make_descriptor_tree()
        del tree["Variant"]["GameVersion"]
        with self.assertRaises(MissingField) as ctx:
            decode_bundle(build_bundle(self.dir, descriptor=encode_descriptor(tree)))
        self.assertEqual(ctx.exception.key, "GameVersion")

    def test_missing_descriptor(self):
        path = self.dir / "empty.zip"
        with zipfile.ZipFile(path, "w") as bundle:
            bundle.writestr("info.json", "{}")
        with self.assertRaises(MissingArtifact):
            decode_bundle(path)

    def test_not_a_zip(self):
        path = self.dir / "broken.zip"
        path.write_bytes(b"not a zip")
        with self.assertRaises(BundleExtractError):
            decode_bundle(path)

    def test_broken_engine_document(self):
        with self.assertRaises(ParseError):
            decode_bundle(build_bundle(self.dir, engine_document=b'{"ABC-1": [1, 2'))


def test_engine_member_lookup_order():
    names = [
        "v/camso_engine_structure_abc.jbeam",
        "v/camso_engine_other.jbeam",
        "v/camso_engine.jbeam",
        "v/camso_engine_ABC-1.jbeam",
    ]
    assert _find_engine_member(names, "ABC-1") == "v/camso_engine_ABC-1.jbeam"
    assert _find_engine_member(names[:3], "ABC-1") == "v/camso_engine.jbeam"
    assert _find_engine_member(names[:2], "ABC-1") == "v/camso_engine_other.jbeam"
    assert _find_engine_member(names[:1], "ABC-1") is None


# =============================================================================
# Direct Export
# =============================================================================

class TestDecodeDirectExport(BundleTestCase):

    def test_inline_four_donor(self):
        path = make_direct_export(self.dir)
        engine = decode_direct_export(path)
        self.assertEqual(engine.kind, DonorKind.DIRECT_EXPORT)
        self.assertEqual(engine.torque_curve, ((1000, 80), (4000, 220), (7000, 180)))
        self.assertEqual(engine.limits.idle, 900)
        self.assertEqual(engine.limits.limiter, 7200)
        self.assertEqual(engine.peak_power_rpm, 6200)
        self.assertEqual(engine.provenance, (sha256_digest(path.read_bytes()),))
        self.assertIsNone(engine.thermal)

    def test_geometry_mass_and_inertia(self):
        engine = decode_direct_export(make_direct_export(self.dir, geometry={"DRY_MASS": 140, "INERTIA": 0.15}))
        self.assertEqual(engine.dry_mass, 140.0)
        self.assertEqual(engine.inertia, 0.15)

    def test_invalid_limits(self):
        path = make_direct_export(self.dir, limits={"IDLE": 2000, "LIMITER": 1800})
        with self.assertRaises(InvalidDonor) as ctx:
            decode_direct_export(path)
        self.assertEqual(ctx.exception.reason, "limiter<=idle")

    def test_optional_groups(self):
        path = make_direct_export(
            self.dir,
            geometry={"ASPIRATION": "turbo"},
            aspiration={"MAX_BOOST": 1.2, "REFERENCE_RPM": 4500},
            thermal={"COOLANT_CAPACITY": 6.5},
            fuel={"CONSUMPTION": 0.0041, "TYPE": "gasoline"},
        )
        engine = decode_direct_export(path)
        self.assertEqual(engine.geometry.aspiration_params, (("max_boost", 1.2), ("reference_rpm", 4500.0)))
        self.assertEqual(engine.thermal.coolant_capacity, 6.5)
        self.assertIsNone(engine.thermal.oil_capacity)
        self.assertEqual(engine.fuel.kind, "gasoline")

    def test_unsupported_exporter_version(self):
        path = make_direct_export(self.dir, header={"EXPORTER_VERSION": 2})
        with self.assertRaises(ParseError):
            decode_direct_export(path)

    def test_missing_file(self):
        with self.assertRaises(MissingArtifact):
            decode_direct_export(self.dir / "nope.txt")

    def test_dispatch_by_tag(self):
        path = make_direct_export(self.dir)
        self.assertEqual(decode_donor(path, "direct-export"), decode_direct_export(path))
        bundle = build_bundle(self.dir)
        self.assertEqual(decode_donor(bundle, DonorKind.INTERMEDIATE_BUNDLE).uuid, BUNDLE_UID)


if __name__ == '__main__':
    unittest.main(verbosity=2)
