#!/usr/bin/env python3
"""
Tests for data_folder.py: staged overlay, directory and packed backends.

Failure injection patches os.replace / the temp writer so a commit breaks
part-way; the folder must come back byte-identical.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

import data_folder
from acd_archive import generate_acd_key, unpack_acd
from crane_errors import DataFileNotFound, DataIOError, MissingArtifact
from crane_test_data import make_car, snapshot
from data_folder import (
    TEMP_SUFFIX,
    DirectoryDataFolder,
    PackedDataFolder,
    StagedOverlay,
    atomic_write,
    open_data_folder,
)


# =============================================================================
# Overlay
# =============================================================================

def test_overlay_keeps_staging_order():
    flushed = []
    overlay = StagedOverlay(flushed.append)
    overlay.stage_write("b", b"1")
    overlay.stage_write("a", b"2")
    overlay.stage_delete("c")
    overlay.stage_write("b", b"3")
    assert overlay.names() == ["a", "c", "b"]
    overlay.commit()
    assert flushed == [{"a": b"2", "c": None, "b": b"3"}]
    assert not overlay.pending


def test_overlay_survives_failed_flush():
    def boom(changes):
        raise DataIOError("rename", "x", "disk full")

    overlay = StagedOverlay(boom)
    overlay.stage_write("a", b"1")
    try:
        overlay.commit()
    except DataIOError:
        pass
    assert overlay.names() == ["a"]
    overlay.discard()
    assert not overlay.pending


def test_empty_commit_does_not_flush():
    flushed = []
    overlay = StagedOverlay(flushed.append)
    overlay.commit()
    assert flushed == []


# =============================================================================
# Directory Backend
# =============================================================================

class TestDirectoryDataFolder(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.car = make_car(Path(self._tmp.name))
        self.data = self.car / "data"
        self.folder = DirectoryDataFolder(self.data)

    def tearDown(self):
        self._tmp.cleanup()

    def test_reads_see_staged_writes_before_commit(self):
        self.folder.write("car.ini", b"[HEADER]\n")
        self.assertEqual(self.folder.read("car.ini"), b"[HEADER]\n")
        self.assertNotEqual((self.data / "car.ini").read_bytes(), b"[HEADER]\n")
        self.assertTrue(self.folder.has_pending_changes)

    def test_commit_makes_writes_visible(self):
        self.folder.write("car.ini", b"[HEADER]\n")
        self.folder.write("new.lut", b"0|0\n1|1\n")
        self.folder.commit()
        self.assertEqual((self.data / "car.ini").read_bytes(), b"[HEADER]\n")
        self.assertIn("new.lut", self.folder.list())
        self.assertFalse(self.folder.has_pending_changes)
        self.assertEqual([p for p in self.data.iterdir() if p.name.endswith(TEMP_SUFFIX)], [])

    def test_delete(self):
        self.folder.delete("power.lut")
        self.assertFalse(self.folder.exists("power.lut"))
        with self.assertRaises(DataFileNotFound):
            self.folder.read("power.lut")
        self.folder.commit()
        self.assertFalse((self.data / "power.lut").exists())

    def test_delete_missing(self):
        with self.assertRaises(DataFileNotFound):
            self.folder.delete("nope.ini")

    def test_read_missing(self):
        with self.assertRaises(DataFileNotFound):
            self.folder.read("nope.ini")

    def test_discard(self):
        before = snapshot(self.car)
        self.folder.write("engine.ini", b"x")
        self.folder.discard()
        self.folder.commit()
        self.assertEqual(snapshot(self.car), before)

    def test_failed_rename_restores_landed_files(self):
        before = snapshot(self.car)
        self.folder.write("engine.ini", b"[HEADER]\nVERSION=9\n")
        self.folder.write("power.lut", b"0|0\n1|1\n")
        self.folder.write("drivetrain.ini", b"[CLUTCH]\nMAX_TORQUE=1\n")
        self.folder.write("extra.ini", b"[X]\n")

        real_replace = os.replace

        def flaky_replace(src, dst):
            if Path(dst).name == "drivetrain.ini":
                raise OSError("injected rename failure")
            return real_replace(src, dst)

        with mock.patch("data_folder.os.replace", side_effect=flaky_replace):
            with self.assertRaises(DataIOError) as ctx:
                self.folder.commit()

        self.assertEqual(ctx.exception.operation, "rename")
        self.assertEqual(snapshot(self.car), before)
        self.assertTrue(self.folder.has_pending_changes)

    def test_failed_temp_write_leaves_nothing(self):
        before = snapshot(self.car)
        self.folder.write("engine.ini", b"a")
        self.folder.write("car.ini", b"b")

        real_write = data_folder._write_synced
        calls = []

        def flaky_write(path, data):
            calls.append(path)
            if len(calls) == 2:
                raise OSError("injected write failure")
            return real_write(path, data)

        with mock.patch("data_folder._write_synced", side_effect=flaky_write):
            with self.assertRaises(DataIOError):
                self.folder.commit()
        self.assertEqual(snapshot(self.car), before)


def test_atomic_write():
    with tempfile.TemporaryDirectory() as tmp:
        target = Path(tmp) / "badge.png"
        atomic_write(target, b"\x89PNG")
        assert target.read_bytes() == b"\x89PNG"
        assert sorted(p.name for p in Path(tmp).iterdir()) == ["badge.png"]


# =============================================================================
# Packed Backend
# =============================================================================

class TestPackedDataFolder(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.car = make_car(Path(self._tmp.name), name="packed_car", packed=True)
        self.acd = self.car / "data.acd"

    def tearDown(self):
        self._tmp.cleanup()

    def test_key_from_folder_name(self):
        folder = PackedDataFolder(self.acd)
        self.assertEqual(folder.key, generate_acd_key("packed_car"))
        self.assertIn("engine.ini", folder.list())

    def test_commit_rewrites_archive(self):
        folder = PackedDataFolder(self.acd)
        folder.write("engine-crane.provenance", b"{}\n")
        folder.delete("power.lut")
        folder.commit()

        contents = unpack_acd(self.acd.read_bytes(), generate_acd_key("packed_car"))
        self.assertEqual(contents.files["engine-crane.provenance"], b"{}\n")
        self.assertNotIn("power.lut", contents.files)
        self.assertEqual(sorted(p.name for p in self.car.iterdir()), ["data.acd"])

    def test_failed_rename_keeps_archive(self):
        before = snapshot(self.car)
        folder = PackedDataFolder(self.acd)
        folder.write("car.ini", b"[HEADER]\n")
        with mock.patch("data_folder.os.replace", side_effect=OSError("injected")):
            with self.assertRaises(DataIOError):
                folder.commit()
        self.assertEqual(snapshot(self.car), before)


# =============================================================================
# Backend Selection
# =============================================================================

class TestOpenDataFolder(unittest.TestCase):

    def test_directory_preferred(self):
        with tempfile.TemporaryDirectory() as tmp:
            car = make_car(Path(tmp))
            (car / "data.acd").write_bytes(b"")
            self.assertIsInstance(open_data_folder(car), DirectoryDataFolder)

    def test_packed(self):
        with tempfile.TemporaryDirectory() as tmp:
            car = make_car(Path(tmp), packed=True)
            self.assertIsInstance(open_data_folder(car), PackedDataFolder)

    def test_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(MissingArtifact):
                open_data_folder(Path(tmp))


if __name__ == '__main__':
    unittest.main(verbosity=2)
