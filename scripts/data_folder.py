#!/usr/bin/env python3
"""
Car Data-Folder Gateway
=======================

Named byte-blob access to a car's data, whichever way it is stored:

    DirectoryDataFolder   <car>/data/ as plain files
    PackedDataFolder      <car>/data.acd packed archive

Writes and deletes never touch the disk directly. They are staged in a
StagedOverlay and become visible together on commit(). The overlay is shared
by both backends; each backend only supplies the flush callback that makes a
set of changes durable.

Flush policy:
    directory - every staged file is written to a sibling temp name and
                fsynced, then renamed over its target in staging order. If a
                rename fails, targets that already landed are restored from
                their original bytes and the error is re-raised.
    archive   - a complete new archive is written to a temp path, fsynced
                and renamed over data.acd.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

from acd_archive import AcdContents, generate_acd_key, pack_acd, unpack_acd
from crane_errors import DataFileNotFound, DataIOError, MissingArtifact

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".crane-tmp"

# name -> new bytes, or None for a staged deletion
Changes = Dict[str, Optional[bytes]]
FlushFn = Callable[[Changes], None]


# =============================================================================
# Overlay
# =============================================================================

class StagedOverlay:
    """
    In-memory overlay of pending writes.

    commit() hands the ordered changes to ``flush``; the overlay is cleared
    only when the flush returns. A failing flush leaves the overlay intact so
    the caller decides whether to discard it.
    """

    def __init__(self, flush: FlushFn):
        self._flush = flush
        self._changes: Changes = {}

    def __contains__(self, name: str) -> bool:
        return name in self._changes

    def get(self, name: str) -> Optional[bytes]:
        return self._changes[name]

    def stage_write(self, name: str, data: bytes) -> None:
        self._changes.pop(name, None)
        self._changes[name] = bytes(data)

    def stage_delete(self, name: str) -> None:
        self._changes.pop(name, None)
        self._changes[name] = None

    def names(self) -> List[str]:
        return list(self._changes)

    @property
    def pending(self) -> bool:
        return bool(self._changes)

    def commit(self) -> None:
        if not self._changes:
            return
        self._flush(dict(self._changes))
        self._changes.clear()

    def discard(self) -> None:
        if self._changes:
            logger.info(f"Discarding {len(self._changes)} staged change(s)")
        self._changes.clear()


# =============================================================================
# Gateway Base
# =============================================================================

class DataFolder:
    """Common read/write/delete/list contract over committed state + overlay."""

    def __init__(self):
        self._overlay = StagedOverlay(self._flush)

    # Backend hooks
    def _read_committed(self, name: str) -> bytes:
        raise NotImplementedError

    def _list_committed(self) -> List[str]:
        raise NotImplementedError

    def _flush(self, changes: Changes) -> None:
        raise NotImplementedError

    # Contract
    def read(self, name: str) -> bytes:
        if name in self._overlay:
            data = self._overlay.get(name)
            if data is None:
                raise DataFileNotFound(name)
            return data
        return self._read_committed(name)

    def exists(self, name: str) -> bool:
        if name in self._overlay:
            return self._overlay.get(name) is not None
        return name in self._list_committed()

    def write(self, name: str, data: bytes) -> None:
        logger.debug(f"Staging write of {name} ({len(data)} bytes)")
        self._overlay.stage_write(name, data)

    def delete(self, name: str) -> None:
        if not self.exists(name):
            raise DataFileNotFound(name)
        logger.debug(f"Staging delete of {name}")
        self._overlay.stage_delete(name)

    def list(self) -> List[str]:
        names = [n for n in self._list_committed() if n not in self._overlay]
        for name in self._overlay.names():
            if self._overlay.get(name) is not None:
                names.append(name)
        return sorted(names)

    def pending_names(self) -> List[str]:
        return self._overlay.names()

    @property
    def has_pending_changes(self) -> bool:
        return self._overlay.pending

    def commit(self) -> None:
        """Make every staged change visible at once, or none of them."""
        self._overlay.commit()

    def discard(self) -> None:
        self._overlay.discard()


def _write_synced(path: Path, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temp file {path}: {e}")


def atomic_write(path: Path, data: bytes) -> None:
    """Write a single file by temp + fsync + rename."""
    tmp = path.with_name(f".{path.name}{TEMP_SUFFIX}")
    try:
        _write_synced(tmp, data)
        os.replace(tmp, path)
    except OSError as e:
        _remove_quietly(tmp)
        raise DataIOError("write", str(path), str(e)) from e


# =============================================================================
# Directory Backend
# =============================================================================

class DirectoryDataFolder(DataFolder):
    """Plain ``<car>/data/`` directory."""

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__()

    def _target(self, name: str) -> Path:
        return self.path / name

    def _temp(self, name: str) -> Path:
        return self.path / f".{name}{TEMP_SUFFIX}"

    def _read_committed(self, name: str) -> bytes:
        try:
            return self._target(name).read_bytes()
        except FileNotFoundError:
            raise DataFileNotFound(name) from None
        except OSError as e:
            raise DataIOError("read", str(self._target(name)), str(e)) from e

    def _list_committed(self) -> List[str]:
        try:
            return sorted(
                p.name for p in self.path.iterdir()
                if p.is_file() and not p.name.endswith(TEMP_SUFFIX)
            )
        except OSError as e:
            raise DataIOError("list", str(self.path), str(e)) from e

    def _flush(self, changes: Changes) -> None:
        # Originals are captured before anything lands so a failed rename
        # can be reversed.
        originals: Dict[str, Optional[bytes]] = {}
        for name in changes:
            target = self._target(name)
            try:
                originals[name] = target.read_bytes() if target.exists() else None
            except OSError as e:
                raise DataIOError("read", str(target), str(e)) from e

        temps: List[Path] = []
        try:
            for name, data in changes.items():
                if data is None:
                    continue
                tmp = self._temp(name)
                temps.append(tmp)
                _write_synced(tmp, data)
        except OSError as e:
            for tmp in temps:
                _remove_quietly(tmp)
            logger.error(f"Commit failed while writing temp files: {e}")
            raise DataIOError("write", str(self.path), str(e)) from e

        landed: List[str] = []
        try:
            for name, data in changes.items():
                target = self._target(name)
                if data is None:
                    if target.exists():
                        target.unlink()
                else:
                    os.replace(self._temp(name), target)
                landed.append(name)
        except OSError as e:
            logger.error(f"Commit failed on {target.name}: {e}; restoring {len(landed)} file(s)")
            self._restore(landed, originals)
            for tmp in temps:
                _remove_quietly(tmp)
            raise DataIOError("rename", str(target), str(e)) from e

        logger.info(f"Committed {len(changes)} file(s) to {self.path}")

    def _restore(self, landed: List[str], originals: Dict[str, Optional[bytes]]) -> None:
        for name in reversed(landed):
            target = self._target(name)
            original = originals[name]
            try:
                if original is None:
                    _remove_quietly(target)
                else:
                    tmp = self._temp(name)
                    _write_synced(tmp, original)
                    os.replace(tmp, target)
            except OSError as e:
                logger.warning(f"Could not restore {target}: {e}")


# =============================================================================
# Packed Archive Backend
# =============================================================================

class PackedDataFolder(DataFolder):
    """``<car>/data.acd`` packed archive, keyed by the car folder name."""

    def __init__(self, acd_path: Path, key: Optional[str] = None):
        self.acd_path = Path(acd_path)
        self.key = key or generate_acd_key(self.acd_path.parent.name)
        self._contents: Optional[AcdContents] = None
        super().__init__()

    def _load(self) -> AcdContents:
        if self._contents is None:
            try:
                data = self.acd_path.read_bytes()
            except OSError as e:
                raise DataIOError("read", str(self.acd_path), str(e)) from e
            self._contents = unpack_acd(data, self.key, artifact=self.acd_path.name)
            logger.debug(f"Unpacked {self.acd_path} ({len(self._contents.files)} files)")
        return self._contents

    def _read_committed(self, name: str) -> bytes:
        files = self._load().files
        if name not in files:
            raise DataFileNotFound(name)
        return files[name]

    def _list_committed(self) -> List[str]:
        return sorted(self._load().files)

    def _flush(self, changes: Changes) -> None:
        current = self._load()
        files = dict(current.files)
        for name, data in changes.items():
            if data is None:
                files.pop(name, None)
            else:
                files[name] = data
        updated = AcdContents(files=files, dlc_header=current.dlc_header)

        tmp = self.acd_path.with_name(self.acd_path.name + TEMP_SUFFIX)
        try:
            _write_synced(tmp, pack_acd(updated, self.key))
            os.replace(tmp, self.acd_path)
        except OSError as e:
            _remove_quietly(tmp)
            logger.error(f"Commit of {self.acd_path} failed: {e}")
            raise DataIOError("rename", str(self.acd_path), str(e)) from e

        self._contents = updated
        logger.info(f"Committed {len(changes)} file(s) into {self.acd_path}")


def open_data_folder(car_path: Path) -> DataFolder:
    """Pick the backend for a car: plain ``data/`` wins over ``data.acd``."""
    car_path = Path(car_path)
    data_dir = car_path / "data"
    if data_dir.is_dir():
        return DirectoryDataFolder(data_dir)
    acd_path = car_path / "data.acd"
    if acd_path.is_file():
        return PackedDataFolder(acd_path)
    raise MissingArtifact(f"{car_path.name}/data")
