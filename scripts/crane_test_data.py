#!/usr/bin/env python3
"""
Shared fixture builders for the engine-crane tests.

Builds donors (binary descriptors, bundle archives, direct exports) and target
cars (plain data/ folders or packed data.acd archives) on disk. Not collected
by pytest; the test_*.py modules import from here.
"""

import json
import struct
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

from acd_archive import AcdContents, generate_acd_key, pack_acd

INLINE_FOUR_TORQUE = "(1000=80|4000=220|7000=180)"
BUNDLE_UID = "ABC-1"
CURRENT_GAME_VERSION = 2312150000.0
LEGACY_GAME_VERSION = 2106070000.0


# =============================================================================
# Binary Descriptor
# =============================================================================

def _u32(value: int) -> bytes:
    return struct.pack("<I", value)


def _encode_key(name: str) -> bytes:
    raw = name.encode("utf-8")
    return b"S" + _u32(len(raw)) + raw


def _encode_children(tree: Dict[str, Any]) -> bytes:
    out = bytearray()
    for name, value in tree.items():
        out += _encode_key(name)
        if isinstance(value, bool):
            out += b"1" if value else b"0"
        elif isinstance(value, (int, float)):
            out += b"N" + struct.pack("<d", float(value))
        elif isinstance(value, bytes):
            out += b"S" + _u32(len(value)) + value
        elif isinstance(value, str):
            raw = value.encode("utf-8")
            out += b"S" + _u32(len(raw)) + raw
        elif isinstance(value, dict):
            out += b"T" + _u32(0) + _u32(len(value)) + _encode_children(value)
        else:
            raise TypeError(f"cannot encode {type(value).__name__}")
    return bytes(out)


def encode_descriptor(tree: Dict[str, Any], section_type: int = 7) -> bytes:
    """Encode a nested dict as a binary car descriptor rooted at "Car"."""
    return b"\x01\x00" + _u32(section_type) + _u32(len(tree)) + _encode_children(tree)


def make_descriptor_tree(uid: str = BUNDLE_UID, game_version: float = CURRENT_GAME_VERSION,
                         legacy: bool = False, **variant_overrides) -> Dict[str, Any]:
    """Descriptor tree with the engine attributes where the layout keeps them."""
    variant = {
        "UID": uid,
        "Name": "Crate V8",
        "GameVersion": game_version,
        "Capacity": 4.2,
        "Bore": 92.0,
        "Stroke": 79.0,
        "Compression": 10.5,
        "AspirationType": "Aspiration_Natural",
        "FuelType": "Gasoline",
    }
    family = {"Name": "Crate Family"}
    if legacy:
        family["BlockConfig"] = "BlockConfig_V8"
        family["VVL"] = False
    else:
        variant["BlockConfig"] = "BlockConfig_V8"
        variant["VVL"] = True
    variant.update(variant_overrides)
    return {"Family": family, "Variant": variant}


# =============================================================================
# Intermediate Bundle
# =============================================================================

def make_engine_branch(**overrides) -> Dict[str, Any]:
    """Crate V8 engine branch: torque in Nm, limiter 6800, idle from the first row."""
    branch = {
        "Name": "CrateV8",
        "Limiter": 6800,
        "Torque": [
            ["rpm", "torque"],
            [800, 150],
            [5000, 340],
            [6500, 300],
        ],
    }
    branch.update(overrides)
    return branch


def render_engine_document(branches: Dict[str, Dict[str, Any]]) -> bytes:
    """JBeam text with a leading comment, so strict JSON parsing fails first."""
    body = json.dumps(branches, indent=4)
    return ("// exported engine parameters\n" + body + "\n").encode("utf-8")


def build_bundle(directory: Path, name: str = "crate_v8.zip",
                 descriptor: Optional[bytes] = None,
                 engine_document: Optional[bytes] = None,
                 info: Optional[Dict[str, Any]] = None,
                 engine_member: str = "vehicles/crate/camso_engine_ABC-1.jbeam",
                 include_info: bool = True) -> Path:
    """Write a bundle zip and return its path."""
    if descriptor is None:
        descriptor = encode_descriptor(make_descriptor_tree())
    if engine_document is None:
        engine_document = render_engine_document({BUNDLE_UID: make_engine_branch()})
    if info is None:
        info = {"TorqueUnit": "Nm"}

    path = Path(directory) / name
    with zipfile.ZipFile(path, "w") as bundle:
        bundle.writestr("vehicles/crate/crate.car", descriptor)
        bundle.writestr(engine_member, engine_document)
        if include_info:
            bundle.writestr("vehicles/crate/info.json", json.dumps(info))
    return path


# =============================================================================
# Direct Export
# =============================================================================

def direct_export_sections() -> Dict[str, Dict[str, Any]]:
    """Inline-four donor: idle 900, limiter 7200, peak power declared at 6200 rpm."""
    return {
        "HEADER": {
            "EXPORTER_VERSION": 1,
            "UUID": "5f1c2d3e-0000-4000-8000-000000000001",
            "NAME": "Inline Four",
            "FAMILY": "Test Family",
            "VERSION": 2312150000,
        },
        "GEOMETRY": {
            "DISPLACEMENT": 1998,
            "CYLINDERS": 4,
            "BORE": 86.0,
            "STROKE": 86.0,
            "COMPRESSION": 11.0,
            "ASPIRATION": "naturalAspirated",
        },
        "LIMITS": {
            "IDLE": 900,
            "LIMITER": 7200,
            "PEAK_POWER_RPM": 6200,
        },
        "CURVES": {
            "TORQUE": INLINE_FOUR_TORQUE,
        },
    }


def render_direct_export(sections: Dict[str, Optional[Dict[str, Any]]]) -> bytes:
    lines = ["; engine export"]
    for section, values in sections.items():
        if values is None:
            continue
        lines.append(f"[{section}]")
        lines.extend(f"{key}={value}" for key, value in values.items())
        lines.append("")
    return "\n".join(lines).encode("utf-8")


def make_direct_export(directory: Path, name: str = "donor.txt", **sections) -> Path:
    """
    Write a direct-export file. Keyword arguments merge into the inline-four sections
    by lower-case section name; a None value drops the section.
    """
    data = direct_export_sections()
    for section, values in sections.items():
        key = section.upper()
        if values is None:
            data[key] = None
        else:
            data.setdefault(key, {}).update(values)
    path = Path(directory) / name
    path.write_bytes(render_direct_export(data))
    return path


# =============================================================================
# Target Car
# =============================================================================

ENGINE_INI_TEXT = """\
[HEADER]
VERSION=1
POWER_CURVE=power.lut        ; kW
TORQUE_CURVE=(1000=60|4000=150|7000=120)

[ENGINE_DATA]
ALTITUDE_SENSITIVITY=0.10
INERTIA=0.120
LIMITER=7000
LIMITER_HZ=30
MINIMUM=850

[COAST_REF]
RPM=7000
TORQUE=60
NON_LINEARITY=0
"""

POWER_LUT_TEXT = """\
; stock power
1000|6.283
4000|62.832
7000|87.965
"""

DRIVETRAIN_INI_TEXT = """\
[HEADER]
VERSION=3

[TRACTION]
TYPE=RWD

[GEARS]
COUNT=2
GEAR_R=-3.20
GEAR_1=3.10
GEAR_2=1.90
FINAL=4.10

[GEARBOX]
CHANGE_UP_TIME=200
CHANGE_DN_TIME=250
AUTO_CUTOFF_TIME=200
SUPPORTS_SHIFTER=1

[CLUTCH]
MAX_TORQUE=200

[AUTO_SHIFTER]
UP=6000
DOWN=3000
SLIP_THRESHOLD=0.95
GAS_CUTOFF_TIME=0.28

[DOWNSHIFT_PROTECTION]
ACTIVE=1
DEBUG=0
OVERREV=7200
LOCK_N=1

[DIFFERENTIAL]
POWER=0.30
COAST=0.10
PRELOAD=50
"""

CAR_INI_TEXT = """\
[HEADER]
VERSION=2

[INFO]
SCREEN_NAME=Test Car

[BASIC]
TOTALMASS=1100

[FUEL]
FUEL=30
MAX_FUEL=50
CONSUMPTION=0.0035
"""

ELECTRONICS_INI_TEXT = """\
[ABS]
PRESENT=1
ACTIVE=1
SLIP_RATIO_LIMIT=0.12

[TRACTION_CONTROL]
PRESENT=0
ACTIVE=0
"""


def make_car_files(power_external: bool = True, electronics: bool = False,
                   **replacements) -> Dict[str, bytes]:
    """
    Data-folder contents of the stock test car. ``replacements`` maps a file
    name (dots as underscores, e.g. ``engine_ini``) to replacement text.
    """
    engine = ENGINE_INI_TEXT
    if not power_external:
        engine = engine.replace("POWER_CURVE=power.lut        ; kW",
                                "POWER_CURVE=(1000=6.283|4000=62.832|7000=87.965)")
    files = {
        "engine.ini": engine,
        "drivetrain.ini": DRIVETRAIN_INI_TEXT,
        "car.ini": CAR_INI_TEXT,
    }
    if power_external:
        files["power.lut"] = POWER_LUT_TEXT
    if electronics:
        files["electronics.ini"] = ELECTRONICS_INI_TEXT
    for key, text in replacements.items():
        files[key.replace("_", ".", 1) if "." not in key else key] = text
    return {name: text.encode("utf-8") for name, text in files.items()}


def make_car(root: Path, name: str = "test_car", packed: bool = False,
             files: Optional[Dict[str, bytes]] = None, **file_options) -> Path:
    """Create a car folder with either data/ or data.acd; returns the car path."""
    files = files if files is not None else make_car_files(**file_options)
    car = Path(root) / name
    car.mkdir(parents=True)
    if packed:
        archive = pack_acd(AcdContents(files=dict(files)), generate_acd_key(name))
        (car / "data.acd").write_bytes(archive)
    else:
        data = car / "data"
        data.mkdir()
        for file_name, content in files.items():
            (data / file_name).write_bytes(content)
    return car


def snapshot(path: Path) -> Dict[str, bytes]:
    """Relative path -> bytes for every file under ``path``."""
    path = Path(path)
    return {str(p.relative_to(path)): p.read_bytes() for p in sorted(path.rglob("*")) if p.is_file()}
