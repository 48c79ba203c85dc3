#!/usr/bin/env python3
"""
Donor Decoders
==============

Turn a donor on disk into a validated CrateEngine.

Intermediate bundle (BeamNG-style mod zip):
    *.car                       binary car descriptor          (required)
    camso_engine_<uid5>.jbeam   engine document keyed by UID   (required)
    info.json                   auxiliary parameter file       (optional)

    Provenance order: [descriptor, engine document, info.json]

Direct export (single INI-style text file):
    [HEADER] EXPORTER_VERSION, UUID, NAME, FAMILY, VERSION
    [GEOMETRY] DISPLACEMENT, CYLINDERS, BORE, STROKE, COMPRESSION, ASPIRATION, DRY_MASS, INERTIA
    [ASPIRATION] MAX_BOOST, REFERENCE_RPM           (forced induction only)
    [LIMITS] IDLE, LIMITER, NO_LIFT_SHIFT, MINIMUM, PEAK_POWER_RPM
    [FUEL] CONSUMPTION, BASE_RATE, TYPE, TANK_HINT  (optional)
    [THERMAL] COOLANT_CAPACITY, OIL_CAPACITY, HEAT_REJECTION  (optional)
    [CURVES] TORQUE=(rpm=Nm|...), POWER=(rpm=kW|...)

    Provenance order: [file]

Both decoders run CrateEngine.validate() before returning.
"""

import json
import math
import logging
import re
import zipfile
import zlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from car_descriptor import descriptor_version, engine_attribute, parse_descriptor, sandbox_release
from crane_errors import (
    BundleExtractError,
    CurveUnitMismatch,
    DataIOError,
    FieldTypeError,
    MissingArtifact,
    MissingField,
    ParseError,
    UnknownUid,
)
from crate_engine import (
    Aspiration,
    CrateEngine,
    DonorKind,
    EngineDomain,
    EngineGeometry,
    EngineLimits,
    FuelParams,
    ThermalParams,
    normalise_aspiration_params,
)
from ini_store import IniDocument
from jbeam_parser import JBeamParser, extract_wot_curve, is_header_row
from lut_store import parse_inline
from provenance import sha256_digest

logger = logging.getLogger(__name__)

DIRECT_EXPORT_VERSION = 1
AUXILIARY_MEMBER = "info.json"

TORQUE_UNITS = {
    "nm": 1.0,
    "lbft": EngineDomain.LBFT_TO_NM,
    "lb-ft": EngineDomain.LBFT_TO_NM,
    "ftlb": EngineDomain.LBFT_TO_NM,
}

_ENGINE_DOC_EXCLUDES = ("structure", "internals", "balancing")
_TRAILING_DIGITS = re.compile(r"(\d+)\D*$")


# =============================================================================
# Intermediate Bundle
# =============================================================================

def _basename(member: str) -> str:
    return member.rsplit("/", 1)[-1]


def _find_engine_member(names: List[str], uid: str) -> Optional[str]:
    """
    Engine document lookup order: camso_engine_<uid[:5]>.jbeam, then
    camso_engine.jbeam, then any other camso_engine_*.jbeam that is not a
    structure/internals/balancing file.
    """
    by_base = {}
    for name in sorted(names):
        by_base.setdefault(_basename(name).lower(), name)

    preferred = f"camso_engine_{uid[:5]}.jbeam".lower()
    if preferred in by_base:
        return by_base[preferred]
    if "camso_engine.jbeam" in by_base:
        return by_base["camso_engine.jbeam"]
    for base, name in sorted(by_base.items()):
        if (base.startswith("camso_engine_") and base.endswith(".jbeam")
                and not any(word in base for word in _ENGINE_DOC_EXCLUDES)):
            return name
    return None


def _read_member(bundle: zipfile.ZipFile, member: str, path: Path) -> bytes:
    try:
        return bundle.read(member)
    except (zipfile.BadZipFile, zlib.error, OSError, KeyError) as e:
        raise BundleExtractError(str(path), f"cannot read {member}: {e}") from e


def _number(mapping: Dict[str, Any], key: str) -> Optional[float]:
    value = mapping.get(key)
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise FieldTypeError("float", repr(value)) from None
    if isinstance(value, bool) or not math.isfinite(result):
        raise FieldTypeError("float", repr(value))
    return result


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _wot_table(branch: Dict[str, Any], key: str, artifact: str) -> List[List[float]]:
    """WOT pairs of one branch table. Rows must be lists of finite numbers."""
    table = branch[key]
    if not isinstance(table, list) or not all(isinstance(row, list) for row in table):
        raise ParseError(artifact, f"{key} table is not a list of rows")
    for row in table:
        if is_header_row(row):
            continue
        for cell in row:
            if not _is_finite_number(cell):
                raise ParseError(artifact, f"{key} table has a non-numeric cell {cell!r}")
    return extract_wot_curve(table)


def _aspiration_params(branch: Dict[str, Any], artifact: str) -> Tuple[Tuple[str, float], ...]:
    raw = branch.get("AspirationParams")
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        raise ParseError(artifact, f"AspirationParams is not an object: {raw!r}")
    for name, value in raw.items():
        if not _is_finite_number(value):
            raise ParseError(artifact, f"AspirationParams.{name} is not a number: {value!r}")
    return normalise_aspiration_params(raw)


def _rpm(value: Optional[float]) -> Optional[int]:
    return int(round(value)) if value is not None else None


def _resolve_torque_unit(branch: Dict[str, Any], info: Optional[Dict[str, Any]]) -> float:
    """
    Conversion factor to Nm. The unit must be declared by the engine branch
    or by the auxiliary file; undeclared or conflicting units are errors.
    """
    declared = []
    for source, mapping in (("engine document", branch), (AUXILIARY_MEMBER, info or {})):
        unit = mapping.get("TorqueUnit")
        if unit is not None:
            declared.append((source, str(unit).strip().lower()))

    if not declared:
        raise CurveUnitMismatch("torque unit is not declared by the engine document or info.json")
    units = {unit for _, unit in declared}
    if len(units) > 1:
        detail = ", ".join(f"{source}={unit}" for source, unit in declared)
        raise CurveUnitMismatch(f"conflicting torque units: {detail}")
    unit = units.pop()
    if unit not in TORQUE_UNITS:
        raise CurveUnitMismatch(f"unsupported torque unit {unit!r}")
    return TORQUE_UNITS[unit]


def _cylinders_from_block(block: Any) -> Optional[int]:
    if not isinstance(block, str):
        return None
    match = _TRAILING_DIGITS.search(block)
    return int(match.group(1)) if match else None


def decode_bundle(path: Union[str, Path]) -> CrateEngine:
    """Decode an intermediate bundle archive into a validated CrateEngine."""
    path = Path(path)
    try:
        bundle = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError) as e:
        raise BundleExtractError(str(path), str(e)) from e

    with bundle:
        names = [n for n in bundle.namelist() if not n.endswith("/")]

        descriptor_members = sorted(n for n in names if n.lower().endswith(".car"))
        if not descriptor_members:
            raise MissingArtifact("car descriptor")
        descriptor_member = descriptor_members[0]
        descriptor_bytes = _read_member(bundle, descriptor_member, path)

        root = parse_descriptor(descriptor_bytes, artifact=descriptor_member)
        uid = root.find_attribute("Car/Variant/UID")
        if not isinstance(uid, str) or not uid:
            raise MissingField(descriptor_member, "Car/Variant", "UID")

        engine_member = _find_engine_member(names, uid)
        if engine_member is None:
            raise MissingArtifact("engine document")
        engine_bytes = _read_member(bundle, engine_member, path)

        info_member = next((n for n in sorted(names) if _basename(n).lower() == AUXILIARY_MEMBER), None)
        info_bytes = _read_member(bundle, info_member, path) if info_member else None
        if info_member is None:
            logger.warning(f"{path.name}: no {AUXILIARY_MEMBER}, provenance slot left empty")

    provenance = (
        sha256_digest(descriptor_bytes),
        sha256_digest(engine_bytes),
        sha256_digest(info_bytes) if info_bytes is not None else None,
    )

    document = JBeamParser.parse(engine_bytes, artifact=engine_member)
    branch = document.get(uid)
    if not isinstance(branch, dict):
        raise UnknownUid(uid, document.keys())

    info: Optional[Dict[str, Any]] = None
    if info_bytes is not None:
        try:
            info = json.loads(info_bytes.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(AUXILIARY_MEMBER, str(e)) from None
        if not isinstance(info, dict):
            raise ParseError(AUXILIARY_MEMBER, "top level is not an object")

    engine = _engine_from_bundle(root, branch, info, uid, engine_member, provenance)
    logger.info(f"Decoded bundle {path.name}: {engine.name} ({uid}), "
                f"sandbox {sandbox_release(engine.version)}")
    return engine


def _engine_from_bundle(root, branch: Dict[str, Any], info: Optional[Dict[str, Any]], uid: str,
                        artifact: str, provenance: Tuple[Optional[bytes], ...]) -> CrateEngine:
    factor = _resolve_torque_unit(branch, info)

    if "Torque" not in branch:
        raise MissingField(artifact, uid, "Torque")
    torque = [(int(round(rpm)), value * factor) for rpm, value in _wot_table(branch, "Torque", artifact)]
    power = None
    if "Power" in branch:
        power = [(int(round(rpm)), value) for rpm, value in _wot_table(branch, "Power", artifact)]

    limiter = _rpm(_number(branch, "Limiter"))
    if limiter is None:
        raise MissingField(artifact, uid, "Limiter")
    idle = _rpm(_number(branch, "IdleRPM"))
    if idle is None and torque:
        idle = torque[0][0]

    version = descriptor_version(root)
    if version is None:
        raise MissingField("car descriptor", "Car/Variant", "GameVersion")

    aspiration_text = branch.get("Aspiration") or root.find_attribute("Car/Variant/AspirationType")
    params = _aspiration_params(branch, artifact)
    if isinstance(aspiration_text, str):
        try:
            aspiration = Aspiration.parse(aspiration_text)
        except ValueError:
            raise FieldTypeError("aspiration", aspiration_text) from None
    else:
        aspiration = Aspiration.NATURAL

    capacity_l = root.find_attribute("Car/Variant/Capacity")
    geometry = EngineGeometry(
        displacement_cc=float(capacity_l) * 1000.0 if isinstance(capacity_l, float) else None,
        cylinders=_cylinders_from_block(engine_attribute(root, "BlockConfig")),
        bore_mm=_as_float(root.find_attribute("Car/Variant/Bore")),
        stroke_mm=_as_float(root.find_attribute("Car/Variant/Stroke")),
        compression=_as_float(root.find_attribute("Car/Variant/Compression")),
        aspiration=aspiration,
        aspiration_params=params,
    )

    fuel_kind = branch.get("FuelType") or root.find_attribute("Car/Variant/FuelType")
    fuel = FuelParams(
        consumption=_number(branch, "FuelConsumption"),
        base_rate=_number(branch, "FuelBaseRate"),
        kind=fuel_kind if isinstance(fuel_kind, str) else None,
        tank_hint=_number(branch, "FuelTank"),
    )

    thermal = ThermalParams(
        coolant_capacity=_number(branch, "CoolantCapacity"),
        oil_capacity=_number(branch, "OilCapacity"),
        heat_rejection=_number(branch, "HeatRejection"),
    )
    if thermal == ThermalParams():
        thermal = None

    variant_name = root.find_attribute("Car/Variant/Name")
    family_name = root.find_attribute("Car/Family/Name")
    engine = CrateEngine.build(
        kind=DonorKind.INTERMEDIATE_BUNDLE,
        uuid=uid,
        name=str(branch.get("Name") or (variant_name if isinstance(variant_name, str) else uid)),
        family=family_name if isinstance(family_name, str) else "",
        version=int(version),
        geometry=geometry,
        torque_curve=torque,
        power_curve=power,
        limits=EngineLimits(
            idle=idle or 0,
            limiter=limiter,
            no_lift_shift=_rpm(_number(branch, "NoLiftShiftRPM")),
            minimum=_rpm(_number(branch, "MinimumRPM")),
        ),
        fuel=fuel,
        thermal=thermal,
        dry_mass=_number(branch, "DryMass"),
        inertia=_number(branch, "Inertia"),
        peak_power_rpm=_rpm(_number(branch, "PeakPowerRPM")),
        provenance=provenance,
    )
    return engine.validate()


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


# =============================================================================
# Direct Export
# =============================================================================

def _read_file(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise MissingArtifact(str(path)) from None
    except OSError as e:
        raise DataIOError("read", str(path), str(e)) from e


def decode_direct_export(path: Union[str, Path]) -> CrateEngine:
    """Decode a direct-export text file into a validated CrateEngine."""
    path = Path(path)
    data = _read_file(path)
    doc = IniDocument.load(data, artifact=path.name)

    exporter_version = doc.get_required("HEADER", "EXPORTER_VERSION", int)
    if exporter_version != DIRECT_EXPORT_VERSION:
        raise ParseError(path.name, f"unsupported exporter version {exporter_version}")

    aspiration_raw = doc.get_required("GEOMETRY", "ASPIRATION", str)
    try:
        aspiration = Aspiration.parse(aspiration_raw)
    except ValueError:
        raise FieldTypeError("aspiration", aspiration_raw) from None

    params = {}
    if doc.has_section("ASPIRATION"):
        params = {key: doc.get_required("ASPIRATION", key, float) for key in doc.keys("ASPIRATION")}

    geometry = EngineGeometry(
        displacement_cc=doc.get_required("GEOMETRY", "DISPLACEMENT", float),
        cylinders=doc.get_required("GEOMETRY", "CYLINDERS", int),
        bore_mm=doc.get_required("GEOMETRY", "BORE", float),
        stroke_mm=doc.get_required("GEOMETRY", "STROKE", float),
        compression=doc.get_required("GEOMETRY", "COMPRESSION", float),
        aspiration=aspiration,
        aspiration_params=normalise_aspiration_params(params),
    )

    torque = parse_inline(doc.get_required("CURVES", "TORQUE", str), f"{path.name}:CURVES.TORQUE")
    power_raw = doc.get("CURVES", "POWER")
    power = parse_inline(power_raw, f"{path.name}:CURVES.POWER") if power_raw else None

    limits = EngineLimits(
        idle=doc.get_required("LIMITS", "IDLE", int),
        limiter=doc.get_required("LIMITS", "LIMITER", int),
        no_lift_shift=doc.get_optional("LIMITS", "NO_LIFT_SHIFT", int),
        minimum=doc.get_optional("LIMITS", "MINIMUM", int),
    )

    fuel = FuelParams()
    if doc.has_section("FUEL"):
        fuel = FuelParams(
            consumption=doc.get_optional("FUEL", "CONSUMPTION", float),
            base_rate=doc.get_optional("FUEL", "BASE_RATE", float),
            kind=doc.get_optional("FUEL", "TYPE", str),
            tank_hint=doc.get_optional("FUEL", "TANK_HINT", float),
        )

    thermal = None
    if doc.has_section("THERMAL"):
        thermal = ThermalParams(
            coolant_capacity=doc.get_optional("THERMAL", "COOLANT_CAPACITY", float),
            oil_capacity=doc.get_optional("THERMAL", "OIL_CAPACITY", float),
            heat_rejection=doc.get_optional("THERMAL", "HEAT_REJECTION", float),
        )

    engine = CrateEngine.build(
        kind=DonorKind.DIRECT_EXPORT,
        uuid=doc.get_required("HEADER", "UUID", str),
        name=doc.get_required("HEADER", "NAME", str),
        family=doc.get_optional("HEADER", "FAMILY", str) or "",
        version=doc.get_required("HEADER", "VERSION", int),
        geometry=geometry,
        torque_curve=torque,
        power_curve=power,
        limits=limits,
        fuel=fuel,
        thermal=thermal,
        dry_mass=doc.get_optional("GEOMETRY", "DRY_MASS", float),
        inertia=doc.get_optional("GEOMETRY", "INERTIA", float),
        peak_power_rpm=doc.get_optional("LIMITS", "PEAK_POWER_RPM", int),
        provenance=(sha256_digest(data),),
    )
    engine.validate()
    logger.info(f"Decoded direct export {path.name}: {engine.name} ({engine.uuid})")
    return engine


def decode_donor(path: Union[str, Path], kind: Union[DonorKind, str]) -> CrateEngine:
    """Dispatch on the donor kind tag supplied by the caller."""
    kind = DonorKind(kind) if not isinstance(kind, DonorKind) else kind
    if kind is DonorKind.INTERMEDIATE_BUNDLE:
        return decode_bundle(path)
    return decode_direct_export(path)
