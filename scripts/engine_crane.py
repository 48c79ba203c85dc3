#!/usr/bin/env python3
"""
Engine Crane: Engine Transplant Pipeline
========================================

Transplants a donor engine (direct export or intermediate bundle) into a
target-sim car's data folder.

Pipeline:
    1. Decode the donor into a validated CrateEngine (donor_decoders).
    2. Open the car's data folder (plain data/ or packed data.acd) and load
       the typed CarModel.
    3. Compatibility gate: RPM axes, limiter safety cap, user predicate.
    4. Plan the patch: donor-driven writes from the record, plus derived
       rewrites (curves, clutch, auto-shifter, over-rev, coast reference,
       damage thresholds and, when asked, total mass).
    5. Apply the patch through the section views.
    6. Post-validate the mutated car. Nothing has touched the disk yet.
    7. Stage changed documents, external LUTs and the provenance descriptor
       into the gateway overlay and commit them in one go.
    8. Optionally write a badge image to ui/upgrade.png.

Any failure discards the overlay and surfaces as a TransplantError whose
__cause__ is the original error.

Usage:
    from engine_crane import transplant, load_transplant_config

    config = load_transplant_config()
    report = transplant("donor.txt", "direct-export", "content/cars/my_car", config)
    print("\\n".join(report.summary_lines()))
"""

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from car_model import CarModel
from crane_errors import (
    DataIOError,
    EngineCraneError,
    IncompatibleCar,
    InvalidDonor,
    PostConditionFailed,
    TransplantError,
    classify_error,
)
from crate_engine import (
    CAR_INI,
    DRIVETRAIN_INI,
    ENGINE_INI,
    Aspiration,
    CrateEngine,
    DonorKind,
    EngineDomain,
    Patch,
)
from data_folder import atomic_write, open_data_folder
from donor_decoders import decode_donor
from lut_store import interpolate
from provenance import PROVENANCE_FILENAME, ProvenanceDescriptor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

INT32_MAX = 2 ** 31 - 1
INT32_MIN = -(2 ** 31)

UPSHIFT_LIMITER_MARGIN = 200     # UP stays this far below the limiter
UPSHIFT_PEAK_POWER_OFFSET = 400  # UP sits this far past peak power
DOWNSHIFT_IDLE_OFFSET = 800
SHIFT_GAP = 100                  # minimum UP - DOWN when the two collide
OVERREV_OFFSET = 500
CLUTCH_MIN_RATIO = 1.1
DAMAGE_RPM_MARGIN = 200         # RPM_THRESHOLD sits this far past the limiter
RPM_DAMAGE_K = 1
TURBO_DAMAGE_K = 4
TORQUE_PRECISION = 2

BADGE_PATH = Path("ui") / "upgrade.png"


# =============================================================================
# Configuration
# =============================================================================

class ResamplingPolicy(Enum):
    """Which x-axis the rewritten curves use."""
    ADOPT_DONOR = "adopt-donor"
    PRESERVE_CAR = "preserve-car"


def _accept_all(engine: CrateEngine, car: CarModel) -> bool:
    return True


@dataclass
class TransplantConfig:
    """
    Transplant options.

    Attributes:
        resampling_policy: ADOPT_DONOR writes the donor's rpm points;
                           PRESERVE_CAR resamples the donor torque at the
                           car's existing power-curve rpm points.
        clutch_headroom: Multiplier on peak donor torque for CLUTCH.MAX_TORQUE.
        limiter_safety_cap: Donors with a higher limiter are rejected.
        compatibility_predicate: Veto hook called with (engine, car).
        current_engine_weight: Mass in kg of the engine being taken out. When
                               set and the donor declares its dry mass,
                               BASIC.TOTALMASS moves by the difference.
    """
    resampling_policy: ResamplingPolicy = ResamplingPolicy.ADOPT_DONOR
    clutch_headroom: float = 1.25
    limiter_safety_cap: int = 20000
    compatibility_predicate: Callable[[CrateEngine, CarModel], bool] = field(
        default=_accept_all, repr=False)
    current_engine_weight: Optional[float] = None


def load_transplant_config(config_path: Path = None) -> TransplantConfig:
    """
    Load transplant options from a JSON config file.

    Args:
        config_path: Path to transplant.json (default: ../configs/transplant.json)

    Returns:
        TransplantConfig; defaults when the file is missing or unreadable.

    Raises:
        ValueError: the file parses but holds an invalid value.
    """
    if config_path is None:
        script_dir = Path(__file__).resolve().parent
        config_path = script_dir.parent / "configs" / "transplant.json"
    else:
        config_path = Path(config_path).resolve()

    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return TransplantConfig()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load config {config_path}: {e}, using defaults")
        return TransplantConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path}: top level must be an object")

    config = TransplantConfig()
    if "resampling_policy" in raw:
        try:
            config.resampling_policy = ResamplingPolicy(raw["resampling_policy"])
        except ValueError:
            choices = ", ".join(p.value for p in ResamplingPolicy)
            raise ValueError(f"resampling_policy must be one of {choices}, "
                             f"got {raw['resampling_policy']!r}") from None
    if "clutch_headroom" in raw:
        headroom = raw["clutch_headroom"]
        if isinstance(headroom, bool) or not isinstance(headroom, (int, float)) \
                or headroom < CLUTCH_MIN_RATIO:
            raise ValueError(f"clutch_headroom must be a number >= {CLUTCH_MIN_RATIO}, got {headroom!r}")
        config.clutch_headroom = float(headroom)
    if "limiter_safety_cap" in raw:
        cap = raw["limiter_safety_cap"]
        if isinstance(cap, bool) or not isinstance(cap, int) or cap <= 0:
            raise ValueError(f"limiter_safety_cap must be a positive integer, got {cap!r}")
        config.limiter_safety_cap = cap
    if "current_engine_weight" in raw:
        weight = raw["current_engine_weight"]
        if weight is not None and (isinstance(weight, bool) or not isinstance(weight, (int, float))
                                   or weight <= 0):
            raise ValueError(f"current_engine_weight must be a positive number or null, got {weight!r}")
        config.current_engine_weight = float(weight) if weight is not None else None

    unknown = sorted(set(raw) - {"resampling_policy", "clutch_headroom", "limiter_safety_cap",
                                 "current_engine_weight"})
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
    logger.info(f"Loaded transplant config from {config_path}")
    return config


# =============================================================================
# Report
# =============================================================================

@dataclass
class TransplantReport:
    """
    Outcome of a successful transplant.

    Attributes:
        donor_uuid / donor_name / donor_kind: Which engine went in.
        files_written: Data-folder names committed, in commit order.
        sections_written: "file:[SECTION]" labels (or LUT filenames).
        changes: "file:SECTION.KEY" -> (old, new) for numeric fields.
        curve_peaks: curve label -> (old peak, new peak).
        provenance_hashes: Hex digests, None for absent artifacts.
    """
    donor_uuid: str
    donor_name: str
    donor_kind: DonorKind
    files_written: List[str] = field(default_factory=list)
    sections_written: List[str] = field(default_factory=list)
    changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    curve_peaks: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    provenance_hashes: List[Optional[str]] = field(default_factory=list)

    def summary_lines(self) -> List[str]:
        lines = [
            f"Transplanted {self.donor_name} ({self.donor_uuid}, {self.donor_kind.value})",
            f"  Files written: {', '.join(self.files_written) or 'none'}",
        ]
        for label, (old, new) in self.changes.items():
            lines.append(f"  {label}: {_fmt(old)} -> {_fmt(new)}")
        for label, (old, new) in self.curve_peaks.items():
            lines.append(f"  {label} peak: {_fmt(old)} -> {_fmt(new)}")
        present = sum(1 for h in self.provenance_hashes if h is not None)
        lines.append(f"  Provenance: {present}/{len(self.provenance_hashes)} artifact hashes")
        return lines

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "donor_uuid": self.donor_uuid,
            "donor_name": self.donor_name,
            "donor_kind": self.donor_kind.value,
            "files_written": list(self.files_written),
            "sections_written": list(self.sections_written),
            "changes": {k: [old, new] for k, (old, new) in self.changes.items()},
            "curve_peaks": {k: [old, new] for k, (old, new) in self.curve_peaks.items()},
            "provenance_hashes": list(self.provenance_hashes),
        }


def _fmt(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _split_changes(changes: Dict[str, Tuple[Any, Any]]):
    """Numeric field changes, and curve changes reduced to their peaks."""
    numeric: Dict[str, Tuple[Any, Any]] = {}
    peaks: Dict[str, Tuple[Any, Any]] = {}
    for label, (old, new) in changes.items():
        if isinstance(new, list) or isinstance(old, list):
            old_peak = EngineDomain.peak(old or [])
            new_peak = EngineDomain.peak(new or [])
            peaks[label] = (old_peak[1] if old_peak else None, new_peak[1] if new_peak else None)
        elif _is_number(new) and (old is None or _is_number(old)):
            numeric[label] = (old, new)
    return numeric, peaks


# =============================================================================
# Pipeline Stages
# =============================================================================

def _is_rpm_axis(xs: List[Any], floor: int) -> bool:
    return bool(xs) and all(isinstance(x, int) for x in xs) and max(xs) >= floor


def check_compatibility(engine: CrateEngine, car: CarModel, config: TransplantConfig) -> None:
    """Raise IncompatibleCar when the pairing must not proceed."""
    floor = car.idle
    for curve in (car.power_curve, car.torque_curve):
        if curve is None:
            continue
        if not _is_rpm_axis(curve.lut.xs(), floor):
            raise IncompatibleCar(f"car {curve.name} curve is not on an RPM axis")
    donor_xs = [x for x, _ in engine.torque_curve]
    if not _is_rpm_axis(donor_xs, engine.limits.idle):
        raise IncompatibleCar("donor torque curve is not on an RPM axis")

    if engine.limits.limiter > config.limiter_safety_cap:
        raise IncompatibleCar(
            f"donor limiter {engine.limits.limiter} exceeds safety cap {config.limiter_safety_cap}")
    new_mass = _new_total_mass(engine, car, config)
    if new_mass is not None and new_mass <= 0:
        raise IncompatibleCar(
            f"current engine weight {config.current_engine_weight:g} kg would leave "
            f"a total mass of {new_mass} kg")
    if not config.compatibility_predicate(engine, car):
        raise IncompatibleCar(f"compatibility predicate rejected {engine.uuid}")


def _new_total_mass(engine: CrateEngine, car: CarModel, config: TransplantConfig) -> Optional[int]:
    """BASIC.TOTALMASS after swapping engine weights, or None when it stays."""
    if config.current_engine_weight is None:
        return None
    if engine.dry_mass is None:
        logger.warning(f"{engine.uuid} declares no dry mass, TOTALMASS left unchanged")
        return None
    delta = engine.dry_mass - config.current_engine_weight
    return int(round(car.basic.total_mass + delta))


def _tidy_torque(value: float) -> Union[int, float]:
    if float(value).is_integer():
        return int(value)
    return round(value, TORQUE_PRECISION)


def plan_patch(engine: CrateEngine, car: CarModel, config: TransplantConfig) -> Patch:
    """Donor-driven writes plus the derived drivetrain and curve rewrites."""
    patch = engine.to_target_sections(car)

    if config.resampling_policy is ResamplingPolicy.PRESERVE_CAR:
        torque = [(x, _tidy_torque(interpolate(engine.torque_curve, x)))
                  for x in car.power_curve.lut.xs()]
    else:
        torque = [(x, _tidy_torque(y)) for x, y in engine.torque_curve]
    power = EngineDomain.power_curve_from_torque(torque, EngineDomain.POWER_PRECISION)
    patch.write_curve("torque", torque, TORQUE_PRECISION)
    patch.write_curve("power", power, EngineDomain.POWER_PRECISION)

    limits = engine.limits
    # round() first so 1.25 * 220 does not ceil to 276 on float noise
    clutch = math.ceil(round(config.clutch_headroom * engine.peak_torque(), 6))
    up = min(limits.limiter - UPSHIFT_LIMITER_MARGIN,
             engine.resolved_peak_power_rpm() + UPSHIFT_PEAK_POWER_OFFSET)
    down = limits.idle + DOWNSHIFT_IDLE_OFFSET
    if up <= down:
        down = up - SHIFT_GAP

    patch.set(DRIVETRAIN_INI, "CLUTCH", "MAX_TORQUE", clutch)
    patch.set(DRIVETRAIN_INI, "AUTO_SHIFTER", "UP", up)
    patch.set(DRIVETRAIN_INI, "AUTO_SHIFTER", "DOWN", down)
    patch.set(DRIVETRAIN_INI, "DOWNSHIFT_PROTECTION", "OVERREV", limits.limiter + OVERREV_OFFSET)

    patch.set(ENGINE_INI, "COAST_REF", "RPM", limits.limiter)
    patch.set(ENGINE_INI, "DAMAGE", "RPM_THRESHOLD", limits.limiter + DAMAGE_RPM_MARGIN)
    patch.set(ENGINE_INI, "DAMAGE", "RPM_DAMAGE_K", RPM_DAMAGE_K)
    if engine.geometry.aspiration is Aspiration.NATURAL:
        patch.set(ENGINE_INI, "DAMAGE", "TURBO_BOOST_THRESHOLD", 0)
        patch.set(ENGINE_INI, "DAMAGE", "TURBO_DAMAGE_K", 0)
    else:
        max_boost = engine.geometry.aspiration_param("max_boost")
        patch.set(ENGINE_INI, "DAMAGE", "TURBO_BOOST_THRESHOLD", math.ceil(max_boost))
        patch.set(ENGINE_INI, "DAMAGE", "TURBO_DAMAGE_K", TURBO_DAMAGE_K)

    new_mass = _new_total_mass(engine, car, config)
    if new_mass is not None:
        patch.set(CAR_INI, "BASIC", "TOTALMASS", new_mass)
    logger.info(f"Planned {len(patch)} writes: clutch {clutch} Nm, shift {down}/{up} rpm")
    return patch


def validate_post_conditions(engine: CrateEngine, car: CarModel, config: TransplantConfig) -> None:
    """Cross-section invariants of the mutated car. Raises PostConditionFailed."""
    clutch = car.clutch.max_torque
    if not INT32_MIN <= clutch <= INT32_MAX:
        raise PostConditionFailed("clutch.max_torque out of range")

    try:
        engine.validate()
    except InvalidDonor as e:
        raise PostConditionFailed(f"donor invariant violated: {e.reason}") from e

    idle, limiter = car.idle, car.limiter
    down, up = car.auto_shifter.down, car.auto_shifter.up
    if not idle < down < up < limiter:
        raise PostConditionFailed(
            f"rpm ordering violated: idle {idle}, down {down}, up {up}, limiter {limiter}")

    torque = car.torque_curve.samples()
    power = car.power_curve.samples()
    peak_torque = max(y for _, y in torque)
    if clutch < CLUTCH_MIN_RATIO * peak_torque:
        raise PostConditionFailed(
            f"clutch.max_torque {clutch} below {CLUTCH_MIN_RATIO} x peak torque {peak_torque:g}")

    for curve in (torque, power):
        if any(y < 0 for _, y in curve):
            raise PostConditionFailed("negative curve sample")
    if not EngineDomain.is_unimodal([y for _, y in power]):
        raise PostConditionFailed("power curve is not unimodal")

    mismatch = EngineDomain.power_mismatch(torque, power)
    if mismatch is not None:
        rpm, error = mismatch
        raise PostConditionFailed(f"power curve deviates from torque at {rpm} rpm ({error:.2%})")


def write_badge(car_path: Path, image: bytes) -> Path:
    """Write the upgrade badge under the car's ui/ folder by temp + rename."""
    target = Path(car_path) / BADGE_PATH
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DataIOError("mkdir", str(target.parent), str(e)) from e
    atomic_write(target, image)
    logger.info(f"Wrote badge {target}")
    return target


# =============================================================================
# Entry Point
# =============================================================================

def transplant(donor_path: Union[str, Path], donor_kind: Union[DonorKind, str],
               car_path: Union[str, Path], config: Optional[TransplantConfig] = None,
               badge: Optional[bytes] = None) -> TransplantReport:
    """
    Transplant a donor engine into a car.

    Args:
        donor_path: Direct-export file or intermediate bundle archive.
        donor_kind: DonorKind or its tag ("direct-export", "intermediate-bundle").
        car_path: Car folder holding data/ or data.acd.
        config: Transplant options (defaults when None).
        badge: Optional PNG bytes for ui/upgrade.png.

    Returns:
        TransplantReport describing what changed.

    Raises:
        TransplantError: wrapping the failing stage's error as __cause__.
    """
    config = config or TransplantConfig()
    car_path = Path(car_path)
    folder = None
    try:
        engine = decode_donor(donor_path, donor_kind)
        folder = open_data_folder(car_path)
        car = CarModel.load(folder)

        check_compatibility(engine, car, config)
        patch = plan_patch(engine, car, config)
        changes = car.apply_patch(patch)
        validate_post_conditions(engine, car, config)

        files = car.stage(folder)
        descriptor = ProvenanceDescriptor.from_engine(engine)
        folder.write(PROVENANCE_FILENAME, descriptor.to_bytes())
        files.append(PROVENANCE_FILENAME)
        folder.commit()

        if badge is not None:
            write_badge(car_path, badge)
    except EngineCraneError as e:
        if folder is not None:
            folder.discard()
        kind = classify_error(e)
        logger.error(f"Transplant into {car_path.name} failed ({kind.value}): {e}")
        raise TransplantError(kind, e) from e

    numeric, peaks = _split_changes(changes)
    report = TransplantReport(
        donor_uuid=engine.uuid,
        donor_name=engine.name,
        donor_kind=engine.kind,
        files_written=files,
        sections_written=list(car.sections_written),
        changes=numeric,
        curve_peaks=peaks,
        provenance_hashes=descriptor.hex_hashes(),
    )
    logger.info(f"Transplanted {engine.name} into {car_path.name}: "
                f"{len(numeric)} field change(s), {len(files)} file(s)")
    return report
