#!/usr/bin/env python3
"""
Crate Engine Record
===================

Normalised, source-agnostic description of a donor engine. Both donor
decoders produce a CrateEngine; the transplant engine consumes nothing else.

Architecture:
    - CrateEngine: frozen dataclass, immutable once built. Equality ignores
      the provenance hashes so two decodes of equivalent donors compare equal.
    - EngineDomain: shared constants and curve helpers (unit conversions,
      torque -> power, peak detection), in the style of a static namespace.
    - Patch: ordered list of (file, section, key, value) writes plus curve
      writes. CrateEngine.to_target_sections() produces the donor-driven part
      of a patch without touching the car.

Units:
    torque Nm, power kW, speeds RPM, displacement cc, bore/stroke mm, mass kg.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from crane_errors import InvalidDonor
from lut_store import interpolate

logger = logging.getLogger(__name__)

Number = Union[int, float]
Curve = Tuple[Tuple[int, float], ...]

ENGINE_INI = "engine.ini"
CAR_INI = "car.ini"
DRIVETRAIN_INI = "drivetrain.ini"

_TURBO_SECTION = re.compile(r"^TURBO_(\d+)$")


# =============================================================================
# Enums
# =============================================================================

class DonorKind(Enum):
    """Where a crate engine came from."""
    INTERMEDIATE_BUNDLE = "intermediate-bundle"
    DIRECT_EXPORT = "direct-export"


class Aspiration(Enum):
    NATURAL = "naturalAspirated"
    TURBO = "turbo"
    SUPERCHARGED = "supercharged"

    @classmethod
    def parse(cls, text: str) -> "Aspiration":
        """
        Accept the canonical tags as well as sandbox spellings such as
        "Aspiration_Natural" or "Aspiration_Turbo_1".
        """
        lowered = text.strip().lower()
        for member in cls:
            if lowered == member.value.lower():
                return member
        if "natural" in lowered or lowered in ("na", "n/a"):
            return cls.NATURAL
        if "turbo" in lowered:
            return cls.TURBO
        if "super" in lowered or "charger" in lowered:
            return cls.SUPERCHARGED
        raise ValueError(f"Unknown aspiration: {text!r}")


# =============================================================================
# Domain Knowledge
# =============================================================================

class EngineDomain:
    """
    Shared engine constants and curve helpers.

    All methods are static; this is a namespace, not a service.
    """

    RPM_TO_RAD_S = math.pi / 30    # RPM -> rad/s
    LBFT_TO_NM = 1.3558179483
    CURVE_LIMITER_TOLERANCE_RPM = 250
    POWER_TOLERANCE = 0.01         # relative, torque * omega vs power
    POWER_PRECISION = 3            # kW decimals written to the car

    @staticmethod
    def torque_to_power_kw(torque_nm: float, rpm: float) -> float:
        return torque_nm * rpm * EngineDomain.RPM_TO_RAD_S / 1000.0

    @staticmethod
    def power_curve_from_torque(torque_curve: Sequence[Tuple[int, float]],
                                precision: Optional[int] = None) -> List[Tuple[int, float]]:
        out = []
        for rpm, torque in torque_curve:
            power = EngineDomain.torque_to_power_kw(torque, rpm)
            out.append((rpm, round(power, precision) if precision is not None else power))
        return out

    @staticmethod
    def peak(curve: Sequence[Tuple[int, float]]) -> Optional[Tuple[int, float]]:
        """(x, y) of the first maximum, or None for an empty curve."""
        if not curve:
            return None
        best = curve[0]
        for point in curve[1:]:
            if point[1] > best[1]:
                best = point
        return best

    @staticmethod
    def is_unimodal(values: Sequence[float]) -> bool:
        """Non-decreasing up to the maximum, non-increasing after it."""
        if not values:
            return True
        peak_index = max(range(len(values)), key=lambda i: values[i])
        rising = all(a <= b for a, b in zip(values[:peak_index], values[1:peak_index + 1]))
        falling = all(a >= b for a, b in zip(values[peak_index:], values[peak_index + 1:]))
        return rising and falling

    @staticmethod
    def power_mismatch(torque_curve: Sequence[Tuple[int, float]],
                       power_curve: Sequence[Tuple[int, float]]) -> Optional[Tuple[int, float]]:
        """
        First (rpm, relative error) where power deviates from torque * omega
        by more than POWER_TOLERANCE, sampled at the power curve's RPMs.
        """
        for rpm, power in power_curve:
            if power <= 0:
                continue
            torque = interpolate(torque_curve, rpm)
            expected = EngineDomain.torque_to_power_kw(torque, rpm)
            error = abs(power - expected) / power
            if error >= EngineDomain.POWER_TOLERANCE:
                return rpm, error
        return None


# =============================================================================
# Record
# =============================================================================

@dataclass(frozen=True)
class EngineGeometry:
    """Physical layout. Measurements the donor does not carry are None."""
    displacement_cc: Optional[float] = None
    cylinders: Optional[int] = None
    bore_mm: Optional[float] = None
    stroke_mm: Optional[float] = None
    compression: Optional[float] = None
    aspiration: Aspiration = Aspiration.NATURAL
    aspiration_params: Tuple[Tuple[str, float], ...] = ()

    def aspiration_param(self, name: str) -> Optional[float]:
        return dict(self.aspiration_params).get(name)


@dataclass(frozen=True)
class EngineLimits:
    idle: int
    limiter: int
    no_lift_shift: Optional[int] = None
    minimum: Optional[int] = None


@dataclass(frozen=True)
class FuelParams:
    consumption: Optional[float] = None
    base_rate: Optional[float] = None
    kind: Optional[str] = None
    tank_hint: Optional[float] = None


@dataclass(frozen=True)
class ThermalParams:
    coolant_capacity: Optional[float] = None
    oil_capacity: Optional[float] = None
    heat_rejection: Optional[float] = None


@dataclass(frozen=True)
class CrateEngine:
    """
    Canonical donor engine.

    Attributes:
        kind: Which decoder produced the record.
        uuid: Donor engine UUID as found in the source.
        name / family: Display names.
        version: Monotonic source version number.
        geometry: Displacement, cylinders, aspiration and friends.
        torque_curve: ((rpm, Nm), ...), strictly increasing rpm.
        power_curve: ((rpm, kW), ...), consistent with torque_curve.
        limits: Idle / limiter / no-lift-shift / minimum RPM.
        fuel / thermal: Optional parameter groups; thermal is None when
                        the donor carries no thermal data at all.
        dry_mass: kg, if known.
        inertia: Crank inertia in kg m^2, if the source declares it.
        peak_power_rpm: Peak power RPM as declared by the source, if any.
        provenance: Positional SHA-256 digests of the donor artifacts
                    (None where an artifact was absent). Not part of equality.
    """
    kind: DonorKind
    uuid: str
    name: str
    family: str
    version: int
    geometry: EngineGeometry
    torque_curve: Curve
    power_curve: Curve
    limits: EngineLimits
    fuel: FuelParams = FuelParams()
    thermal: Optional[ThermalParams] = None
    dry_mass: Optional[float] = None
    inertia: Optional[float] = None
    peak_power_rpm: Optional[int] = None
    provenance: Tuple[Optional[bytes], ...] = field(default=(), compare=False)

    @classmethod
    def build(cls, *, kind: DonorKind, uuid: str, name: str, family: str, version: int,
              geometry: EngineGeometry, torque_curve: Sequence[Tuple[Number, Number]],
              limits: EngineLimits, power_curve: Optional[Sequence[Tuple[Number, Number]]] = None,
              fuel: Optional[FuelParams] = None, thermal: Optional[ThermalParams] = None,
              dry_mass: Optional[float] = None, inertia: Optional[float] = None,
              peak_power_rpm: Optional[int] = None,
              provenance: Sequence[Optional[bytes]] = ()) -> "CrateEngine":
        """Normalise sequences to tuples and derive the power curve when absent."""
        torque = tuple((int(x), y) for x, y in torque_curve)
        if power_curve is None:
            power = tuple(EngineDomain.power_curve_from_torque(torque))
        else:
            power = tuple((int(x), y) for x, y in power_curve)
        return cls(
            kind=kind,
            uuid=uuid,
            name=name,
            family=family,
            version=int(version),
            geometry=geometry,
            torque_curve=torque,
            power_curve=power,
            limits=limits,
            fuel=fuel or FuelParams(),
            thermal=thermal,
            dry_mass=dry_mass,
            inertia=inertia,
            peak_power_rpm=peak_power_rpm,
            provenance=tuple(provenance),
        )

    # ── Invariants ───────────────────────────────────────────────────────

    def validate(self) -> "CrateEngine":
        """Raise InvalidDonor on the first violated invariant; return self."""
        limits = self.limits
        if limits.idle <= 0:
            raise InvalidDonor("idle<=0")
        if limits.limiter <= limits.idle:
            raise InvalidDonor("limiter<=idle")
        if self.inertia is not None and self.inertia <= 0:
            raise InvalidDonor("inertia<=0")
        if not self.torque_curve:
            raise InvalidDonor("empty torque curve")
        if not self.power_curve:
            raise InvalidDonor("empty power curve")

        ceiling = limits.limiter + EngineDomain.CURVE_LIMITER_TOLERANCE_RPM
        for curve in (self.torque_curve, self.power_curve):
            previous = None
            for x, y in curve:
                if x > ceiling:
                    raise InvalidDonor("curve x beyond limiter")
                if x < 0 or y < 0:
                    raise InvalidDonor("negative curve sample")
                if previous is not None and x <= previous:
                    raise InvalidDonor("curve x not increasing")
                previous = x

        has_params = bool(self.geometry.aspiration_params)
        if self.geometry.aspiration is Aspiration.NATURAL and has_params:
            raise InvalidDonor("aspiration parameters present for naturalAspirated")
        if self.geometry.aspiration is not Aspiration.NATURAL \
                and self.geometry.aspiration_param("max_boost") is None:
            raise InvalidDonor("aspiration parameters missing")

        if EngineDomain.power_mismatch(self.torque_curve, self.power_curve) is not None:
            raise InvalidDonor("power curve inconsistent with torque")

        for digest in self.provenance:
            if digest is not None and len(digest) != 32:
                raise InvalidDonor("bad provenance hash")
        return self

    # ── Derived values ───────────────────────────────────────────────────

    def peak_torque(self) -> float:
        return EngineDomain.peak(self.torque_curve)[1]

    def resolved_peak_power_rpm(self) -> int:
        """Declared peak-power RPM, falling back to the power curve maximum."""
        if self.peak_power_rpm is not None:
            return self.peak_power_rpm
        return EngineDomain.peak(self.power_curve)[0]

    # ── Patch ────────────────────────────────────────────────────────────

    def to_target_sections(self, car) -> "Patch":
        """
        Donor-driven writes for ``car``. Pure: the car is only inspected.

        ``car`` needs ``section_names(file)`` so optional sections the donor
        has no data for can be removed rather than left stale.
        """
        patch = Patch()
        patch.set(ENGINE_INI, "ENGINE_DATA", "LIMITER", self.limits.limiter)
        patch.set(ENGINE_INI, "ENGINE_DATA", "MINIMUM", self.limits.idle)
        if self.inertia is not None:
            patch.set(ENGINE_INI, "ENGINE_DATA", "INERTIA", self.inertia)

        engine_sections = car.section_names(ENGINE_INI)
        if self.thermal is not None:
            for key, value in (("COOLANT_CAPACITY", self.thermal.coolant_capacity),
                               ("OIL_CAPACITY", self.thermal.oil_capacity),
                               ("HEAT_REJECTION", self.thermal.heat_rejection)):
                if value is not None:
                    patch.set(ENGINE_INI, "THERMAL", key, value)
        elif "THERMAL" in engine_sections:
            patch.remove_section(ENGINE_INI, "THERMAL")

        turbo_sections = [s for s in engine_sections if _TURBO_SECTION.match(s)]
        if self.geometry.aspiration is Aspiration.NATURAL:
            for section in turbo_sections:
                patch.remove_section(ENGINE_INI, section)
            if "BOV" in engine_sections:
                patch.remove_section(ENGINE_INI, "BOV")
        else:
            max_boost = self.geometry.aspiration_param("max_boost")
            reference_rpm = self.geometry.aspiration_param("reference_rpm")
            if max_boost is not None:
                patch.set(ENGINE_INI, "TURBO_0", "MAX_BOOST", max_boost)
                patch.set(ENGINE_INI, "TURBO_0", "WASTEGATE", max_boost)
                patch.set(ENGINE_INI, "TURBO_0", "DISPLAY_MAX_BOOST", max_boost)
            if reference_rpm is not None:
                patch.set(ENGINE_INI, "TURBO_0", "REFERENCE_RPM", int(round(reference_rpm)))
            for section in turbo_sections:
                if section != "TURBO_0":
                    patch.remove_section(ENGINE_INI, section)

        if self.fuel.consumption is not None:
            patch.set(CAR_INI, "FUEL", "CONSUMPTION", self.fuel.consumption)
        if self.fuel.tank_hint is not None:
            patch.set(CAR_INI, "FUEL", "MAX_FUEL", self.fuel.tank_hint)

        logger.debug(f"{self.uuid}: {len(patch)} donor-driven patch entries")
        return patch


# =============================================================================
# Patch
# =============================================================================

@dataclass(frozen=True)
class PatchEntry:
    """A single write. ``key is None and value is None`` removes the section."""
    file: str
    section: str
    key: Optional[str]
    value: Any

    @property
    def removes_section(self) -> bool:
        return self.key is None and self.value is None

    @property
    def label(self) -> str:
        if self.removes_section:
            return f"{self.file}:[{self.section}]"
        return f"{self.file}:{self.section}.{self.key}"


@dataclass(frozen=True)
class CurveWrite:
    """Replacement samples for one of the car's curves ("torque" or "power")."""
    curve: str
    samples: Tuple[Tuple[int, Number], ...]
    precision: Optional[int] = None


@dataclass
class Patch:
    """Ordered set of writes an ideal transplant would perform."""
    entries: List[PatchEntry] = field(default_factory=list)
    curves: List[CurveWrite] = field(default_factory=list)

    def set(self, file: str, section: str, key: str, value: Any) -> None:
        self.entries = [e for e in self.entries
                        if not (e.file == file and e.section == section and e.key == key)]
        self.entries.append(PatchEntry(file, section, key, value))

    def remove_section(self, file: str, section: str) -> None:
        self.entries = [e for e in self.entries
                        if not (e.file == file and e.section == section)]
        self.entries.append(PatchEntry(file, section, None, None))

    def write_curve(self, curve: str, samples: Sequence[Tuple[int, Number]],
                    precision: Optional[int] = None) -> None:
        self.curves = [c for c in self.curves if c.curve != curve]
        self.curves.append(CurveWrite(curve, tuple((int(x), y) for x, y in samples), precision))

    def value(self, file: str, section: str, key: str) -> Any:
        for entry in self.entries:
            if (entry.file, entry.section, entry.key) == (file, section, key):
                return entry.value
        return None

    def curve(self, name: str) -> Optional[CurveWrite]:
        for write in self.curves:
            if write.curve == name:
                return write
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {e.label: e.value for e in self.entries}

    def __iter__(self) -> Iterator[PatchEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries) + len(self.curves)


def normalise_aspiration_params(params: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, float], ...]:
    """
    Canonical sorted (snake_case name, float) pairs.

    Accepts "MaxBoost", "MAX_BOOST", "max_boost" and similar spellings.
    """
    if not params:
        return ()
    out: Dict[str, float] = {}
    for raw_name, value in params.items():
        name = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", str(raw_name)).lower()
        out[name] = float(value)
    return tuple(sorted(out.items()))
