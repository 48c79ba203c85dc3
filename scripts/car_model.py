#!/usr/bin/env python3
"""
Target Car Model
================

Typed views over the INI documents in a car's data folder.

Architecture:
    - Section views are dataclasses whose fields carry their INI key, kind and
      write precision as field metadata (see ini_field()). Every view has a
      load_from(docs) constructor and an apply_to(docs) writer; apply_to only
      touches keys whose value changed, so untouched lines stay byte-identical.
    - Registry pattern: views register with @register_section so the car model
      can route patch entries (file, section, key, value) to the owning view
      without knowing concrete classes.
    - CurveView wraps a Lut (inline in HEADER or external file) for the power
      and torque curves. The model replaces samples but never resamples. A car
      may lack TORQUE_CURVE; the first torque write adds it inline.
    - CarModel owns its documents for the duration of a transplant and stages
      changed files through the data-folder gateway in a fixed order.

Fields are mandatory unless declared optional; loading fails fast with
MissingSection / MissingField.
"""

import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Pattern, Tuple, Type

from crane_errors import DataFileNotFound, MissingSection
from crate_engine import CAR_INI, DRIVETRAIN_INI, ENGINE_INI, CurveWrite, EngineDomain, Patch
from ini_store import IniDocument
from lut_store import InlineSource, Lut

logger = logging.getLogger(__name__)

ELECTRONICS_INI = "electronics.ini"

DATA_FILES = (ENGINE_INI, DRIVETRAIN_INI, CAR_INI, ELECTRONICS_INI)
OPTIONAL_FILES = frozenset({ELECTRONICS_INI})


def ini_field(key: str, kind: type = float, precision: Optional[int] = None,
              optional: bool = False):
    """Dataclass field bound to an INI key."""
    metadata = {"key": key, "kind": kind, "precision": precision, "optional": optional}
    return field(default=None, metadata=metadata)


def _coerce(value: Any, kind: type) -> Any:
    if value is None:
        return None
    if kind is int:
        return int(round(value))
    if kind is float:
        return float(value)
    if kind is bool:
        return bool(value)
    if kind is str:
        return str(value)
    return value


# =============================================================================
# Section Registry
# =============================================================================

_SECTION_REGISTRY: Dict[Tuple[str, str], Type["IniSection"]] = {}


def register_section(cls: Type["IniSection"]) -> Type["IniSection"]:
    """Class decorator registering a section view under (FILE, SECTION)."""
    key = (cls.FILE, cls.SECTION)
    if key in _SECTION_REGISTRY:
        logger.warning(f"Overwriting section view for {key}: "
                       f"{_SECTION_REGISTRY[key].__name__} -> {cls.__name__}")
    _SECTION_REGISTRY[key] = cls
    return cls


def list_registered_sections() -> List[Tuple[str, str, str]]:
    """(file, section, view class name) for every registered view."""
    return [(f, s, cls.__name__) for (f, s), cls in _SECTION_REGISTRY.items()]


def section_class_for(file: str, section: str) -> Optional[Type["IniSection"]]:
    cls = _SECTION_REGISTRY.get((file, section))
    if cls is not None:
        return cls
    for (reg_file, _), candidate in _SECTION_REGISTRY.items():
        if reg_file == file and candidate.SECTION_PATTERN is not None \
                and candidate.SECTION_PATTERN.match(section):
            return candidate
    return None


# =============================================================================
# Section View Base
# =============================================================================

@dataclass
class IniSection:
    """Base for section views; subclasses add ini_field() attributes."""
    FILE: ClassVar[str] = ""
    SECTION: ClassVar[str] = ""
    OPTIONAL: ClassVar[bool] = False
    SECTION_PATTERN: ClassVar[Optional[Pattern]] = None

    section_name: str = field(default="", repr=False, compare=False)
    _loaded: Dict[str, Any] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.section_name:
            self.section_name = self.SECTION

    @classmethod
    def ini_fields(cls) -> list:
        return [f for f in fields(cls) if "key" in f.metadata]

    @classmethod
    def field_for_key(cls, key: str):
        for f in cls.ini_fields():
            if f.metadata["key"] == key:
                return f
        return None

    @classmethod
    def load_from(cls, docs: Dict[str, IniDocument], section: Optional[str] = None):
        """Read the view from its document; None for an absent optional section."""
        section = section or cls.SECTION
        doc = docs.get(cls.FILE)
        if doc is None or not doc.has_section(section):
            if cls.OPTIONAL:
                return None
            raise MissingSection(cls.FILE, section)

        values = {}
        for f in cls.ini_fields():
            key, kind = f.metadata["key"], f.metadata["kind"]
            if f.metadata["optional"]:
                values[f.name] = doc.get_optional(section, key, kind)
            else:
                values[f.name] = doc.get_required(section, key, kind)
        view = cls(section_name=section, **values)
        view._loaded = dict(values)
        return view

    @classmethod
    def create(cls, section: Optional[str] = None):
        """Fresh view for a section the car does not have yet."""
        return cls(section_name=section or cls.SECTION)

    def update_key(self, key: str, value: Any) -> Any:
        """Set the field bound to ``key``; returns the previous value."""
        f = self.field_for_key(key)
        if f is None:
            raise KeyError(f"[{self.section_name}] view has no field for {key}")
        old = getattr(self, f.name)
        setattr(self, f.name, _coerce(value, f.metadata["kind"]))
        return old

    def apply_to(self, docs: Dict[str, IniDocument]) -> List[str]:
        """Write changed fields; returns the keys written."""
        doc = docs[self.FILE]
        written = []
        for f in self.ini_fields():
            key = f.metadata["key"]
            value = getattr(self, f.name)
            if f.name in self._loaded and self._loaded[f.name] == value:
                continue
            if value is None:
                if f.metadata["optional"] and doc.remove(self.section_name, key):
                    written.append(key)
                continue
            doc.set(self.section_name, key, value, f.metadata["precision"])
            written.append(key)
        self._loaded = {f.name: getattr(self, f.name) for f in self.ini_fields()}
        return written


# =============================================================================
# engine.ini
# =============================================================================

@register_section
@dataclass
class EngineHeader(IniSection):
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "HEADER"
    version: int = ini_field("VERSION", int)


@register_section
@dataclass
class EngineData(IniSection):
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "ENGINE_DATA"
    altitude_sensitivity: float = ini_field("ALTITUDE_SENSITIVITY", float, 2)
    inertia: float = ini_field("INERTIA", float, 3)
    limiter: int = ini_field("LIMITER", int)
    limiter_hz: int = ini_field("LIMITER_HZ", int)
    minimum: int = ini_field("MINIMUM", int)


@register_section
@dataclass
class CoastRef(IniSection):
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "COAST_REF"
    rpm: int = ini_field("RPM", int)
    torque: float = ini_field("TORQUE", float)
    non_linearity: float = ini_field("NON_LINEARITY", float)


@register_section
@dataclass
class Damage(IniSection):
    """Over-rev and over-boost damage thresholds. Created when the car has none."""
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "DAMAGE"
    OPTIONAL: ClassVar[bool] = True
    turbo_boost_threshold: Optional[float] = ini_field("TURBO_BOOST_THRESHOLD", float, optional=True)
    turbo_damage_k: Optional[float] = ini_field("TURBO_DAMAGE_K", float, optional=True)
    rpm_threshold: Optional[int] = ini_field("RPM_THRESHOLD", int, optional=True)
    rpm_damage_k: Optional[float] = ini_field("RPM_DAMAGE_K", float, optional=True)


@register_section
@dataclass
class Thermal(IniSection):
    """Engine thermal parameters. Absent on cars whose donor carried none."""
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "THERMAL"
    OPTIONAL: ClassVar[bool] = True
    coolant_capacity: Optional[float] = ini_field("COOLANT_CAPACITY", float, 2, optional=True)
    oil_capacity: Optional[float] = ini_field("OIL_CAPACITY", float, 2, optional=True)
    heat_rejection: Optional[float] = ini_field("HEAT_REJECTION", float, 3, optional=True)


@register_section
@dataclass
class Turbo(IniSection):
    """One TURBO_n section; the index comes from the section name."""
    FILE: ClassVar[str] = ENGINE_INI
    SECTION: ClassVar[str] = "TURBO_0"
    OPTIONAL: ClassVar[bool] = True
    SECTION_PATTERN: ClassVar[Optional[Pattern]] = re.compile(r"^TURBO_\d+$")
    max_boost: float = ini_field("MAX_BOOST", float)
    wastegate: Optional[float] = ini_field("WASTEGATE", float, optional=True)
    display_max_boost: Optional[float] = ini_field("DISPLAY_MAX_BOOST", float, optional=True)
    reference_rpm: Optional[int] = ini_field("REFERENCE_RPM", int, optional=True)
    lag_up: Optional[float] = ini_field("LAG_UP", float, optional=True)
    lag_dn: Optional[float] = ini_field("LAG_DN", float, optional=True)
    gamma: Optional[float] = ini_field("GAMMA", float, optional=True)

    @property
    def index(self) -> int:
        return int(self.section_name.rsplit("_", 1)[1])


# =============================================================================
# drivetrain.ini
# =============================================================================

@register_section
@dataclass
class Traction(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "TRACTION"
    drive_type: str = ini_field("TYPE", str)


@register_section
@dataclass
class Clutch(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "CLUTCH"
    max_torque: int = ini_field("MAX_TORQUE", int)


@register_section
@dataclass
class AutoShifter(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "AUTO_SHIFTER"
    up: int = ini_field("UP", int)
    down: int = ini_field("DOWN", int)
    slip_threshold: float = ini_field("SLIP_THRESHOLD", float, 2)
    gas_cutoff_time: float = ini_field("GAS_CUTOFF_TIME", float, 2)


@register_section
@dataclass
class DownshiftProtection(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "DOWNSHIFT_PROTECTION"
    active: bool = ini_field("ACTIVE", bool)
    debug: bool = ini_field("DEBUG", bool)
    overrev: int = ini_field("OVERREV", int)
    lock_n: bool = ini_field("LOCK_N", bool)


@register_section
@dataclass
class Differential(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "DIFFERENTIAL"
    power: float = ini_field("POWER", float, 2)
    coast: float = ini_field("COAST", float, 2)
    preload: float = ini_field("PRELOAD", float)


@register_section
@dataclass
class Gearbox(IniSection):
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "GEARBOX"
    change_up_time: int = ini_field("CHANGE_UP_TIME", int)
    change_dn_time: int = ini_field("CHANGE_DN_TIME", int)
    auto_cutoff_time: int = ini_field("AUTO_CUTOFF_TIME", int)
    supports_shifter: bool = ini_field("SUPPORTS_SHIFTER", bool)


@register_section
@dataclass
class Gears(IniSection):
    """GEARS section; GEAR_1..GEAR_<COUNT> are read according to COUNT."""
    FILE: ClassVar[str] = DRIVETRAIN_INI
    SECTION: ClassVar[str] = "GEARS"
    count: int = ini_field("COUNT", int)
    reverse: float = ini_field("GEAR_R", float)
    final: float = ini_field("FINAL", float)
    ratios: List[float] = field(default_factory=list)

    @classmethod
    def load_from(cls, docs: Dict[str, IniDocument], section: Optional[str] = None):
        view = super().load_from(docs, section)
        doc = docs[cls.FILE]
        view.ratios = [doc.get_required(view.section_name, f"GEAR_{n}", float)
                       for n in range(1, view.count + 1)]
        view._loaded["ratios"] = list(view.ratios)
        return view

    def apply_to(self, docs: Dict[str, IniDocument]) -> List[str]:
        previous = self._loaded.get("ratios", [])
        self.count = len(self.ratios)
        written = super().apply_to(docs)
        doc = docs[self.FILE]
        for n, ratio in enumerate(self.ratios, start=1):
            if n <= len(previous) and previous[n - 1] == ratio:
                continue
            doc.set(self.section_name, f"GEAR_{n}", ratio)
            written.append(f"GEAR_{n}")
        for n in range(len(self.ratios) + 1, len(previous) + 1):
            doc.remove(self.section_name, f"GEAR_{n}")
            written.append(f"GEAR_{n}")
        self._loaded["ratios"] = list(self.ratios)
        return written


# =============================================================================
# car.ini
# =============================================================================

@register_section
@dataclass
class CarHeader(IniSection):
    FILE: ClassVar[str] = CAR_INI
    SECTION: ClassVar[str] = "HEADER"
    version: str = ini_field("VERSION", str)


@register_section
@dataclass
class CarInfo(IniSection):
    FILE: ClassVar[str] = CAR_INI
    SECTION: ClassVar[str] = "INFO"
    screen_name: str = ini_field("SCREEN_NAME", str)


@register_section
@dataclass
class CarBasic(IniSection):
    FILE: ClassVar[str] = CAR_INI
    SECTION: ClassVar[str] = "BASIC"
    total_mass: float = ini_field("TOTALMASS", float)


@register_section
@dataclass
class CarFuel(IniSection):
    FILE: ClassVar[str] = CAR_INI
    SECTION: ClassVar[str] = "FUEL"
    fuel: float = ini_field("FUEL", float)
    max_fuel: float = ini_field("MAX_FUEL", float)
    consumption: float = ini_field("CONSUMPTION", float, 4)


# =============================================================================
# electronics.ini
# =============================================================================

@register_section
@dataclass
class Abs(IniSection):
    FILE: ClassVar[str] = ELECTRONICS_INI
    SECTION: ClassVar[str] = "ABS"
    OPTIONAL: ClassVar[bool] = True
    present: bool = ini_field("PRESENT", bool)
    active: bool = ini_field("ACTIVE", bool)
    slip_ratio_limit: Optional[float] = ini_field("SLIP_RATIO_LIMIT", float, optional=True)


@register_section
@dataclass
class TractionControl(IniSection):
    FILE: ClassVar[str] = ELECTRONICS_INI
    SECTION: ClassVar[str] = "TRACTION_CONTROL"
    OPTIONAL: ClassVar[bool] = True
    present: bool = ini_field("PRESENT", bool)
    active: bool = ini_field("ACTIVE", bool)
    slip_ratio_limit: Optional[float] = ini_field("SLIP_RATIO_LIMIT", float, optional=True)


# =============================================================================
# Curves
# =============================================================================

class CurveView:
    """Power or torque curve referenced from engine.ini [HEADER]."""

    CURVES = {"power": "POWER_CURVE", "torque": "TORQUE_CURVE"}

    def __init__(self, name: str, header_key: str, lut: Lut, original: bytes):
        self.name = name
        self.header_key = header_key
        self.lut = lut
        self._original = original

    @classmethod
    def load(cls, name: str, doc: IniDocument, gateway) -> "CurveView":
        header_key = cls.CURVES[name]
        lut = Lut.load("HEADER", header_key, doc, gateway)
        original = b"" if lut.is_inline else lut.serialize_external()
        return cls(name, header_key, lut, original)

    @classmethod
    def create_inline(cls, name: str) -> "CurveView":
        """Empty inline curve for a header key the car does not have yet."""
        header_key = cls.CURVES[name]
        return cls(name, header_key, Lut([], InlineSource("HEADER", header_key)), b"")

    @property
    def label(self) -> str:
        if self.lut.is_inline:
            return f"{ENGINE_INI}:HEADER.{self.header_key}"
        return self.lut.name

    def samples(self):
        return self.lut.samples()

    def replace(self, samples, precision: Optional[int], doc: IniDocument):
        """Swap in new samples; inline tables are written into the header at once."""
        old = self.lut.update(samples, precision)
        if self.lut.is_inline and old != self.lut.samples():
            self.lut.apply_to(doc, None)
        return old

    def stage(self, gateway) -> bool:
        """Stage an external table if its bytes changed. Returns True when staged."""
        if self.lut.is_inline:
            return False
        data = self.lut.serialize_external()
        if data == self._original:
            return False
        self.lut.apply_to(None, gateway)
        return True


# =============================================================================
# Car Model
# =============================================================================

class CarModel:
    """All typed views of one car, plus the documents they write into."""

    def __init__(self, docs: Dict[str, IniDocument], originals: Dict[str, bytes],
                 views: Dict[Tuple[str, str], IniSection], curves: Dict[str, CurveView]):
        self.docs = docs
        self._originals = originals
        self._views = views
        self.curves = curves
        self.sections_written: List[str] = []

    @classmethod
    def load(cls, folder) -> "CarModel":
        docs: Dict[str, IniDocument] = {}
        originals: Dict[str, bytes] = {}
        for name in DATA_FILES:
            try:
                data = folder.read(name)
            except DataFileNotFound:
                if name in OPTIONAL_FILES:
                    logger.debug(f"Optional {name} not present")
                    continue
                raise
            docs[name] = IniDocument.load(data, artifact=name)
            originals[name] = data

        views: Dict[Tuple[str, str], IniSection] = {}
        for (file, section), view_cls in _SECTION_REGISTRY.items():
            doc = docs.get(file)
            if view_cls.SECTION_PATTERN is not None:
                for name in (doc.sections() if doc else []):
                    if view_cls.SECTION_PATTERN.match(name):
                        views[(file, name)] = view_cls.load_from(docs, name)
                continue
            view = view_cls.load_from(docs)
            if view is not None:
                views[(file, section)] = view

        engine_doc = docs[ENGINE_INI]
        curves = {"power": CurveView.load("power", engine_doc, folder)}
        if engine_doc.get("HEADER", "TORQUE_CURVE") is not None:
            curves["torque"] = CurveView.load("torque", engine_doc, folder)
        else:
            logger.info("Car has no TORQUE_CURVE; one will be written inline")
        logger.info(f"Loaded car model: {len(views)} sections, "
                    f"power curve {len(curves['power'].samples())} points")
        return cls(docs, originals, views, curves)

    # ── Views ────────────────────────────────────────────────────────────

    def view(self, file: str, section: str) -> Optional[IniSection]:
        return self._views.get((file, section))

    def section_names(self, file: str) -> List[str]:
        doc = self.docs.get(file)
        return doc.sections() if doc is not None else []

    @property
    def engine_data(self) -> EngineData:
        return self._views[(ENGINE_INI, "ENGINE_DATA")]

    @property
    def thermal(self) -> Optional[Thermal]:
        return self._views.get((ENGINE_INI, "THERMAL"))

    @property
    def turbos(self) -> List[Turbo]:
        found = [v for (f, _), v in self._views.items() if f == ENGINE_INI and isinstance(v, Turbo)]
        return sorted(found, key=lambda t: t.index)

    @property
    def clutch(self) -> Clutch:
        return self._views[(DRIVETRAIN_INI, "CLUTCH")]

    @property
    def auto_shifter(self) -> AutoShifter:
        return self._views[(DRIVETRAIN_INI, "AUTO_SHIFTER")]

    @property
    def downshift_protection(self) -> DownshiftProtection:
        return self._views[(DRIVETRAIN_INI, "DOWNSHIFT_PROTECTION")]

    @property
    def differential(self) -> Differential:
        return self._views[(DRIVETRAIN_INI, "DIFFERENTIAL")]

    @property
    def gears(self) -> Gears:
        return self._views[(DRIVETRAIN_INI, "GEARS")]

    @property
    def basic(self) -> CarBasic:
        return self._views[(CAR_INI, "BASIC")]

    @property
    def damage(self) -> Optional[Damage]:
        return self._views.get((ENGINE_INI, "DAMAGE"))

    @property
    def coast_ref(self) -> CoastRef:
        return self._views[(ENGINE_INI, "COAST_REF")]

    @property
    def fuel(self) -> CarFuel:
        return self._views[(CAR_INI, "FUEL")]

    @property
    def abs(self) -> Optional[Abs]:
        return self._views.get((ELECTRONICS_INI, "ABS"))

    @property
    def power_curve(self) -> CurveView:
        return self.curves["power"]

    @property
    def torque_curve(self) -> Optional[CurveView]:
        return self.curves.get("torque")

    @property
    def idle(self) -> int:
        return self.engine_data.minimum

    @property
    def limiter(self) -> int:
        return self.engine_data.limiter

    def peak_power(self) -> Tuple[int, float]:
        return EngineDomain.peak(self.power_curve.samples())

    # ── Mutation ─────────────────────────────────────────────────────────

    def _mark_written(self, label: str) -> None:
        if label not in self.sections_written:
            self.sections_written.append(label)

    def apply_patch(self, patch: Patch) -> Dict[str, Tuple[Any, Any]]:
        """
        Route every patch entry to its section view and write the views back
        into their documents. Returns label -> (old, new) for changed values.
        """
        changes: Dict[str, Tuple[Any, Any]] = {}
        touched: List[IniSection] = []

        for entry in patch:
            if entry.removes_section:
                doc = self.docs.get(entry.file)
                if doc is not None and doc.remove_section(entry.section):
                    self._views.pop((entry.file, entry.section), None)
                    self._mark_written(f"{entry.file}:[{entry.section}]")
                    logger.debug(f"Removed [{entry.section}] from {entry.file}")
                continue

            view = self._views.get((entry.file, entry.section))
            if view is None:
                view_cls = section_class_for(entry.file, entry.section)
                if view_cls is None or entry.file not in self.docs:
                    raise MissingSection(entry.file, entry.section)
                view = view_cls.create(entry.section)
                self._views[(entry.file, entry.section)] = view
                logger.debug(f"Creating [{entry.section}] in {entry.file}")

            old = view.update_key(entry.key, entry.value)
            new = getattr(view, view.field_for_key(entry.key).name)
            if old != new:
                changes[entry.label] = (old, new)
            if not any(v is view for v in touched):
                touched.append(view)

        for view in touched:
            if view.apply_to(self.docs):
                self._mark_written(f"{view.FILE}:[{view.section_name}]")

        for write in patch.curves:
            changes.update(self._apply_curve(write))
        return changes

    def _apply_curve(self, write: CurveWrite) -> Dict[str, Tuple[Any, Any]]:
        curve = self.curves.get(write.curve)
        if curve is None:
            curve = self.curves[write.curve] = CurveView.create_inline(write.curve)
        old = curve.replace(write.samples, write.precision, self.docs[ENGINE_INI])
        new = curve.samples()
        if old == new:
            return {}
        self._mark_written(f"{ENGINE_INI}:[HEADER]" if curve.lut.is_inline else curve.lut.name)
        return {curve.label: (old, new)}

    def changed_files(self) -> List[str]:
        return [name for name in DATA_FILES
                if name in self.docs and self.docs[name].serialize() != self._originals[name]]

    def stage(self, folder) -> List[str]:
        """
        Stage changed documents and external curve files into the gateway.
        Order: engine.ini, curve files, drivetrain.ini, car.ini, electronics.ini.
        """
        staged: List[str] = []
        changed = set(self.changed_files())

        def stage_doc(name: str) -> None:
            if name in changed:
                folder.write(name, self.docs[name].serialize())
                staged.append(name)

        stage_doc(ENGINE_INI)
        for curve in self.curves.values():
            if curve.stage(folder):
                staged.append(curve.lut.name)
        for name in (DRIVETRAIN_INI, CAR_INI, ELECTRONICS_INI):
            stage_doc(name)
        logger.info(f"Staged {len(staged)} file(s): {', '.join(staged) or 'none'}")
        return staged
