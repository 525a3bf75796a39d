"""
Medication profile domain model.

High-level role
---------------
A MedicationProfile is the read-only record a prescribing request is built around:
dose form, one or more ingredients with a strength ratio, and optional package,
dispenser and dosage-constraint metadata. Everything downstream (strategy matching,
dual dosage, days supply) only ever reads these objects.
"""

from dataclasses import dataclass, field
from enum import Enum, auto


WEIGHT_UNITS = {"mg", "mcg", "g", "kg", "ng"}
VOLUME_UNITS = {"ml", "l"}

# Plural forms that do not follow the trailing "s" rule
_IRREGULAR_PLURALS = {
    "patches": "patch",
    "puffs": "puff",
}


def normalize_unit(unit: str | None) -> str:
    """
    Case-fold a unit and strip a trailing plural so "Tablets", "tablet" and "TABLET" compare equal.
    Weight and volume abbreviations (mg, mL, ...) are only case-folded.
    """
    if unit is None:
        return ""
    u = str(unit).strip().lower()
    if u in WEIGHT_UNITS or u in VOLUME_UNITS:
        return u
    if u in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[u]
    if len(u) > 2 and u.endswith("s") and not u.endswith("ss"):
        return u[:-1]
    return u


def units_match(left: str | None, right: str | None) -> bool:
    return normalize_unit(left) == normalize_unit(right)


class DoseFormFamily(Enum):
    """
    Coarse shape of a dose form; decides which dual-dosage branch applies.
    """
    COUNTABLE = auto()
    VOLUME = auto()
    TOPICAL = auto()
    SPRAY = auto()
    OTHER = auto()

    @classmethod
    def from_dose_form(cls, dose_form: str) -> "DoseFormFamily":
        """
        Classify a dose-form name, e.g. "Tablet" → COUNTABLE, "Oral Suspension" → VOLUME.
        """
        key = dose_form.strip().lower()
        if key in {"vial", "solution", "pen"} or any(
            token in key for token in ("solution", "suspension", "syrup", "elixir", "liquid")
        ):
            return cls.VOLUME
        if key in {"tablet", "capsule", "patch", "odt", "troche", "rectal suppository", "dropper"}:
            return cls.COUNTABLE
        if any(token in key for token in ("tablet", "capsule", "patch")):
            return cls.COUNTABLE
        if any(token in key for token in ("cream", "gel", "foam", "ointment", "lotion", "shampoo")):
            return cls.TOPICAL
        if "spray" in key:
            return cls.SPRAY
        return cls.OTHER


@dataclass(frozen=True)
class Quantity:
    value: float
    unit: str

    def __post_init__(self):
        if not isinstance(self.value, (int, float)) or isinstance(self.value, bool):
            raise ValueError(f"Invalid quantity value: {self.value!r}")
        if not isinstance(self.unit, str) or not self.unit.strip():
            raise ValueError(f"Invalid quantity unit: {self.unit!r}")

    def to_dict(self) -> dict:
        return {"value": self.value, "unit": self.unit}


@dataclass(frozen=True)
class Ratio:
    """
    Strength ratio, e.g. 200 mg / 1 mL. Both sides must be strictly positive.
    """
    numerator: Quantity
    denominator: Quantity

    def __post_init__(self):
        if self.numerator.value <= 0:
            raise ValueError(f"Invalid strength numerator: {self.numerator.value!r}")
        if self.denominator.value <= 0:
            raise ValueError(f"Invalid strength denominator: {self.denominator.value!r}")

    @property
    def per_unit(self) -> float:
        """Numerator amount per single denominator unit."""
        return self.numerator.value / self.denominator.value


@dataclass(frozen=True)
class Ingredient:
    name: str
    strength: Ratio


@dataclass(frozen=True)
class PackageInfo:
    quantity: float
    unit: str
    pack_size: int | None = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Invalid package quantity: {self.quantity!r}")
        if self.pack_size is not None and self.pack_size <= 0:
            raise ValueError(f"Invalid pack size: {self.pack_size!r}")

    @property
    def total(self) -> float:
        return self.quantity * (self.pack_size or 1)


@dataclass(frozen=True)
class DispenserInfo:
    """
    A metered dispenser: `conversion_ratio` dispenser units equal one `reference_unit`.
    """
    type: str
    unit: str
    plural_unit: str
    conversion_ratio: float
    reference_unit: str = "mL"

    def __post_init__(self):
        if self.conversion_ratio <= 0:
            raise ValueError(f"Invalid dispenser conversion ratio: {self.conversion_ratio!r}")

    def unit_label(self, value: float) -> str:
        return self.unit if value == 1 else self.plural_unit


@dataclass(frozen=True)
class DosageConstraints:
    min_dose: Quantity | None = None
    max_dose: Quantity | None = None
    step: float | None = None

    def __post_init__(self):
        if self.step is not None and self.step <= 0:
            raise ValueError(f"Invalid dosage step: {self.step!r}")
        if (
            self.min_dose is not None
            and self.max_dose is not None
            and units_match(self.min_dose.unit, self.max_dose.unit)
            and self.min_dose.value > self.max_dose.value
        ):
            raise ValueError(
                f"Invalid dosage constraints: min {self.min_dose.value!r} exceeds max {self.max_dose.value!r}"
            )


@dataclass(frozen=True)
class MedicationProfile:
    """
    A single medication as seen by the signature engine.

    `ingredients` must hold at least one entry. For a single-ingredient product its
    strength ratio drives every conversion; combination products are dosed by volume
    or count and never paired with a single weight.
    """
    id: str
    name: str
    dose_form: str
    ingredients: tuple[Ingredient, ...]
    is_active: bool = True
    package_info: PackageInfo | None = None
    dispenser_info: DispenserInfo | None = None
    dosage_constraints: DosageConstraints | None = None
    default_route: str | None = None
    default_frequency: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ValueError(f"Invalid medication id: {self.id!r}")
        if not self.dose_form or not str(self.dose_form).strip():
            raise ValueError(f"Invalid dose form: {self.dose_form!r}")
        # accept lists from callers; store as a tuple so the profile stays hashable
        object.__setattr__(self, "ingredients", tuple(self.ingredients))
        if not self.ingredients:
            raise ValueError(f"Invalid ingredients for {self.id!r}: at least one is required")

    @property
    def strength(self) -> Ratio:
        return self.ingredients[0].strength

    @property
    def is_multi_ingredient(self) -> bool:
        return len(self.ingredients) > 1

    @property
    def family(self) -> DoseFormFamily:
        return DoseFormFamily.from_dose_form(self.dose_form)
