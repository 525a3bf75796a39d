"""
Unit and dosage arithmetic.

High-level role
---------------
Pure functions that turn a dose into its paired weight/volume (or weight/count)
representation, enforce the quarter-unit clinical floor for countable forms, and
work out how many whole days a dispensed package lasts.

Insufficient data is never an exception here: every calculation returns `None`
when the profile lacks what it needs, so interactive callers can show a soft message.
"""

import math
from dataclasses import dataclass

from stairval.notepad import Notepad

from .context import DoseInput
from .medication import (
    DoseFormFamily,
    DosageConstraints,
    MedicationProfile,
    Quantity,
    units_match,
)
from .tables import FrequencyDefinition, ReferenceTables, default_tables

# Smallest countable dose that may ever be rendered (one quarter of a unit)
QUARTER_FLOOR = 0.25

FRACTION_WORDS = {
    0.25: "1/4",
    0.5: "1/2",
    0.75: "3/4",
}

SPLITTING_INSTRUCTIONS = {
    0.25: "Split tablet into quarters, take one piece",
    0.5: "Split tablet in half",
    0.75: "Split tablet into quarters, take three pieces",
}


@dataclass(frozen=True)
class DualDosage:
    """
    One physical dose in two units. For countable forms `volume_based` holds the
    unit count (e.g. 0.5 tablet) rather than a volume.
    """
    weight_based: Quantity
    volume_based: Quantity

    def ordered(self, entered_unit: str) -> tuple[Quantity, Quantity]:
        """(primary, secondary): the side matching the entered unit comes first."""
        if units_match(entered_unit, self.volume_based.unit):
            return self.volume_based, self.weight_based
        return self.weight_based, self.volume_based


def describe_quantity(quantity: Quantity) -> str:
    return f"{format_number(quantity.value)} {quantity.unit}"


def format_number(value: float) -> str:
    """
    Render a number without trailing zeros: 1.0 → "1", 0.50 → "0.5", 0.125 → "0.125".
    """
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4f}".rstrip("0").rstrip(".")


# ---- countable-unit helpers ----

def apply_quarter_floor(quantity: float) -> float:
    """Raise anything below a quarter unit (including zero) to exactly 0.25."""
    return QUARTER_FLOOR if quantity < QUARTER_FLOOR else quantity


def snap_to_quarter(quantity: float) -> float:
    """Nearest 0.25 increment, halves rounding up."""
    return math.floor(quantity * 4 + 0.5) / 4


def quantize_to_step(quantity: float, step: float) -> float:
    """
    Nearest multiple of `step`. A result of zero is raised to one step, so the
    quarter floor applied beforehand is never undone.
    """
    stepped = round(math.floor(quantity / step + 0.5) * step, 10)
    return stepped if stepped > 0 else step


def format_countable_dose(quantity: float, singular: str, plural: str) -> str:
    """
    Mixed-number word form for a countable dose.

    0.5 → "1/2 tablet", 1 → "1 tablet", 1.5 → "1 and 1/2 tablets", 3 → "3 tablets".
    Quantities that are not on a quarter increment fall back to decimals.
    """
    whole = int(quantity)
    fraction = round(quantity - whole, 4)
    if fraction == 0:
        return f"{whole} {singular if whole == 1 else plural}"
    if fraction not in FRACTION_WORDS:
        return f"{format_number(quantity)} {plural}"
    if whole == 0:
        return f"{FRACTION_WORDS[fraction]} {singular}"
    return f"{whole} and {FRACTION_WORDS[fraction]} {plural}"


def splitting_instruction(quantity: float) -> str | None:
    fraction = round(quantity - int(quantity), 4)
    return SPLITTING_INSTRUCTIONS.get(fraction)


# ---- dual dosage ----

def calculate_dual_dosage(profile: MedicationProfile, dose: DoseInput | Quantity) -> DualDosage | None:
    """
    Pair a dose with its equivalent in the other unit of the strength ratio. Combination
    products have no single paired weight and always give None.

    Volume-dispensed forms convert between weight and volume and honour min/max
    constraints given in either unit. Countable and topical forms convert between
    weight and unit count; a weight input is turned into a count that respects the
    quarter floor, the quarter snap and then any configured dosage step, and the weight
    is recomputed whenever the count moved off the entered amount.
    """
    if profile.is_multi_ingredient:
        return None
    strength = profile.strength
    weight_unit = strength.numerator.unit
    volume_unit = strength.denominator.unit
    per_unit = strength.per_unit

    if profile.family is DoseFormFamily.VOLUME:
        if units_match(dose.unit, weight_unit):
            weight = dose.value
            volume = round(weight / per_unit, 2)
        elif units_match(dose.unit, volume_unit):
            volume = dose.value
            weight = round(volume * per_unit, 2)
        else:
            return None
        weight, volume = _clamp_to_constraints(
            profile.dosage_constraints, weight, weight_unit, volume, volume_unit, per_unit
        )
        return DualDosage(Quantity(weight, weight_unit), Quantity(volume, volume_unit))

    if units_match(dose.unit, volume_unit):
        count = dose.value
        weight = round(count * per_unit, 2)
    elif units_match(dose.unit, weight_unit):
        exact = dose.value / per_unit
        count = snap_to_quarter(apply_quarter_floor(exact))
        step = profile.dosage_constraints.step if profile.dosage_constraints else None
        if step:
            count = quantize_to_step(count, step)
        weight = dose.value if math.isclose(count, exact) else round(count * per_unit, 2)
    else:
        return None
    return DualDosage(Quantity(weight, weight_unit), Quantity(count, volume_unit))


def ingredient_breakdown(
    profile: MedicationProfile, dose: DoseInput | Quantity
) -> tuple[tuple[str, Quantity], ...] | None:
    """
    Amount of each ingredient in one dose given by volume, count or dispenser unit,
    e.g. 5 mL of a 400 mg + 57 mg per 5 mL suspension gives 400 mg and 57 mg.

    Returns None when the dose unit is not the denominator of every strength ratio.
    """
    amount, unit = dose.value, dose.unit
    dispenser = profile.dispenser_info
    if dispenser is not None and (units_match(unit, dispenser.unit) or units_match(unit, dispenser.plural_unit)):
        amount, unit = amount / dispenser.conversion_ratio, dispenser.reference_unit

    breakdown = []
    for ingredient in profile.ingredients:
        strength = ingredient.strength
        if not units_match(unit, strength.denominator.unit):
            return None
        breakdown.append((ingredient.name, Quantity(round(amount * strength.per_unit, 2), strength.numerator.unit)))
    return tuple(breakdown)


def _clamp_to_constraints(
    constraints: DosageConstraints | None,
    weight: float,
    weight_unit: str,
    volume: float,
    volume_unit: str,
    per_unit: float,
) -> tuple[float, float]:
    if constraints is None:
        return weight, volume
    for bound, pick in ((constraints.min_dose, max), (constraints.max_dose, min)):
        if bound is None:
            continue
        if units_match(bound.unit, weight_unit):
            clamped = pick(weight, bound.value)
            if clamped != weight:
                weight = clamped
                volume = round(weight / per_unit, 2)
        elif units_match(bound.unit, volume_unit):
            clamped = pick(volume, bound.value)
            if clamped != volume:
                volume = clamped
                weight = round(volume * per_unit, 2)
    return weight, volume


# ---- days supply ----

def administrations_per_day(frequency: FrequencyDefinition) -> float:
    return frequency.count / frequency.period_in_days


def calculate_days_supply(
    profile: MedicationProfile,
    dose: DoseInput | Quantity,
    frequency_key: str,
    tables: ReferenceTables | None = None,
) -> int | None:
    """
    Whole days the dispensed package lasts at the prescribed dose and frequency.

    Returns None when the profile has no package info, the frequency key is unknown,
    the frequency resolves to zero administrations per day, or the dose unit cannot
    be brought into the package unit. The result is always floored.
    """
    package = profile.package_info
    if package is None:
        return None
    frequency = (tables or default_tables()).frequency(frequency_key)
    if frequency is None:
        return None
    per_day = administrations_per_day(frequency)
    if per_day <= 0:
        return None

    amount_per_day = _convert_to_package_unit(profile, dose.value * per_day, dose.unit, package.unit)
    if amount_per_day is None or amount_per_day <= 0:
        return None
    # absorb float noise such as 139.99999999999997 before flooring
    return max(0, math.floor(round(package.total / amount_per_day, 6)))


def _convert_to_package_unit(
    profile: MedicationProfile, amount: float, unit: str, package_unit: str
) -> float | None:
    if units_match(unit, package_unit):
        return amount

    dispenser = profile.dispenser_info
    if dispenser is not None and (units_match(unit, dispenser.unit) or units_match(unit, dispenser.plural_unit)):
        amount = amount / dispenser.conversion_ratio
        unit = dispenser.reference_unit
        if units_match(unit, package_unit):
            return amount

    # a weight means nothing against a combination product's package
    if profile.is_multi_ingredient:
        return None
    strength = profile.strength
    if units_match(unit, strength.numerator.unit) and units_match(package_unit, strength.denominator.unit):
        return amount / strength.per_unit
    if units_match(unit, strength.denominator.unit) and units_match(package_unit, strength.numerator.unit):
        return amount * strength.per_unit
    return None


# ---- validation ----

def validate_dose(profile: MedicationProfile, dose: DoseInput | Quantity, notepad: Notepad) -> None:
    """
    Check a dose against the profile's constraints. Problems are recorded on `notepad`:
    constraint violations as errors, suspicious-but-usable input as warnings.
    """
    if dose.value <= 0:
        notepad.add_error(f"Dose must be greater than zero, got {format_number(dose.value)} {dose.unit}")
        return

    if not profile.is_active:
        notepad.add_warning(f"Medication {profile.id!r} is inactive")

    if not _unit_known_for(profile, dose.unit):
        notepad.add_warning(f"Dose unit {dose.unit!r} is not related to {profile.name!r}")

    if profile.is_multi_ingredient and any(
        units_match(dose.unit, ingredient.strength.numerator.unit) for ingredient in profile.ingredients
    ):
        notepad.add_warning(
            f"{profile.name!r} has {len(profile.ingredients)} ingredients; "
            f"give the dose in {profile.strength.denominator.unit}, not {dose.unit}"
        )

    constraints = profile.dosage_constraints
    if constraints is None:
        return
    if constraints.min_dose and units_match(dose.unit, constraints.min_dose.unit):
        if dose.value < constraints.min_dose.value:
            notepad.add_error(
                f"Dose must be at least {format_number(constraints.min_dose.value)} {constraints.min_dose.unit}"
            )
    if constraints.max_dose and units_match(dose.unit, constraints.max_dose.unit):
        if dose.value > constraints.max_dose.value:
            notepad.add_error(
                f"Dose cannot exceed {format_number(constraints.max_dose.value)} {constraints.max_dose.unit}"
            )
    if constraints.step:
        remainder = math.fmod(dose.value, constraints.step)
        if min(remainder, constraints.step - remainder) > 0.001:
            notepad.add_error(f"Dose must be in increments of {format_number(constraints.step)} {dose.unit}")


def _unit_known_for(profile: MedicationProfile, unit: str) -> bool:
    known = [profile.strength.numerator.unit, profile.strength.denominator.unit]
    if profile.dispenser_info is not None:
        known += [profile.dispenser_info.unit, profile.dispenser_info.plural_unit]
    if profile.package_info is not None:
        known.append(profile.package_info.unit)
    return any(units_match(unit, k) for k in known)
