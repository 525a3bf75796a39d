"""
Workbook → domain mapping.

High-level role
---------------
Turns the DataFrames produced by `loader.load_sheets_as_tables` into MedicationProfile
objects and, optionally, frequency-table overrides. Row problems are recorded on a
stairval Notepad and the offending row is skipped; mapping never raises for bad data.

Expected sheets (aliases accepted, see KNOWN_SHEET_ALIASES):
- medications: one row per ingredient; rows sharing the index (medication id) form one profile
- frequencies (optional): one row per frequency key
"""

import abc
import math
import typing
from dataclasses import dataclass, field

import pandas as pd
from stairval.notepad import Notepad

from .medication import (
    DispenserInfo,
    DosageConstraints,
    Ingredient,
    MedicationProfile,
    PackageInfo,
    Quantity,
    Ratio,
)
from .tables import FrequencyDefinition, ReferenceTables

# Minimal required columns (after renaming) to identify each sheet type
MEDICATION_KEY_COLUMNS = {"name", "dose_form", "strength_value", "strength_unit"}
FREQUENCY_KEY_COLUMNS = {"count", "period", "period_unit"}

KNOWN_SHEET_ALIASES: dict[str, set[str]] = {
    "medications": {"medications", "medication", "meds", "profiles"},
    "frequencies": {"frequencies", "frequency", "schedules"},
}


@dataclass
class TypedTables:
    """
    Explicit, typed access to workbook sheets; `None` means the sheet was not provided.
    """
    medications: pd.DataFrame | None
    frequencies: pd.DataFrame | None


@dataclass
class MappedWorkbook:
    profiles: dict[str, MedicationProfile] = field(default_factory=dict)
    frequencies: dict[str, FrequencyDefinition] = field(default_factory=dict)

    def apply_to(self, tables: ReferenceTables) -> None:
        """Merge frequency overrides into live reference tables."""
        if self.frequencies:
            tables.reload(frequencies={**tables.frequencies, **self.frequencies})


class TableMapper(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def apply_mapping(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> MappedWorkbook:
        raise NotImplementedError


class DefaultProfileMapper(TableMapper):
    def __init__(self, reference: ReferenceTables | None = None, strict_dose_forms: bool = False):
        """
        - strict_dose_forms False: dose forms missing from the dose-form table are WARNINGS
        - strict_dose_forms True : they are ERRORS and the profile is skipped
        """
        self._reference = reference
        self.strict_dose_forms = strict_dose_forms

    def apply_mapping(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> MappedWorkbook:
        """
        1) choose the medication / frequency sheets
        2) map frequency rows
        3) group medication rows by id and build one profile per id
        """
        typed = self._choose_named_tables(tables, notepad)
        mapped = MappedWorkbook()
        if typed.frequencies is not None:
            mapped.frequencies = self._map_frequencies(typed.frequencies, notepad)
        if typed.medications is not None:
            mapped.profiles = self._map_medications(typed.medications, notepad)
        return mapped

    # ---- cell helpers ----

    @staticmethod
    def _is_blank(value: typing.Any) -> bool:
        if value is None:
            return True
        if isinstance(value, float) and math.isnan(value):
            return True
        return isinstance(value, str) and not value.strip()

    @staticmethod
    def _to_bool(value: typing.Any, default: bool = True) -> bool:
        """
        - True for: 1, '1', 'true', 't', 'yes', 'y' (case-insensitive)
        - False for: 0, '0', 'false', 'f', 'no', 'n'
        - blank cells give `default`
        """
        if isinstance(value, bool):
            return value
        if DefaultProfileMapper._is_blank(value):
            return default
        s = str(value).strip().lower()
        if s in {"1", "1.0", "true", "t", "yes", "y"}:
            return True
        if s in {"0", "0.0", "false", "f", "no", "n"}:
            return False
        return bool(value)

    @staticmethod
    def _to_float(value: typing.Any) -> float | None:
        if DefaultProfileMapper._is_blank(value):
            return None
        return float(value)

    @staticmethod
    def _to_str(value: typing.Any) -> str | None:
        if DefaultProfileMapper._is_blank(value):
            return None
        return str(value).strip()

    # ---- sheet selection ----

    def _choose_named_tables(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> TypedTables:
        lowered = {name.strip().lower(): df for name, df in tables.items()}

        def by_alias(kind: str) -> pd.DataFrame | None:
            for alias in KNOWN_SHEET_ALIASES[kind]:
                if alias in lowered:
                    return lowered[alias]
            return None

        medications = by_alias("medications")
        frequencies = by_alias("frequencies")
        if medications is None:
            # fall back to column-based detection, e.g. a single CSV file
            for df in tables.values():
                if MEDICATION_KEY_COLUMNS.issubset(df.columns):
                    medications = df
                    break
        if medications is None and frequencies is None:
            notepad.add_error("Missing required sheet: 'medications'.")
        return TypedTables(medications=medications, frequencies=frequencies)

    # ---- frequencies ----

    def _map_frequencies(self, df: pd.DataFrame, notepad: Notepad) -> dict[str, FrequencyDefinition]:
        missing = FREQUENCY_KEY_COLUMNS - set(df.columns)
        if missing:
            notepad.add_error(f"Sheet 'frequencies': missing required columns: {sorted(missing)}")
            return {}

        result: dict[str, FrequencyDefinition] = {}
        for name, row in df.iterrows():
            key = str(name).strip()
            try:
                result[key] = FrequencyDefinition(
                    name=key,
                    count=int(row["count"]),
                    period=float(row["period"]),
                    period_unit=str(row["period_unit"]).strip(),
                    human_readable=self._to_str(row.get("human_readable")) or key.lower(),
                    abbreviation=self._to_str(row.get("abbreviation")),
                )
            except (TypeError, ValueError) as e:
                notepad.add_error(f"Sheet 'frequencies', row {key!r}: {e}")
        return result

    # ---- medications ----

    @staticmethod
    def parse_ingredient_row(row: pd.Series, medication_id: str, notepad: Notepad) -> Ingredient | None:
        try:
            strength = Ratio(
                numerator=Quantity(float(row["strength_value"]), str(row["strength_unit"]).strip()),
                denominator=Quantity(
                    DefaultProfileMapper._to_float(row.get("per_value")) or 1.0,
                    DefaultProfileMapper._to_str(row.get("per_unit")) or "unit",
                ),
            )
            name = DefaultProfileMapper._to_str(row.get("ingredient_name")) or str(row["name"]).strip()
            return Ingredient(name=name, strength=strength)
        except (TypeError, ValueError, KeyError) as e:
            notepad.add_error(f"Medication {medication_id!r}: invalid strength: {e}")
            return None

    def _package(self, row: pd.Series) -> PackageInfo | None:
        quantity = self._to_float(row.get("package_quantity"))
        unit = self._to_str(row.get("package_unit"))
        if quantity is None or unit is None:
            return None
        pack_size = self._to_float(row.get("pack_size"))
        return PackageInfo(quantity=quantity, unit=unit, pack_size=int(pack_size) if pack_size else None)

    def _dispenser(self, row: pd.Series) -> DispenserInfo | None:
        dispenser_type = self._to_str(row.get("dispenser_type"))
        if dispenser_type is None:
            return None
        known = self._reference.dispenser(dispenser_type) if self._reference else None
        unit = self._to_str(row.get("dispenser_unit")) or (known.default_unit if known else None)
        plural = self._to_str(row.get("dispenser_plural_unit")) or (known.plural_unit if known else None)
        ratio = self._to_float(row.get("dispenser_ratio")) or (known.default_conversion_ratio if known else None)
        if unit is None or ratio is None:
            raise ValueError(f"dispenser {dispenser_type!r} needs a unit and a conversion ratio")
        return DispenserInfo(dispenser_type, unit, plural or f"{unit}s", ratio)

    def _constraints(self, row: pd.Series) -> DosageConstraints | None:
        def bound(value_col: str, unit_col: str) -> Quantity | None:
            value = self._to_float(row.get(value_col))
            unit = self._to_str(row.get(unit_col))
            return Quantity(value, unit) if value is not None and unit else None

        min_dose = bound("min_dose", "min_dose_unit")
        max_dose = bound("max_dose", "max_dose_unit")
        step = self._to_float(row.get("dose_step"))
        if min_dose is None and max_dose is None and step is None:
            return None
        return DosageConstraints(min_dose=min_dose, max_dose=max_dose, step=step)

    def _map_medications(self, df: pd.DataFrame, notepad: Notepad) -> dict[str, MedicationProfile]:
        missing = MEDICATION_KEY_COLUMNS - set(df.columns)
        if missing:
            notepad.add_error(f"Sheet 'medications': missing required columns: {sorted(missing)}")
            return {}

        working_df = df.reset_index()
        working_df = working_df.rename(columns={working_df.columns[0]: "id"})
        profiles: dict[str, MedicationProfile] = {}

        for medication_id, group in working_df.groupby("id", sort=False):
            medication_id = str(medication_id).strip()
            ingredients = [self.parse_ingredient_row(row, medication_id, notepad) for _, row in group.iterrows()]
            if any(i is None for i in ingredients):
                continue

            first = group.iloc[0]
            dose_form = str(first["dose_form"]).strip()
            if self._reference is not None and self._reference.dose_form(dose_form) is None:
                msg = f"Medication {medication_id!r}: dose form {dose_form!r} is not in the dose-form table"
                if self.strict_dose_forms:
                    notepad.add_error(msg)
                    continue
                notepad.add_warning(msg)

            try:
                profiles[medication_id] = MedicationProfile(
                    id=medication_id,
                    name=str(first["name"]).strip(),
                    dose_form=dose_form,
                    ingredients=tuple(ingredients),
                    is_active=self._to_bool(first.get("is_active")),
                    package_info=self._package(first),
                    dispenser_info=self._dispenser(first),
                    dosage_constraints=self._constraints(first),
                    default_route=self._to_str(first.get("default_route")),
                    default_frequency=self._to_str(first.get("default_frequency")),
                )
            except (TypeError, ValueError) as e:
                notepad.add_error(f"Medication {medication_id!r}: {e}")
        return profiles
