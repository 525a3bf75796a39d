"""
Request context: everything one dispatch call needs, frozen for the length of that call.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .medication import MedicationProfile, Quantity


@dataclass(frozen=True)
class DoseInput:
    value: float
    unit: str

    def __post_init__(self):
        if not isinstance(self.value, (int, float)) or isinstance(self.value, bool):
            raise ValueError(f"Invalid dose value: {self.value!r}")
        if not isinstance(self.unit, str) or not self.unit.strip():
            raise ValueError(f"Invalid dose unit: {self.unit!r}")

    def as_quantity(self) -> Quantity:
        return Quantity(self.value, self.unit)


@dataclass(frozen=True)
class MaxDosePerPeriod:
    """PRN ceiling, e.g. 8 tablets in 24 hours."""
    dose: Quantity
    period: Quantity

    def describe(self) -> str:
        return f"{_plain(self.dose.value)} {self.dose.unit} in {_plain(self.period.value)} {self.period.unit}"


def _plain(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


@dataclass(frozen=True)
class RequestContext:
    """
    One prescribing request.

    `frequency` is a frequency-table key ("Twice Daily"); `route` is either a route-table
    key ("Orally") or a free-form route ("po", "IM"). `as_needed` marks a PRN request and
    holds its indication ("" when none was given).
    """
    medication: MedicationProfile
    dose: DoseInput
    route: str | None
    frequency: str
    special_instructions: str | None = None
    as_needed: str | None = None
    max_dose_per_period: MaxDosePerPeriod | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_prn(self) -> bool:
        return self.as_needed is not None


def create_request_context(
    medication: MedicationProfile,
    dose_value: float,
    dose_unit: str,
    route: str | None = None,
    frequency: str | None = None,
    special_instructions: str | None = None,
    *,
    as_needed: str | None = None,
    max_dose_per_period: MaxDosePerPeriod | None = None,
) -> RequestContext:
    """
    Build a context, falling back to the profile's route/frequency defaults.
    """
    frequency = frequency or medication.default_frequency
    if not frequency:
        raise ValueError(f"Invalid frequency: {frequency!r}")
    special_instructions = special_instructions.strip() if special_instructions else None
    return RequestContext(
        medication=medication,
        dose=DoseInput(dose_value, dose_unit),
        route=route or medication.default_route,
        frequency=frequency,
        special_instructions=special_instructions or None,
        as_needed=as_needed,
        max_dose_per_period=max_dose_per_period,
    )
