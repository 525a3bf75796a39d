"""
Reference tables: frequencies, routes, dose forms, dispensers and verbs.

High-level role
---------------
These are read-only lookup tables consumed by the strategies and the arithmetic
helpers. A `ReferenceTables` instance owns one copy of each table; `reload()` swaps
them atomically so an external configuration component can push new values while
dispatchers keep running. Callers always look entries up at call time and never
cache a table dictionary themselves.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Mapping

logger = logging.getLogger(__name__)

# Days per frequency period unit; a month is approximated as 30 days
PERIOD_UNIT_DAYS = {
    "h": 1 / 24,
    "d": 1,
    "wk": 7,
    "mo": 30,
}


@dataclass(frozen=True)
class FrequencyDefinition:
    name: str
    count: int
    period: float
    period_unit: str
    human_readable: str
    abbreviation: str | None = None

    def __post_init__(self):
        if self.count < 0:
            raise ValueError(f"Invalid frequency count: {self.count!r}")
        if self.period <= 0:
            raise ValueError(f"Invalid frequency period: {self.period!r}")
        if self.period_unit not in PERIOD_UNIT_DAYS:
            raise ValueError(f"Invalid frequency period unit: {self.period_unit!r}")

    @property
    def fhir_mapping(self) -> dict:
        """Timing `repeat` element for the interchange record."""
        return {
            "frequency": self.count,
            "period": self.period,
            "periodUnit": self.period_unit,
        }

    @property
    def period_in_days(self) -> float:
        return self.period * PERIOD_UNIT_DAYS[self.period_unit]


@dataclass(frozen=True)
class RouteDefinition:
    name: str
    code: str
    human_readable: str
    fhir_code: str
    requires_special_instructions: bool = False
    special_instructions_template: str | None = None
    applicable_forms: tuple[str, ...] = ()


@dataclass(frozen=True)
class DispenserConversion:
    dispenser_unit: str
    dispenser_plural_unit: str
    conversion_ratio: float


@dataclass(frozen=True)
class DoseFormDefinition:
    name: str
    is_countable: bool
    default_unit: str
    plural_unit: str
    applicable_routes: tuple[str, ...]
    default_route: str
    verb: str
    dispenser_conversion: DispenserConversion | None = None

    def unit_label(self, value: float) -> str:
        return self.default_unit if value <= 1 else self.plural_unit


@dataclass(frozen=True)
class DispenserType:
    name: str
    default_unit: str
    plural_unit: str
    default_conversion_ratio: float
    applicable_dose_forms: tuple[str, ...] = ()


def _frequency(name, count, period, unit, text, abbreviation=None) -> FrequencyDefinition:
    return FrequencyDefinition(name, count, period, unit, text, abbreviation)


DEFAULT_FREQUENCIES = {
    f.name: f
    for f in (
        _frequency("Once Daily", 1, 1, "d", "once daily", "QD"),
        _frequency("Twice Daily", 2, 1, "d", "twice daily", "BID"),
        _frequency("Three Times Daily", 3, 1, "d", "three times daily", "TID"),
        _frequency("Four Times Daily", 4, 1, "d", "four times daily", "QID"),
        _frequency("Every Other Day", 1, 2, "d", "every other day", "QOD"),
        _frequency("Once Per Week", 1, 1, "wk", "once weekly", "Q1W"),
        _frequency("Twice Per Week", 2, 1, "wk", "twice weekly", "BIW"),
        _frequency("Three Times Per Week", 3, 1, "wk", "three times weekly", "TIW"),
        _frequency("Four Times Per Week", 4, 1, "wk", "four times weekly"),
        _frequency("Five Times Per Week", 5, 1, "wk", "five times weekly"),
        _frequency("Six Times Per Week", 6, 1, "wk", "six times weekly"),
        _frequency("Once Every Two Weeks", 1, 2, "wk", "once every two weeks", "Q2W"),
        _frequency("Once Per Month", 1, 1, "mo", "once monthly", "Q1M"),
    )
}

DEFAULT_ROUTES = {
    r.name: r
    for r in (
        RouteDefinition(
            "Intramuscularly", "IM", "intramuscularly", "IM", True,
            "Inject {dose} {route} into {site} {frequency}.", ("Vial", "Pen", "Solution"),
        ),
        RouteDefinition("Intranasal", "NAS", "into each nostril", "NAS", False, None, ("Nasal Spray", "Solution")),
        RouteDefinition("On Scalp", "SCALP", "to scalp", "SCALP", False, None, ("Shampoo", "Solution", "Foam")),
        RouteDefinition("Orally", "PO", "by mouth", "PO", False, None, ("Tablet", "Capsule", "Solution", "ODT")),
        RouteDefinition("Rectally", "PR", "rectally", "PR", False, None, ("Rectal Suppository", "Cream")),
        RouteDefinition(
            "Subcutaneous", "SC", "subcutaneously", "SUBCUT", True,
            "Inject {dose} {route} {frequency}.", ("Vial", "Pen", "Solution"),
        ),
        RouteDefinition("Sublingually", "SL", "under the tongue", "SL", False, None, ("Tablet",)),
        RouteDefinition(
            "Topically", "TOP", "topically", "TOP", True,
            "Apply {dose} {route} {frequency}.", ("Cream", "Gel", "Solution", "Foam", "Patch"),
        ),
        RouteDefinition(
            "Transdermal", "TD", "to skin", "TRNSDRM", True,
            "Apply {dose} {route} {frequency}.", ("Patch", "Gel"),
        ),
        RouteDefinition("Vaginally", "PV", "vaginally", "PV", False, None, ("Cream", "Gel", "Tablet")),
    )
}

_TOPICLICK = DispenserConversion("click", "clicks", 4)

DEFAULT_DOSE_FORMS = {
    d.name: d
    for d in (
        DoseFormDefinition("Capsule", True, "capsule", "capsules", ("Orally",), "Orally", "Take"),
        DoseFormDefinition(
            "Cream", False, "application", "applications",
            ("Topically", "Rectally", "Vaginally"), "Topically", "Apply", _TOPICLICK,
        ),
        DoseFormDefinition("Dropper", True, "drop", "drops", ("Orally", "Topically"), "Orally", "Place"),
        DoseFormDefinition("Foam", False, "application", "applications", ("Topically", "On Scalp"), "Topically", "Apply"),
        DoseFormDefinition("Gel", False, "application", "applications", ("Topically", "Vaginally"), "Topically", "Apply"),
        DoseFormDefinition("Nasal Spray", True, "spray", "sprays", ("Intranasal",), "Intranasal", "Spray"),
        DoseFormDefinition("ODT", True, "tablet", "tablets", ("Orally",), "Orally", "Dissolve"),
        DoseFormDefinition("Patch", True, "patch", "patches", ("Transdermal",), "Transdermal", "Apply"),
        DoseFormDefinition("Pen", False, "unit", "units", ("Subcutaneous", "Intramuscularly"), "Subcutaneous", "Inject"),
        DoseFormDefinition(
            "Rectal Suppository", True, "suppository", "suppositories", ("Rectally",), "Rectally", "Insert",
        ),
        DoseFormDefinition("Shampoo", False, "application", "applications", ("On Scalp",), "On Scalp", "Apply"),
        DoseFormDefinition(
            "Solution", False, "mL", "mL",
            ("Orally", "Topically", "Intramuscularly", "Subcutaneous"), "Orally", "Take",
        ),
        DoseFormDefinition("Spray", True, "spray", "sprays", ("Topically", "Intranasal"), "Topically", "Apply"),
        DoseFormDefinition("Tablet", True, "tablet", "tablets", ("Orally", "Sublingually"), "Orally", "Take"),
        DoseFormDefinition("Vial", False, "mL", "mL", ("Intramuscularly", "Subcutaneous"), "Intramuscularly", "Inject"),
    )
}

DEFAULT_DISPENSERS = {
    d.name: d
    for d in (
        DispenserType("Topiclick", "click", "clicks", 4, ("Cream", "Gel")),
        DispenserType("Pump", "pump", "pumps", 0.67, ("Cream", "Gel", "Foam", "Solution")),
        DispenserType("Dropper", "drop", "drops", 20, ("Solution",)),
        DispenserType("Oral Syringe", "mL", "mL", 1, ("Solution",)),
        DispenserType("Inhaler", "puff", "puffs", 1, ("Spray",)),
    )
}

# (dose form, route) → verb; anything missing falls back to the dose form's own verb
DEFAULT_VERBS: dict[tuple[str, str], str] = {
    ("Tablet", "Orally"): "Take",
    ("Tablet", "Sublingually"): "Place",
    ("Capsule", "Orally"): "Take",
    ("Solution", "Orally"): "Take",
    ("Solution", "Subcutaneous"): "Inject",
    ("Solution", "Intramuscularly"): "Inject",
    ("Solution", "Topically"): "Apply",
    ("Vial", "Subcutaneous"): "Inject",
    ("Vial", "Intramuscularly"): "Inject",
    ("Pen", "Subcutaneous"): "Inject",
    ("Pen", "Intramuscularly"): "Inject",
    ("Cream", "Topically"): "Apply",
    ("Cream", "Rectally"): "Insert",
    ("Cream", "Vaginally"): "Insert",
    ("Gel", "Topically"): "Apply",
    ("Gel", "Vaginally"): "Insert",
    ("Foam", "Topically"): "Apply",
    ("Foam", "On Scalp"): "Apply",
    ("Patch", "Transdermal"): "Apply",
    ("Nasal Spray", "Intranasal"): "Spray",
    ("Spray", "Topically"): "Apply",
    ("Spray", "Intranasal"): "Spray",
    ("ODT", "Orally"): "Dissolve",
    ("Rectal Suppository", "Rectally"): "Insert",
    ("Shampoo", "On Scalp"): "Apply",
    ("Dropper", "Orally"): "Place",
    ("Dropper", "Topically"): "Apply",
}


@dataclass
class ReferenceTables:
    frequencies: Mapping[str, FrequencyDefinition] = field(default_factory=lambda: dict(DEFAULT_FREQUENCIES))
    routes: Mapping[str, RouteDefinition] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    dose_forms: Mapping[str, DoseFormDefinition] = field(default_factory=lambda: dict(DEFAULT_DOSE_FORMS))
    dispensers: Mapping[str, DispenserType] = field(default_factory=lambda: dict(DEFAULT_DISPENSERS))
    verbs: Mapping[tuple[str, str], str] = field(default_factory=lambda: dict(DEFAULT_VERBS))

    def __post_init__(self):
        self._lock = threading.Lock()

    def reload(
        self,
        *,
        frequencies: Mapping[str, FrequencyDefinition] | None = None,
        routes: Mapping[str, RouteDefinition] | None = None,
        dose_forms: Mapping[str, DoseFormDefinition] | None = None,
        dispensers: Mapping[str, DispenserType] | None = None,
        verbs: Mapping[tuple[str, str], str] | None = None,
    ) -> None:
        """
        Replace one or more tables in place. Each table is swapped as a whole, so a
        concurrent reader sees either the old or the new table, never a mix.
        """
        with self._lock:
            if frequencies is not None:
                self.frequencies = dict(frequencies)
            if routes is not None:
                self.routes = dict(routes)
            if dose_forms is not None:
                self.dose_forms = dict(dose_forms)
            if dispensers is not None:
                self.dispensers = dict(dispensers)
            if verbs is not None:
                self.verbs = dict(verbs)
        logger.info("Reference tables reloaded")

    # ---- lookups ----

    def frequency(self, key: str | None) -> FrequencyDefinition | None:
        """
        Resolve a frequency by exact key, then case-insensitively by name or abbreviation.
        """
        if not key:
            return None
        table = self.frequencies
        if key in table:
            return table[key]
        wanted = key.strip().lower()
        for definition in table.values():
            if definition.name.lower() == wanted:
                return definition
            if definition.abbreviation and definition.abbreviation.lower() == wanted:
                return definition
        return None

    def route(self, key: str | None) -> RouteDefinition | None:
        if not key:
            return None
        table = self.routes
        if key in table:
            return table[key]
        wanted = key.strip().lower()
        for definition in table.values():
            if wanted in {definition.name.lower(), definition.code.lower()}:
                return definition
        return None

    def dose_form(self, key: str | None) -> DoseFormDefinition | None:
        if not key:
            return None
        table = self.dose_forms
        if key in table:
            return table[key]
        wanted = key.strip().lower()
        for definition in table.values():
            if definition.name.lower() == wanted:
                return definition
        return None

    def dispenser(self, key: str | None) -> DispenserType | None:
        if not key:
            return None
        return self.dispensers.get(key)

    def get_verb(self, dose_form: str, route: str | None) -> str:
        """
        Verb for a (dose form, route) pair: explicit mapping, then the dose form's verb, then "Take".
        """
        form = self.dose_form(dose_form)
        route_def = self.route(route)
        form_name = form.name if form else dose_form
        route_name = route_def.name if route_def else route
        verb = self.verbs.get((form_name, route_name))
        if verb:
            return verb
        if form is not None:
            return form.verb
        return "Take"


def default_tables() -> ReferenceTables:
    return ReferenceTables()
