"""
TemplateDataBuilder: maps a request context to the flat record each template family expects.

Every family returns at least `template_key`, `verb`, `dose_text`, `route` and
`frequency`; optional fields are only present when they carry a value. The
strategies turn these records into `SignatureInstruction`s with `to_instruction`.
"""

from typing import Any

from .context import RequestContext
from .dosage import describe_quantity, format_countable_dose, format_number, ingredient_breakdown
from .instruction import SignatureInstruction
from .medication import units_match
from .tables import ReferenceTables

# Free-form route spellings → canonical phrase
ROUTE_PHRASES = {
    "oral": "by mouth",
    "orally": "by mouth",
    "po": "by mouth",
    "by mouth": "by mouth",
    "im": "intramuscularly",
    "intramuscular": "intramuscularly",
    "intramuscularly": "intramuscularly",
    "sc": "subcutaneously",
    "sq": "subcutaneously",
    "subq": "subcutaneously",
    "subcutaneous": "subcutaneously",
    "subcutaneously": "subcutaneously",
    "topical": "topically",
    "topically": "topically",
    "sl": "under the tongue",
    "sublingual": "under the tongue",
    "transdermal": "to skin",
}

INJECTION_ROUTE_TOKENS = ("inject", "intramuscular", "subcutaneous")
INJECTION_ROUTE_CODES = {"im", "sc", "sq", "subq"}
APPLY_ROUTE_TOKENS = ("topical", "apply", "transdermal", "scalp")

SUSPENSION_CAUTION = "(shake well before use)"
SHAKE_WELL_INSTRUCTION = "Shake well before use"
SITE_ROTATION_SENTENCE = "Rotate injection sites."

# Keys consumed as instruction fragments; everything else stays template data
_FRAGMENT_KEYS = {
    "template_key", "verb", "dose_text", "dose_suffix", "route", "frequency",
    "special_instructions", "caution", "indication", "prn", "sentences", "containing",
}


def verb_for_route(route: str | None) -> str:
    """Route-family verb: Inject for injections, Apply for topicals, otherwise Take."""
    if not route:
        return "Take"
    key = route.strip().lower()
    if key in INJECTION_ROUTE_CODES or any(token in key for token in INJECTION_ROUTE_TOKENS):
        return "Inject"
    if any(token in key for token in APPLY_ROUTE_TOKENS):
        return "Apply"
    return "Take"


def to_instruction(data: dict[str, Any], **structured) -> SignatureInstruction:
    """
    Build an instruction from a data-builder record; `structured` carries the
    interchange fields (dose_quantity, timing, route, ...).
    """
    caution = data.get("caution")
    return SignatureInstruction(
        verb=data["verb"],
        dose_text=data["dose_text"],
        route_text=data["route"],
        frequency_text=data["frequency"],
        template_key=data["template_key"],
        dose_suffix=data.get("dose_suffix"),
        special_instructions=data.get("special_instructions"),
        as_needed=data.get("indication", "") if data.get("prn") else None,
        cautions=(caution,) if caution else (),
        trailing=(data["containing"],) if data.get("containing") else (),
        sentences=tuple(data.get("sentences", ())),
        template_data={k: v for k, v in data.items() if k not in _FRAGMENT_KEYS},
        **structured,
    )


class TemplateDataBuilder:

    def __init__(self, tables: ReferenceTables):
        self._tables = tables

    # ---- normalisation helpers ----

    def format_route(self, route: str | None, default: str = "by mouth") -> str:
        if not route:
            return default
        definition = self._tables.route(route)
        if definition is not None:
            return definition.human_readable
        return ROUTE_PHRASES.get(route.strip().lower(), route.strip())

    def format_frequency(self, frequency: str) -> str:
        definition = self._tables.frequency(frequency)
        if definition is not None:
            return definition.human_readable
        return frequency.strip().lower()

    def select_verb(self, context: RequestContext) -> str:
        """
        The tables' verb for the (dose form, route) pair; when they only offer the
        generic "Take", the route family decides.
        """
        verb = self._tables.get_verb(context.medication.dose_form, context.route)
        if verb != "Take":
            return verb
        by_route = verb_for_route(context.route)
        route = self._tables.route(context.route)
        if by_route == "Take" and route is not None:
            by_route = verb_for_route(route.human_readable)
        return by_route

    def unit_label(self, context: RequestContext, value: float | None = None) -> str:
        """
        Singular/plural label for the dose unit when it is the dose form's countable unit;
        any other unit is returned as entered.
        """
        value = context.dose.value if value is None else value
        form = self._tables.dose_form(context.medication.dose_form)
        if form is not None and units_match(context.dose.unit, form.default_unit):
            return form.unit_label(value)
        return context.dose.unit

    def _base(self, context: RequestContext, template_key: str, route_default: str) -> dict[str, Any]:
        data: dict[str, Any] = {
            "template_key": template_key,
            "verb": self.select_verb(context),
            "dose_text": f"{format_number(context.dose.value)} {self.unit_label(context)}",
            "route": self.format_route(context.route, route_default),
            "frequency": self.format_frequency(context.frequency),
        }
        if context.special_instructions:
            data["special_instructions"] = context.special_instructions
        if context.is_prn:
            data.update(self._prn_fields(context))
        if context.medication.is_multi_ingredient:
            breakdown = ingredient_breakdown(context.medication, context.dose)
            if breakdown:
                data["containing"] = self.format_ingredients(breakdown)
        return data

    @staticmethod
    def format_ingredients(breakdown) -> str:
        return "(containing " + ", ".join(f"{name} {describe_quantity(q)}" for name, q in breakdown) + ")"

    @staticmethod
    def _prn_fields(context: RequestContext) -> dict[str, Any]:
        fields: dict[str, Any] = {"prn": True}
        if context.as_needed:
            fields["indication"] = context.as_needed
        if context.max_dose_per_period is not None:
            fields["sentences"] = [f"Do not exceed {context.max_dose_per_period.describe()}."]
        return fields

    # ---- template families ----

    def for_tablet(self, context: RequestContext, count: float, singular: str, plural: str) -> dict[str, Any]:
        data = self._base(context, "ORAL_TABLET_TEMPLATE", "by mouth")
        data["dose_text"] = format_countable_dose(count, singular, plural)
        data["count"] = count
        data["unit"] = singular
        return data

    def for_liquid(self, context: RequestContext) -> dict[str, Any]:
        data = self._base(context, "LIQUID_DOSE_TEMPLATE", "by mouth")
        if "suspension" in context.medication.dose_form.lower():
            data["caution"] = SUSPENSION_CAUTION
        return data

    def for_topical(self, context: RequestContext) -> dict[str, Any]:
        data = self._base(context, "TOPICAL_APPLICATION_TEMPLATE", "topically")
        units = self._dispenser_units(context)
        if units is not None and (units_match(context.dose.unit, units[0]) or units_match(context.dose.unit, units[1])):
            clicks = context.dose.value
            data["clicks"] = clicks
            data["dispenser_unit"], data["dispenser_plural_unit"] = units
            data["dose_text"] = f"{format_number(clicks)} {units[0] if clicks == 1 else units[1]}"
        return data

    def _dispenser_units(self, context: RequestContext) -> tuple[str, str] | None:
        """(singular, plural) dispenser unit from the profile, else from the dose form's conversion."""
        dispenser = context.medication.dispenser_info
        if dispenser is not None:
            return dispenser.unit, dispenser.plural_unit
        form = self._tables.dose_form(context.medication.dose_form)
        if form is not None and form.dispenser_conversion is not None:
            conversion = form.dispenser_conversion
            return conversion.dispenser_unit, conversion.dispenser_plural_unit
        return None

    def for_injection(self, context: RequestContext) -> dict[str, Any]:
        data = self._base(context, "INJECTION_TEMPLATE", "intramuscularly")
        data["verb"] = "Inject"
        return data

    def for_high_risk(self, context: RequestContext, route_phrase: str, dose_suffix: str | None) -> dict[str, Any]:
        data = self._base(context, "HIGH_RISK_INJECTION_TEMPLATE", route_phrase)
        data["verb"] = "Inject"
        data["route"] = route_phrase
        if dose_suffix:
            data["dose_suffix"] = dose_suffix
        data["sentences"] = [SITE_ROTATION_SENTENCE, *data.get("sentences", [])]
        return data

    def for_prn(self, context: RequestContext) -> dict[str, Any]:
        data = self._base(context, "PRN_INSTRUCTION_TEMPLATE", "by mouth")
        data.setdefault("prn", True)
        return data

    def for_default(self, context: RequestContext) -> dict[str, Any]:
        return self._base(context, "DEFAULT_TEMPLATE", "by mouth")
