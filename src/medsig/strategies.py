"""
Strategy variants.

High-level role
---------------
Two closed sets of variants encapsulate the dosing logic for one medication shape each:

- base strategies pick themselves by `matches(context)` and produce the first
  `SignatureInstruction` with `build_instruction(context)`;
- modifiers are folded over that instruction in ascending `priority` order when
  `applies_to(context)` holds.

The sets are closed: the registry accepts exactly the types listed in
`BASE_STRATEGY_TYPES` / `MODIFIER_TYPES` (no subclasses), and `strategy_kind`
maps each one to its tag. Variants are frozen dataclasses, so several differently
configured instances of one variant can be registered under different names.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, ClassVar, Union

from .context import RequestContext
from .dosage import (
    apply_quarter_floor,
    calculate_dual_dosage,
    describe_quantity,
    format_number,
    snap_to_quarter,
    splitting_instruction,
)
from .instruction import SignatureInstruction
from .medication import DispenserInfo, DoseFormFamily, Quantity, units_match
from .tables import ReferenceTables, default_tables
from .template_data import SHAKE_WELL_INSTRUCTION, TemplateDataBuilder, to_instruction, verb_for_route


class Specificity(IntEnum):
    """
    How narrowly a base strategy targets a medication. Higher wins; new levels are
    appended with larger values.
    """
    DEFAULT = 0
    DOSE_FORM = 1
    DOSE_FORM_AND_INGREDIENT = 2
    MEDICATION_ID = 3
    MEDICATION_SKU = 4


def _tables_field():
    return field(default_factory=default_tables, compare=False, repr=False)


def _structured(context: RequestContext, tables: ReferenceTables, dose_quantity: Quantity, secondary=()) -> dict[str, Any]:
    """Interchange fields shared by every base strategy."""
    frequency = tables.frequency(context.frequency)
    return {
        "dose_quantity": dose_quantity,
        "secondary_doses": tuple(secondary),
        "timing": {"repeat": frequency.fhir_mapping if frequency else {}},
        "route": context.route,
    }


def _dual_suffix(context: RequestContext) -> tuple[Quantity, Quantity | None, str | None]:
    """Primary quantity, secondary quantity and ", as ..." suffix for a volume-style dose."""
    dual = calculate_dual_dosage(context.medication, context.dose)
    if dual is None:
        return context.dose.as_quantity(), None, None
    primary, secondary = dual.ordered(context.dose.unit)
    return primary, secondary, f", as {describe_quantity(secondary)}"


# ---- base strategies ----

@dataclass(frozen=True)
class DefaultStrategy:
    """Matches every request; generic verb + dose + route + frequency wording."""
    kind: ClassVar[str] = "default"
    specificity: Specificity = Specificity.DEFAULT
    tables: ReferenceTables = _tables_field()

    def matches(self, context: RequestContext) -> bool:
        return True

    def build_instruction(self, context: RequestContext) -> SignatureInstruction:
        builder = TemplateDataBuilder(self.tables)
        if context.is_prn:
            data = builder.for_prn(context)
        elif verb_for_route(builder.format_route(context.route)) == "Inject":
            data = builder.for_injection(context)
        else:
            data = builder.for_default(context)
        return to_instruction(data, **_structured(context, self.tables, context.dose.as_quantity()))

    def explain(self) -> str:
        return "Fallback for any medication: verb, dose, route and frequency using the route's verb"


@dataclass(frozen=True)
class CountableUnitStrategy:
    """
    Tablets and other countable forms. Doses never render below a quarter unit, are
    snapped to quarter steps and are written as mixed numbers.
    """
    kind: ClassVar[str] = "countable_unit"
    dose_forms: tuple[str, ...] = ("tablet", "capsule", "troche", "odt", "patch")
    specificity: Specificity = Specificity.DOSE_FORM
    tables: ReferenceTables = _tables_field()

    def matches(self, context: RequestContext) -> bool:
        return context.medication.dose_form.strip().lower() in self.dose_forms

    def _unit_labels(self, context: RequestContext) -> tuple[str, str]:
        form = self.tables.dose_form(context.medication.dose_form)
        if form is not None:
            return form.default_unit, form.plural_unit
        singular = context.medication.strength.denominator.unit
        return singular, f"{singular}s"

    def build_instruction(self, context: RequestContext) -> SignatureInstruction:
        builder = TemplateDataBuilder(self.tables)
        singular, plural = self._unit_labels(context)
        dose = context.dose
        profile = context.medication

        if units_match(dose.unit, singular) or units_match(dose.unit, profile.strength.denominator.unit):
            count = snap_to_quarter(apply_quarter_floor(dose.value))
            secondary = ()
            suffix = None
        else:
            dual = calculate_dual_dosage(profile, dose)
            if dual is None:
                data = builder.for_default(context)
                return to_instruction(data, **_structured(context, self.tables, dose.as_quantity()))
            count = dual.volume_based.value
            secondary = (dual.weight_based,)
            suffix = f" ({describe_quantity(dual.weight_based)})"

        data = builder.for_tablet(context, count, singular, plural)
        if suffix:
            data["dose_suffix"] = suffix
        instruction = to_instruction(
            data, **_structured(context, self.tables, Quantity(count, singular), secondary)
        )
        split = splitting_instruction(count) if "tablet" in profile.dose_form.lower() else None
        if split:
            instruction = instruction.with_additional_instruction(split)
        return instruction

    def explain(self) -> str:
        return (
            f"Countable forms ({', '.join(self.dose_forms)}): quarter-unit floor, "
            "quarter snapping and mixed-number wording"
        )


@dataclass(frozen=True)
class LiquidStrategy:
    """
    Volume-dispensed liquids: weight and volume are shown side by side. Combination
    products are dosed by volume and list the amount of each ingredient instead.
    """
    kind: ClassVar[str] = "liquid"
    dose_form_tokens: tuple[str, ...] = ("solution", "suspension", "syrup", "elixir", "liquid")
    specificity: Specificity = Specificity.DOSE_FORM
    tables: ReferenceTables = _tables_field()

    def matches(self, context: RequestContext) -> bool:
        form = context.medication.dose_form.lower()
        return any(token in form for token in self.dose_form_tokens)

    def build_instruction(self, context: RequestContext) -> SignatureInstruction:
        data = TemplateDataBuilder(self.tables).for_liquid(context)
        primary, secondary, suffix = _dual_suffix(context)
        data["dose_text"] = describe_quantity(primary)
        if suffix:
            data["dose_suffix"] = suffix
        instruction = to_instruction(
            data,
            **_structured(context, self.tables, primary, (secondary,) if secondary else ()),
        )
        if "suspension" in context.medication.dose_form.lower():
            instruction = instruction.with_additional_instruction(SHAKE_WELL_INSTRUCTION)
        return instruction

    def explain(self) -> str:
        return "Liquid forms: dual weight/volume dose, shake-well caution for suspensions"


@dataclass(frozen=True)
class TopicalStrategy:
    kind: ClassVar[str] = "topical"
    dose_form_tokens: tuple[str, ...] = ("cream", "gel", "foam", "ointment", "lotion", "shampoo")
    specificity: Specificity = Specificity.DOSE_FORM
    tables: ReferenceTables = _tables_field()

    def matches(self, context: RequestContext) -> bool:
        form = context.medication.dose_form.lower()
        return any(token in form for token in self.dose_form_tokens)

    def build_instruction(self, context: RequestContext) -> SignatureInstruction:
        data = TemplateDataBuilder(self.tables).for_topical(context)
        return to_instruction(data, **_structured(context, self.tables, context.dose.as_quantity()))

    def explain(self) -> str:
        return f"Topical forms ({', '.join(self.dose_form_tokens)}): Apply wording, dispenser-aware dose"


@dataclass(frozen=True)
class NamedInjectableStrategy:
    """
    A specific high-risk injectable identified by medication id or name. Always
    phrased for its fixed route and always carries a site-rotation caution.
    """
    kind: ClassVar[str] = "named_injectable"
    medication_ids: tuple[str, ...] = ("testosterone-cypionate-200mg-ml",)
    name_patterns: tuple[str, ...] = ("testosterone cypionate", "depo-testosterone")
    route_phrase: str = "intramuscularly"
    caution: str = "Rotate injection sites"
    specificity: Specificity = Specificity.MEDICATION_ID
    tables: ReferenceTables = _tables_field()

    def matches(self, context: RequestContext) -> bool:
        medication = context.medication
        if medication.id in self.medication_ids:
            return True
        name = medication.name.lower()
        return any(pattern in name for pattern in self.name_patterns)

    def build_instruction(self, context: RequestContext) -> SignatureInstruction:
        primary, secondary, suffix = _dual_suffix(context)
        data = TemplateDataBuilder(self.tables).for_high_risk(context, self.route_phrase, suffix)
        data["dose_text"] = describe_quantity(primary)
        instruction = to_instruction(
            data,
            **_structured(context, self.tables, primary, (secondary,) if secondary else ()),
        )
        return instruction.with_additional_instruction(self.caution)

    def explain(self) -> str:
        names = ", ".join(self.name_patterns or self.medication_ids)
        return f"High-risk injectable ({names}): fixed {self.route_phrase} wording with site rotation"


# ---- modifiers ----

@dataclass(frozen=True)
class DispenserUnitModifier:
    """
    Doses given in metered dispenser units (clicks, pumps, drops): adds the equivalent
    reference volume and, when the strength is per that volume, the weight.
    """
    kind: ClassVar[str] = "dispenser_unit"
    priority: int = 10
    tables: ReferenceTables = _tables_field()

    def dispenser_for(self, context: RequestContext) -> DispenserInfo | None:
        """The profile's dispenser, else one implied by the dose form's dispenser conversion."""
        if context.medication.dispenser_info is not None:
            return context.medication.dispenser_info
        form = self.tables.dose_form(context.medication.dose_form)
        if form is None or form.dispenser_conversion is None:
            return None
        conversion = form.dispenser_conversion
        dispenser_type = next(
            (d.name for d in self.tables.dispensers.values() if units_match(d.default_unit, conversion.dispenser_unit)),
            "metered",
        )
        return DispenserInfo(
            dispenser_type, conversion.dispenser_unit, conversion.dispenser_plural_unit, conversion.conversion_ratio
        )

    def applies_to(self, context: RequestContext) -> bool:
        dispenser = self.dispenser_for(context)
        if dispenser is None:
            return False
        unit = context.dose.unit
        return units_match(unit, dispenser.unit) or units_match(unit, dispenser.plural_unit)

    def modify(self, instruction: SignatureInstruction, context: RequestContext) -> SignatureInstruction:
        dispenser = self.dispenser_for(context)
        strength = context.medication.strength
        volume = Quantity(round(context.dose.value / dispenser.conversion_ratio, 2), dispenser.reference_unit)
        converted = [volume]
        single = not context.medication.is_multi_ingredient
        if single and units_match(strength.denominator.unit, dispenser.reference_unit):
            converted.append(Quantity(round(volume.value * strength.per_unit, 2), strength.numerator.unit))

        per_unit = format_number(round(1 / dispenser.conversion_ratio, 4))
        return instruction.replace(
            dose_suffix=f" ({', '.join(describe_quantity(q) for q in converted)})",
            secondary_doses=tuple(converted),
            trailing=(*instruction.trailing, f"using {dispenser.type} dispenser"),
        ).with_additional_instruction(
            f"Each {dispenser.unit} dispenses {per_unit} {dispenser.reference_unit}"
        )

    def explain(self) -> str:
        return "Dispenser units: converts metered units to volume and weight using the dispenser ratio"


@dataclass(frozen=True)
class StrengthDisplayModifier:
    """Shows the paired dose (weight for counts, volume for weights) when nothing else did."""
    kind: ClassVar[str] = "strength_display"
    priority: int = 20
    tables: ReferenceTables = _tables_field()

    def applies_to(self, context: RequestContext) -> bool:
        return calculate_dual_dosage(context.medication, context.dose) is not None

    def modify(self, instruction: SignatureInstruction, context: RequestContext) -> SignatureInstruction:
        if instruction.secondary_doses:
            return instruction
        # the base strategy may have snapped or clamped the dose; pair what is shown
        dose = instruction.dose_quantity or context.dose.as_quantity()
        dual = calculate_dual_dosage(context.medication, dose)
        if dual is None:
            return instruction
        _, secondary = dual.ordered(dose.unit)
        shown = describe_quantity(secondary)
        if shown in instruction.text:
            return instruction
        if context.medication.family is DoseFormFamily.VOLUME:
            suffix = f", as {shown}"
        else:
            suffix = f" ({shown})"
        return instruction.replace(
            dose_suffix=(instruction.dose_suffix or "") + suffix,
            secondary_doses=(secondary,),
        )

    def explain(self) -> str:
        return "Strength display: appends the paired weight/volume dose when missing"


BaseStrategy = Union[DefaultStrategy, CountableUnitStrategy, LiquidStrategy, TopicalStrategy, NamedInjectableStrategy]
Modifier = Union[DispenserUnitModifier, StrengthDisplayModifier]

BASE_STRATEGY_TYPES = (DefaultStrategy, CountableUnitStrategy, LiquidStrategy, TopicalStrategy, NamedInjectableStrategy)
MODIFIER_TYPES = (DispenserUnitModifier, StrengthDisplayModifier)


def strategy_kind(strategy: object) -> str | None:
    """Tag of a closed-set variant, or None for anything outside both sets."""
    if type(strategy) in BASE_STRATEGY_TYPES or type(strategy) in MODIFIER_TYPES:
        return strategy.kind
    return None


def is_base_strategy(strategy: object) -> bool:
    return type(strategy) in BASE_STRATEGY_TYPES


def is_modifier(strategy: object) -> bool:
    return type(strategy) in MODIFIER_TYPES
