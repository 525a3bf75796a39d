"""
Signature generation: the public entry point tying tables, strategies and templates together.

High-level role
---------------
`SignatureService` owns one frozen registry, one dispatcher (with its audit log) and
one template engine. `generate()` turns a RequestContext into

    {"humanReadable": "...", "fhirRepresentation": {"dosageInstruction": {...}}}

Selection errors are always logged. They propagate unless the configuration allows
the conservative generic fallback sentence.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from stairval.notepad import Notepad

from .config import SignatureConfig
from .context import DoseInput, MaxDosePerPeriod, RequestContext, create_request_context
from .dispatcher import StrategyDispatcher
from .dosage import calculate_days_supply, calculate_dual_dosage, format_number, validate_dose
from .errors import StrategySelectionError
from .instruction import SignatureInstruction
from .medication import MedicationProfile
from .registry import StrategyRegistry, build_default_registry
from .tables import ReferenceTables, default_tables
from .templates import TemplateEngine

logger = logging.getLogger(__name__)

ADDITIONAL_DOSAGE_URL = "http://example.org/fhir/StructureDefinition/additional-dosage"


@dataclass(frozen=True)
class SignatureResult:
    human_readable: str
    fhir_representation: dict[str, Any]
    instruction: SignatureInstruction | None = field(default=None, compare=False)
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "humanReadable": self.human_readable,
            "fhirRepresentation": self.fhir_representation,
        }


def build_fhir_representation(
    context: RequestContext,
    instruction: SignatureInstruction | None,
    tables: ReferenceTables | None = None,
) -> dict[str, Any]:
    """
    Interchange dosage record. Without an instruction (fallback path) the entered dose
    and the frequency table's timing are used as-is.
    """
    if instruction is not None and instruction.timing is not None:
        timing = dict(instruction.timing)
    else:
        frequency = (tables or default_tables()).frequency(context.frequency)
        timing = {"repeat": frequency.fhir_mapping if frequency else {}}

    dose_quantity = context.dose.as_quantity()
    if instruction is not None and instruction.dose_quantity is not None:
        dose_quantity = instruction.dose_quantity

    dosage: dict[str, Any] = {
        "route": (instruction.route if instruction is not None and instruction.route else context.route),
        "doseAndRate": {"doseQuantity": dose_quantity.to_dict()},
        "timing": timing,
    }

    texts = [context.special_instructions] if context.special_instructions else []
    if instruction is not None:
        texts += [t for t in instruction.additional_instructions if t not in texts]
    if texts:
        dosage["additionalInstructions"] = {"text": "; ".join(texts)}

    if instruction is not None and instruction.secondary_doses:
        dosage["extension"] = [
            {"url": ADDITIONAL_DOSAGE_URL, "valueDosage": {"doseQuantity": q.to_dict()}}
            for q in instruction.secondary_doses
        ]
    return {"dosageInstruction": dosage}


def fallback_sentence(context: RequestContext, tables: ReferenceTables | None = None) -> str:
    """Generic wording used only when strategy selection failed and fallback is allowed."""
    tables = tables or default_tables()
    frequency = tables.frequency(context.frequency)
    frequency_text = frequency.human_readable if frequency else context.frequency
    route = tables.route(context.route)
    if route is not None:
        route_text = route.human_readable
    else:
        route_text = f"by {context.route} route" if context.route else "as directed"
    text = f"Take {format_number(context.dose.value)} {context.dose.unit} {route_text} {frequency_text}"
    if context.special_instructions:
        text += f" {context.special_instructions}"
    return text + "."


class SignatureService:

    def __init__(
        self,
        registry: StrategyRegistry,
        dispatcher: StrategyDispatcher,
        engine: TemplateEngine,
        tables: ReferenceTables,
        config: SignatureConfig,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.engine = engine
        self.tables = tables
        self.config = config

    @classmethod
    def from_config(
        cls,
        config: SignatureConfig | None = None,
        tables: ReferenceTables | None = None,
        registry: StrategyRegistry | None = None,
    ) -> "SignatureService":
        """
        Wire up a service. The registry is frozen here; build a custom one first if the
        default variants are not wanted.
        """
        config = config or SignatureConfig.from_env()
        tables = tables or default_tables()
        registry = registry or build_default_registry(tables)
        if not registry.frozen:
            registry.freeze()
        dispatcher = StrategyDispatcher(
            registry,
            audit_capacity=config.audit_capacity,
            dispatch_budget_ms=config.dispatch_budget_ms,
        )
        engine = TemplateEngine(
            config.locale,
            cache_size=config.template_cache_size,
            performance_logging=config.performance_logging,
            render_budget_ms=config.render_budget_ms,
        )
        return cls(registry, dispatcher, engine, tables, config)

    def render(self, instruction: SignatureInstruction) -> str:
        if self.config.use_templates:
            return self.engine.render(instruction.template_key, instruction.template_params())
        return instruction.text

    def generate(self, context: RequestContext) -> SignatureResult:
        try:
            instruction = self.dispatcher.dispatch(context)
        except StrategySelectionError as e:
            logger.error(f"Strategy selection failed for {context.medication.id!r}: {e}")
            if not self.config.allow_fallback:
                raise
            return SignatureResult(
                fallback_sentence(context, self.tables),
                build_fhir_representation(context, None, self.tables),
                fallback=True,
            )
        return SignatureResult(
            self.render(instruction),
            build_fhir_representation(context, instruction, self.tables),
            instruction,
        )

    def days_supply(self, profile: MedicationProfile, dose: DoseInput, frequency_key: str) -> int | None:
        return calculate_days_supply(profile, dose, frequency_key, self.tables)

    def dual_dosage(self, profile: MedicationProfile, dose: DoseInput):
        return calculate_dual_dosage(profile, dose)

    def validate(self, profile: MedicationProfile, dose: DoseInput, notepad: Notepad) -> None:
        validate_dose(profile, dose, notepad)
        if self.tables.dose_form(profile.dose_form) is None:
            notepad.add_warning(f"Dose form {profile.dose_form!r} is not in the dose-form table")


def generate_signature(
    medication: MedicationProfile,
    dose_value: float,
    dose_unit: str,
    route: str | None = None,
    frequency: str | None = None,
    special_instructions: str | None = None,
    *,
    as_needed: str | None = None,
    max_dose_per_period: MaxDosePerPeriod | None = None,
    service: SignatureService | None = None,
) -> SignatureResult:
    """
    One-call convenience: build the context and generate with `service`
    (a service configured from the environment when omitted).
    """
    service = service or SignatureService.from_config()
    context = create_request_context(
        medication,
        dose_value,
        dose_unit,
        route,
        frequency,
        special_instructions,
        as_needed=as_needed,
        max_dose_per_period=max_dose_per_period,
    )
    return service.generate(context)
