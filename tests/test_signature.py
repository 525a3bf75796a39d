import pytest

from stairval.notepad import create_notepad

from conftest import make_profile
from medsig.config import SignatureConfig
from medsig.context import DoseInput, MaxDosePerPeriod, create_request_context
from medsig.errors import NoMatchingStrategyError
from medsig.medication import Quantity
from medsig.registry import StrategyRegistry
from medsig.signature import (
    ADDITIONAL_DOSAGE_URL,
    SignatureService,
    build_fhir_representation,
    generate_signature,
)
from medsig.strategies import CountableUnitStrategy


class TestScenarios:

    def test_vial_by_weight(self, vial, service):
        result = generate_signature(vial, 200, "mg", service=service)
        assert result.human_readable == "Inject 200 mg, as 1 mL intramuscularly once weekly."
        assert service.days_supply(vial, DoseInput(200, "mg"), "Once Per Week") == 70

    def test_half_tablet(self, tablet, service):
        result = generate_signature(tablet, 2.5, "mg", service=service)
        assert result.human_readable == "Take 1/2 tablet (2.5 mg) by mouth once daily."
        dosage = result.fhir_representation["dosageInstruction"]
        assert dosage["doseAndRate"]["doseQuantity"] == {"value": 0.5, "unit": "tablet"}
        assert dosage["additionalInstructions"] == {"text": "Split tablet in half"}

    def test_half_tablet_by_count(self, tablet, service):
        result = generate_signature(tablet, 0.5, "tablet", service=service)
        assert result.human_readable == "Take 1/2 tablet (2.5 mg) by mouth once daily."

    def test_tiny_dose_shows_the_quarter_it_became(self, tablet, service):
        result = generate_signature(tablet, 0.5, "mg", service=service)
        assert result.human_readable == "Take 1/4 tablet (1.25 mg) by mouth once daily."
        dosage = result.fhir_representation["dosageInstruction"]
        assert dosage["doseAndRate"]["doseQuantity"] == {"value": 0.25, "unit": "tablet"}
        assert dosage["extension"] == [
            {"url": ADDITIONAL_DOSAGE_URL, "valueDosage": {"doseQuantity": {"value": 1.25, "unit": "mg"}}},
        ]

    def test_suspension_caution_reaches_the_record(self, suspension, service):
        result = generate_signature(suspension, 5, "mL", service=service)
        assert result.human_readable == "Take 5 mL, as 100 mg by mouth twice daily (shake well before use)."
        dosage = result.fhir_representation["dosageInstruction"]
        assert dosage["additionalInstructions"] == {"text": "Shake well before use"}

    def test_combination_suspension(self, combination, service):
        result = generate_signature(combination, 5, "mL", service=service)
        assert result.human_readable == (
            "Take 5 mL by mouth twice daily (shake well before use) (containing amoxicillin 400 mg, clavulanate 57 mg)."
        )
        assert "extension" not in result.fhir_representation["dosageInstruction"]
        assert service.days_supply(combination, DoseInput(5, "mL"), "Twice Daily") == 10

    def test_topiclick_cream(self, cream, service):
        result = generate_signature(cream, 2, "clicks", service=service)
        assert result.human_readable == (
            "Apply 2 clicks (0.5 mL, 25 mg) topically twice daily using Topiclick dispenser."
        )
        dosage = result.fhir_representation["dosageInstruction"]
        assert dosage["extension"] == [
            {"url": ADDITIONAL_DOSAGE_URL, "valueDosage": {"doseQuantity": {"value": 0.5, "unit": "mL"}}},
            {"url": ADDITIONAL_DOSAGE_URL, "valueDosage": {"doseQuantity": {"value": 25.0, "unit": "mg"}}},
        ]

    def test_named_injectable(self, testosterone, service):
        result = generate_signature(testosterone, 100, "mg", service=service)
        assert result.human_readable == (
            "Inject 100 mg, as 0.5 mL intramuscularly once every two weeks. Rotate injection sites."
        )

    def test_prn_with_ceiling(self, tablet, service):
        result = generate_signature(
            tablet, 1, "tablet", frequency="Four Times Daily",
            as_needed="pain",
            max_dose_per_period=MaxDosePerPeriod(Quantity(8, "tablets"), Quantity(24, "hours")),
            service=service,
        )
        assert result.human_readable == (
            "Take 1 tablet (5 mg) by mouth four times daily as needed for pain. "
            "Do not exceed 8 tablets in 24 hours."
        )

    def test_special_instructions(self, tablet, service):
        result = generate_signature(tablet, 1, "tablet", special_instructions=" with food ", service=service)
        assert result.human_readable == "Take 1 tablet (5 mg) by mouth once daily with food."
        assert result.fhir_representation["dosageInstruction"]["additionalInstructions"] == {"text": "with food"}


@pytest.mark.parametrize(
    "fixture_name, dose, unit",
    [
        ("tablet", 2.5, "mg"),
        ("tablet", 1.5, "tablets"),
        ("tablet", 0.75, "tablet"),
        ("vial", 1, "mL"),
        ("cream", 3, "clicks"),
        ("cream", 1, "click"),
        ("suspension", 7.5, "mL"),
        ("combination", 5, "mL"),
        ("testosterone", 0.5, "mL"),
    ],
)
def test_templates_agree_with_direct_composition(request, service, fixture_name, dose, unit):
    profile = request.getfixturevalue(fixture_name)
    context = create_request_context(profile, dose, unit, special_instructions="at bedtime", as_needed="sleep")
    instruction = service.dispatcher.dispatch(context)
    assert service.render(instruction) == instruction.text


def test_text_mode_matches_template_mode(tables, cream):
    templated = SignatureService.from_config(SignatureConfig(performance_logging=False), tables=tables)
    direct = SignatureService.from_config(
        SignatureConfig(performance_logging=False, use_templates=False), tables=tables
    )
    assert (
        generate_signature(cream, 2, "clicks", service=templated).human_readable
        == generate_signature(cream, 2, "clicks", service=direct).human_readable
    )


class TestFhir:

    def test_shape(self, vial, service):
        result = generate_signature(vial, 200, "mg", service=service)
        assert result.to_dict()["fhirRepresentation"] == {
            "dosageInstruction": {
                "route": "IM",
                "doseAndRate": {"doseQuantity": {"value": 200, "unit": "mg"}},
                "timing": {"repeat": {"frequency": 1, "period": 1, "periodUnit": "wk"}},
                "extension": [
                    {"url": ADDITIONAL_DOSAGE_URL, "valueDosage": {"doseQuantity": {"value": 1.0, "unit": "mL"}}},
                ],
            }
        }
        assert set(result.to_dict()) == {"humanReadable", "fhirRepresentation"}

    def test_without_instruction_uses_request(self, tablet):
        context = create_request_context(tablet, 1, "tablet", "Orally", "BID")
        dosage = build_fhir_representation(context, None)["dosageInstruction"]
        assert dosage["doseAndRate"]["doseQuantity"] == {"value": 1, "unit": "tablet"}
        assert dosage["timing"] == {"repeat": {"frequency": 2, "period": 1, "periodUnit": "d"}}
        assert "extension" not in dosage


class TestSelectionFailures:

    @pytest.fixture
    def narrow_registry(self, tables) -> StrategyRegistry:
        registry = StrategyRegistry()
        registry.register_base("countable", CountableUnitStrategy(tables=tables))
        return registry

    def test_errors_propagate_by_default(self, tables, narrow_registry, cream, caplog):
        service = SignatureService.from_config(SignatureConfig(), tables=tables, registry=narrow_registry)
        with pytest.raises(NoMatchingStrategyError):
            generate_signature(cream, 2, "clicks", service=service)
        assert "Strategy selection failed" in caplog.text
        assert narrow_registry.frozen

    def test_fallback_when_allowed(self, tables, narrow_registry, cream, caplog):
        service = SignatureService.from_config(
            SignatureConfig(allow_fallback=True), tables=tables, registry=narrow_registry
        )
        result = generate_signature(cream, 2, "clicks", service=service)
        assert result.fallback
        assert result.instruction is None
        assert result.human_readable == "Take 2 clicks topically twice daily."
        assert "Strategy selection failed" in caplog.text
        assert len(service.dispatcher.get_audit_log()) == 1


def test_validate_flags_unknown_dose_form(service):
    profile = make_profile("lozenge", "Lozenge", (10, "mg", 1, "lozenge"))
    notepad = create_notepad("validate")
    service.validate(profile, create_request_context(profile, 1, "lozenge", "Orally", "Once Daily").dose, notepad)
    assert any("not in the dose-form table" in w.message for w in notepad.warnings())
