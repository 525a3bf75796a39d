import pytest

from conftest import make_profile
from medsig.context import MaxDosePerPeriod, create_request_context
from medsig.medication import Quantity
from medsig.strategies import (
    BASE_STRATEGY_TYPES,
    CountableUnitStrategy,
    DefaultStrategy,
    DispenserUnitModifier,
    LiquidStrategy,
    NamedInjectableStrategy,
    Specificity,
    StrengthDisplayModifier,
    TopicalStrategy,
    is_base_strategy,
    is_modifier,
    strategy_kind,
)


def test_closed_variant_sets():
    assert strategy_kind(DefaultStrategy()) == "default"
    assert strategy_kind(DispenserUnitModifier()) == "dispenser_unit"
    assert strategy_kind("not a strategy") is None
    assert is_base_strategy(LiquidStrategy())
    assert not is_base_strategy(StrengthDisplayModifier())
    assert is_modifier(StrengthDisplayModifier())
    assert len({cls.kind for cls in BASE_STRATEGY_TYPES}) == len(BASE_STRATEGY_TYPES)


def test_specificity_ordering():
    assert Specificity.DEFAULT < Specificity.DOSE_FORM < Specificity.DOSE_FORM_AND_INGREDIENT
    assert Specificity.MEDICATION_ID < Specificity.MEDICATION_SKU


class TestMatching:

    def test_countable_matches_on_exact_dose_form(self, tablet, cream):
        strategy = CountableUnitStrategy()
        assert strategy.matches(create_request_context(tablet, 1, "tablet"))
        assert not strategy.matches(create_request_context(cream, 2, "clicks"))

    def test_liquid_matches_dose_form_tokens(self, suspension, vial):
        strategy = LiquidStrategy()
        assert strategy.matches(create_request_context(suspension, 5, "mL"))
        assert not strategy.matches(create_request_context(vial, 1, "mL"))

    def test_topical(self, cream, tablet):
        assert TopicalStrategy().matches(create_request_context(cream, 2, "clicks"))
        assert not TopicalStrategy().matches(create_request_context(tablet, 1, "tablet"))

    def test_named_injectable_by_id_or_name(self, testosterone, vial):
        strategy = NamedInjectableStrategy()
        assert strategy.matches(create_request_context(testosterone, 100, "mg"))
        renamed = make_profile("tc-generic", "Vial", (200, "mg", 1, "mL"), name="Depo-Testosterone")
        assert strategy.matches(create_request_context(renamed, 100, "mg", "IM", "Once Per Week"))
        assert not strategy.matches(create_request_context(vial, 100, "mg"))

    def test_variants_can_be_configured(self, tablet):
        narrow = CountableUnitStrategy(dose_forms=("capsule",), specificity=Specificity.DOSE_FORM_AND_INGREDIENT)
        assert not narrow.matches(create_request_context(tablet, 1, "tablet"))
        assert narrow != CountableUnitStrategy()


class TestBaseInstructions:

    def test_half_tablet_from_weight(self, tablet):
        instruction = CountableUnitStrategy().build_instruction(create_request_context(tablet, 2.5, "mg"))
        assert instruction.text == "Take 1/2 tablet (2.5 mg) by mouth once daily."
        assert instruction.dose_quantity == Quantity(0.5, "tablet")
        assert instruction.secondary_doses == (Quantity(2.5, "mg"),)
        assert instruction.additional_instructions == ("Split tablet in half",)

    def test_tablet_count_below_quarter_is_floored(self, tablet):
        instruction = CountableUnitStrategy().build_instruction(create_request_context(tablet, 0.1, "tablet"))
        assert instruction.dose_text == "1/4 tablet"

    def test_mixed_number_tablets(self, tablet):
        instruction = CountableUnitStrategy().build_instruction(create_request_context(tablet, 1.5, "tablets"))
        assert instruction.dose_text == "1 and 1/2 tablets"

    def test_suspension(self, suspension):
        instruction = LiquidStrategy().build_instruction(create_request_context(suspension, 5, "mL"))
        assert instruction.text == "Take 5 mL, as 100 mg by mouth twice daily (shake well before use)."
        assert instruction.additional_instructions == ("Shake well before use",)

    def test_solution_has_no_shake_well_caution(self):
        solution = make_profile("ondansetron-solution", "Oral Solution", (4, "mg", 5, "mL"))
        context = create_request_context(solution, 5, "mL", "Orally", "Once Daily")
        instruction = LiquidStrategy().build_instruction(context)
        assert instruction.additional_instructions == ()
        assert "shake" not in instruction.text

    def test_combination_liquid_lists_ingredients(self, combination):
        instruction = LiquidStrategy().build_instruction(create_request_context(combination, 5, "mL"))
        assert instruction.text == (
            "Take 5 mL by mouth twice daily (shake well before use) (containing amoxicillin 400 mg, clavulanate 57 mg)."
        )
        assert instruction.secondary_doses == ()

    def test_default_uses_injection_wording_for_injected_routes(self, vial):
        instruction = DefaultStrategy().build_instruction(create_request_context(vial, 200, "mg"))
        assert instruction.template_key == "INJECTION_TEMPLATE"
        assert instruction.text == "Inject 200 mg intramuscularly once weekly."

    def test_default_prn(self):
        capsule = make_profile("caps", "Capsule", (50, "mg", 1, "capsule"))
        context = create_request_context(
            capsule, 1, "capsule", "Orally", "Four Times Daily",
            as_needed="",
            max_dose_per_period=MaxDosePerPeriod(Quantity(4, "capsules"), Quantity(24, "hours")),
        )
        instruction = DefaultStrategy().build_instruction(context)
        assert instruction.template_key == "PRN_INSTRUCTION_TEMPLATE"
        assert instruction.text == (
            "Take 1 capsule by mouth four times daily as needed. Do not exceed 4 capsules in 24 hours."
        )

    def test_named_injectable(self, testosterone):
        instruction = NamedInjectableStrategy().build_instruction(create_request_context(testosterone, 100, "mg"))
        assert instruction.text == (
            "Inject 100 mg, as 0.5 mL intramuscularly once every two weeks. Rotate injection sites."
        )
        assert "Rotate injection sites" in instruction.additional_instructions

    def test_timing_comes_from_the_frequency_table(self, tablet):
        instruction = CountableUnitStrategy().build_instruction(create_request_context(tablet, 1, "tablet", None, "TID"))
        assert instruction.timing == {"repeat": {"frequency": 3, "period": 1, "periodUnit": "d"}}


class TestModifiers:

    def test_dispenser_modifier(self, cream):
        context = create_request_context(cream, 2, "clicks")
        modifier = DispenserUnitModifier()
        assert modifier.applies_to(context)
        instruction = modifier.modify(TopicalStrategy().build_instruction(context), context)
        assert instruction.text == "Apply 2 clicks (0.5 mL, 25 mg) topically twice daily using Topiclick dispenser."
        assert instruction.secondary_doses == (Quantity(0.5, "mL"), Quantity(25, "mg"))
        assert instruction.additional_instructions == ("Each click dispenses 0.25 mL",)

    def test_dispenser_implied_by_dose_form(self):
        cream = make_profile("plain-cream", "Cream", (50, "mg", 1, "mL"), default_route="Topically")
        context = create_request_context(cream, 1, "click", None, "Once Daily")
        dispenser = DispenserUnitModifier().dispenser_for(context)
        assert dispenser.type == "Topiclick"
        assert dispenser.conversion_ratio == 4

    def test_dispenser_modifier_ignores_other_units(self, cream):
        assert not DispenserUnitModifier().applies_to(create_request_context(cream, 1, "mL"))

    @pytest.mark.parametrize(
        "dose, unit, suffix",
        [(200, "mg", ", as 1 mL"), (1, "mL", ", as 200 mg")],
    )
    def test_strength_display_on_volume_forms(self, vial, dose, unit, suffix):
        context = create_request_context(vial, dose, unit)
        instruction = StrengthDisplayModifier().modify(DefaultStrategy().build_instruction(context), context)
        assert instruction.dose_suffix == suffix

    def test_strength_display_uses_parentheses_for_countables(self, tablet):
        context = create_request_context(tablet, 2, "tablets")
        instruction = StrengthDisplayModifier().modify(CountableUnitStrategy().build_instruction(context), context)
        assert instruction.text == "Take 2 tablets (10 mg) by mouth once daily."

    def test_strength_display_leaves_existing_secondary_doses(self, tablet):
        context = create_request_context(tablet, 2.5, "mg")
        before = CountableUnitStrategy().build_instruction(context)
        assert StrengthDisplayModifier().modify(before, context) is before
