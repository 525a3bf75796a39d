import pytest

from medsig.context import create_request_context
from medsig.errors import (
    DuplicateStrategyError,
    PriorityConflictError,
    RegistryFrozenError,
    StrategyConfigurationError,
    UnsupportedStrategyError,
)
from medsig.registry import RegistrationRecord, StrategyRegistry, build_default_registry
from medsig.strategies import (
    CountableUnitStrategy,
    DefaultStrategy,
    DispenserUnitModifier,
    LiquidStrategy,
    Specificity,
    StrengthDisplayModifier,
)


@pytest.fixture
def registry() -> StrategyRegistry:
    return StrategyRegistry()


def test_duplicate_base_name_is_rejected(registry):
    registry.register_base("default", DefaultStrategy())
    with pytest.raises(DuplicateStrategyError):
        registry.register_base("default", LiquidStrategy())
    assert isinstance(registry.get_base("default"), DefaultStrategy)
    assert registry.registration_order() == [RegistrationRecord("base", "default")]


def test_duplicate_modifier_name_is_rejected(registry):
    registry.register_modifier("display", StrengthDisplayModifier(priority=20))
    with pytest.raises(DuplicateStrategyError):
        registry.register_modifier("display", StrengthDisplayModifier(priority=30))


def test_priority_conflict_leaves_registry_unchanged(registry):
    registry.register_modifier("A", DispenserUnitModifier(priority=10))
    with pytest.raises(PriorityConflictError) as excinfo:
        registry.register_modifier("B", StrengthDisplayModifier(priority=10))
    assert excinfo.value.existing == "A"
    assert registry.get_modifier("B") is None
    assert list(registry.modifiers()) == ["A"]


def test_configuration_errors_share_a_base_class(registry):
    registry.register_base("default", DefaultStrategy())
    with pytest.raises(StrategyConfigurationError):
        registry.register_base("default", DefaultStrategy())


def test_unknown_types_are_rejected(registry):
    class CustomStrategy(DefaultStrategy):
        pass

    with pytest.raises(UnsupportedStrategyError):
        registry.register_base("custom", CustomStrategy())
    with pytest.raises(TypeError):
        registry.register_base("plain", object())
    with pytest.raises(UnsupportedStrategyError):
        registry.register_modifier("base-as-modifier", DefaultStrategy())


def test_same_specificity_is_allowed_with_a_warning(registry, caplog):
    registry.register_base("countable", CountableUnitStrategy())
    registry.register_base("liquid", LiquidStrategy())
    assert "shares specificity DOSE_FORM" in caplog.text
    assert len(registry.base_strategies()) == 2


def test_plain_int_specificity(registry, caplog):
    registry.register_base("catch-all", DefaultStrategy(specificity=5))
    registry.register_base("liquid-override", LiquidStrategy(specificity=5))
    assert "shares specificity 5 with catch-all" in caplog.text
    text = registry.visualize_registry()
    assert "[5] catch-all" in text
    assert "[5] liquid-override" in text


def test_unregister(registry):
    registry.register_base("default", DefaultStrategy())
    registry.register_modifier("display", StrengthDisplayModifier())
    assert registry.unregister_base("default") is True
    assert registry.unregister_base("default") is False
    assert registry.unregister_modifier("missing") is False
    assert registry.registration_order() == [RegistrationRecord("modifier", "display")]


def test_clear(registry):
    registry.register_base("default", DefaultStrategy())
    registry.clear()
    assert registry.base_strategies() == {}
    assert registry.registration_order() == []


def test_frozen_registry_rejects_mutation():
    registry = build_default_registry(freeze=True)
    assert registry.frozen
    with pytest.raises(RegistryFrozenError):
        registry.register_base("another", DefaultStrategy())
    with pytest.raises(RegistryFrozenError):
        registry.unregister_modifier("strength-display")
    with pytest.raises(RegistryFrozenError):
        registry.clear()
    assert registry.get_modifier("strength-display") is not None


def test_default_registry_contents():
    registry = build_default_registry()
    assert list(registry.base_strategies()) == [
        "default", "countable-unit", "liquid", "topical", "testosterone-cypionate",
    ]
    assert {name: m.priority for name, m in registry.modifiers().items()} == {
        "dispenser-unit": 10,
        "strength-display": 20,
    }
    assert registry.get_base("testosterone-cypionate").specificity is Specificity.MEDICATION_ID


def test_composition_chain_for_cream(cream):
    registry = build_default_registry()
    context = create_request_context(cream, 2, "clicks")
    chain = registry.get_composition_chain(context)
    assert chain.base == "topical"
    assert chain.modifiers == ["dispenser-unit"]
    assert chain.tied == ("topical",)


def test_composition_chain_reports_ties(tablet, registry):
    registry.register_base("first", CountableUnitStrategy())
    registry.register_base("second", CountableUnitStrategy())
    chain = registry.get_composition_chain(create_request_context(tablet, 1, "tablet"))
    assert chain.tied == ("first", "second")


def test_explain_selection(vial):
    registry = build_default_registry()
    explanation = registry.explain_selection(create_request_context(vial, 200, "mg"))
    matched = [item.name for item in explanation.bases if item.matched]
    assert matched == ["default"]
    assert explanation.execution_order == ["default", "strength-display"]
    assert all(item.rationale for item in explanation.modifiers)


def test_visualize_registry():
    text = build_default_registry().visualize_registry()
    assert text.index("Base strategies (by specificity):") < text.index("Modifiers (by priority):")
    # highest specificity first
    assert text.index("testosterone-cypionate") < text.index("countable-unit") < text.index("] default")
    assert "[10] dispenser-unit" in text
    assert "1. base default" in text
    assert "7. modifier strength-display" in text


def test_visualize_empty_registry(registry):
    assert "(none)" in registry.visualize_registry()
