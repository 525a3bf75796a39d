"""
Strategy registry.

High-level role
---------------
Holds the named base strategies and modifiers for one signature service. It is built
once at startup, optionally frozen, and then only read by dispatchers. Registration
errors (duplicate names, clashing modifier priorities) are configuration bugs and are
raised immediately; nothing is stored when a registration fails.
"""

import logging
import threading
from collections import namedtuple

from .context import RequestContext
from .errors import (
    DuplicateStrategyError,
    PriorityConflictError,
    RegistryFrozenError,
    UnsupportedStrategyError,
)
from .strategies import (
    BaseStrategy,
    CountableUnitStrategy,
    DefaultStrategy,
    DispenserUnitModifier,
    LiquidStrategy,
    Modifier,
    NamedInjectableStrategy,
    StrengthDisplayModifier,
    TopicalStrategy,
    is_base_strategy,
    is_modifier,
)
from .tables import ReferenceTables, default_tables

logger = logging.getLogger(__name__)

RegistrationRecord = namedtuple("RegistrationRecord", ["kind", "name"])

CompositionChain = namedtuple("CompositionChain", ["base", "modifiers", "tied"])
"""
base      – name of the highest-specificity matching base strategy, or None
modifiers – names of applicable modifiers in execution order
tied      – every base name sharing the top specificity (more than one means dispatch will fail)
"""

StrategyExplanation = namedtuple("StrategyExplanation", ["name", "kind", "rank", "matched", "rationale"])
SelectionExplanation = namedtuple("SelectionExplanation", ["bases", "modifiers", "execution_order"])


class StrategyRegistry:

    def __init__(self):
        self._bases: dict[str, BaseStrategy] = {}
        self._modifiers: dict[str, Modifier] = {}
        self._order: list[RegistrationRecord] = []
        self._frozen = False
        self._lock = threading.Lock()

    # ---- lifecycle ----

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "StrategyRegistry":
        """Disallow further changes; call before sharing the registry across threads."""
        self._frozen = True
        return self

    def _check_mutable(self, operation: str) -> None:
        if self._frozen:
            raise RegistryFrozenError(operation)

    # ---- registration ----

    def register_base(self, name: str, strategy: BaseStrategy) -> None:
        with self._lock:
            self._check_mutable(f"register base strategy {name!r}")
            if not is_base_strategy(strategy):
                raise UnsupportedStrategyError(name, strategy, "base")
            if name in self._bases:
                raise DuplicateStrategyError(name, "base")

            sharing = [n for n, s in self._bases.items() if s.specificity == strategy.specificity]
            self._bases[name] = strategy
            self._order.append(RegistrationRecord("base", name))

        if sharing:
            level = getattr(strategy.specificity, "name", strategy.specificity)
            logger.warning(
                f"Base strategy {name!r} shares specificity {level} with "
                f"{', '.join(sharing)}; requests matching more than one of them will be rejected"
            )

    def register_modifier(self, name: str, modifier: Modifier) -> None:
        with self._lock:
            self._check_mutable(f"register modifier {name!r}")
            if not is_modifier(modifier):
                raise UnsupportedStrategyError(name, modifier, "modifier")
            if name in self._modifiers:
                raise DuplicateStrategyError(name, "modifier")
            holder = next((n for n, m in self._modifiers.items() if m.priority == modifier.priority), None)
            if holder is not None:
                raise PriorityConflictError(name, modifier.priority, holder)

            self._modifiers[name] = modifier
            self._order.append(RegistrationRecord("modifier", name))

    def unregister_base(self, name: str) -> bool:
        with self._lock:
            self._check_mutable(f"unregister base strategy {name!r}")
            if self._bases.pop(name, None) is None:
                return False
            self._order.remove(RegistrationRecord("base", name))
            return True

    def unregister_modifier(self, name: str) -> bool:
        with self._lock:
            self._check_mutable(f"unregister modifier {name!r}")
            if self._modifiers.pop(name, None) is None:
                return False
            self._order.remove(RegistrationRecord("modifier", name))
            return True

    def clear(self) -> None:
        with self._lock:
            self._check_mutable("clear the registry")
            self._bases.clear()
            self._modifiers.clear()
            self._order.clear()

    # ---- read access ----

    def base_strategies(self) -> dict[str, BaseStrategy]:
        """Snapshot in registration order."""
        with self._lock:
            return dict(self._bases)

    def modifiers(self) -> dict[str, Modifier]:
        with self._lock:
            return dict(self._modifiers)

    def registration_order(self) -> list[RegistrationRecord]:
        with self._lock:
            return list(self._order)

    def get_base(self, name: str) -> BaseStrategy | None:
        return self._bases.get(name)

    def get_modifier(self, name: str) -> Modifier | None:
        return self._modifiers.get(name)

    # ---- introspection ----

    def get_composition_chain(self, context: RequestContext) -> CompositionChain:
        """
        What dispatch would run for `context`, without running it. Ties are reported
        in `tied` rather than raised.
        """
        matched = [(n, s) for n, s in self.base_strategies().items() if s.matches(context)]
        if not matched:
            return CompositionChain(None, self._applicable_modifiers(context), ())
        top = max(s.specificity for _, s in matched)
        tied = tuple(n for n, s in matched if s.specificity == top)
        return CompositionChain(tied[0], self._applicable_modifiers(context), tied)

    def _applicable_modifiers(self, context: RequestContext) -> list[str]:
        applicable = [(m.priority, n) for n, m in self.modifiers().items() if m.applies_to(context)]
        return [n for _, n in sorted(applicable)]

    def explain_selection(self, context: RequestContext) -> SelectionExplanation:
        bases = []
        for name, strategy in self.base_strategies().items():
            matched = bool(strategy.matches(context))
            verdict = "matches" if matched else "does not match"
            bases.append(
                StrategyExplanation(name, strategy.kind, strategy.specificity, matched, f"{verdict}: {strategy.explain()}")
            )
        modifiers = []
        for name, modifier in sorted(self.modifiers().items(), key=lambda item: item[1].priority):
            applies = bool(modifier.applies_to(context))
            verdict = "applies" if applies else "does not apply"
            modifiers.append(
                StrategyExplanation(name, modifier.kind, modifier.priority, applies, f"{verdict}: {modifier.explain()}")
            )

        chain = self.get_composition_chain(context)
        order = ([chain.base] if chain.base is not None and len(chain.tied) == 1 else []) + chain.modifiers
        return SelectionExplanation(bases, modifiers, order)

    def visualize_registry(self) -> str:
        lines = ["Base strategies (by specificity):"]
        bases = sorted(self.base_strategies().items(), key=lambda item: -item[1].specificity)
        for name, strategy in bases:
            level = getattr(strategy.specificity, "name", strategy.specificity)
            lines.append(f"  [{level}] {name}: {strategy.explain()}")
        if not bases:
            lines.append("  (none)")

        lines.append("Modifiers (by priority):")
        modifiers = sorted(self.modifiers().items(), key=lambda item: item[1].priority)
        for name, modifier in modifiers:
            lines.append(f"  [{modifier.priority}] {name}: {modifier.explain()}")
        if not modifiers:
            lines.append("  (none)")

        lines.append("Registration order:")
        for index, record in enumerate(self.registration_order(), start=1):
            lines.append(f"  {index}. {record.kind} {record.name}")
        return "\n".join(lines)


def build_default_registry(tables: ReferenceTables | None = None, *, freeze: bool = False) -> StrategyRegistry:
    """
    The standard set of variants. Pass `freeze=True` once no further strategies will be added.
    """
    tables = tables or default_tables()
    registry = StrategyRegistry()
    registry.register_base("default", DefaultStrategy(tables=tables))
    registry.register_base("countable-unit", CountableUnitStrategy(tables=tables))
    registry.register_base("liquid", LiquidStrategy(tables=tables))
    registry.register_base("topical", TopicalStrategy(tables=tables))
    registry.register_base("testosterone-cypionate", NamedInjectableStrategy(tables=tables))
    registry.register_modifier("dispenser-unit", DispenserUnitModifier(priority=10, tables=tables))
    registry.register_modifier("strength-display", StrengthDisplayModifier(priority=20, tables=tables))
    if freeze:
        registry.freeze()
    return registry
