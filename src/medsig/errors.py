"""
Exceptions raised by the strategy registry and dispatcher.

Configuration errors mean the registry was wired wrongly and should abort startup.
Selection errors are raised per request and are always audited before they propagate.
"""


class StrategyError(Exception):
    """Base class for registry and dispatch failures."""


class StrategyConfigurationError(StrategyError):
    pass


class DuplicateStrategyError(StrategyConfigurationError):
    def __init__(self, name: str, kind: str):
        self.name = name
        self.kind = kind
        super().__init__(f"{kind.capitalize()} strategy {name!r} is already registered")


class PriorityConflictError(StrategyConfigurationError):
    def __init__(self, name: str, priority: int, existing: str):
        self.name = name
        self.priority = priority
        self.existing = existing
        super().__init__(
            f"Modifier {name!r} cannot use priority {priority}: already held by {existing!r}"
        )


class RegistryFrozenError(StrategyConfigurationError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cannot {operation}: the registry is frozen")


class UnsupportedStrategyError(StrategyConfigurationError, TypeError):
    def __init__(self, name: str, strategy: object, kind: str):
        self.name = name
        self.kind = kind
        super().__init__(
            f"{kind.capitalize()} {name!r} has unsupported type {type(strategy).__name__}"
        )


class StrategySelectionError(StrategyError):
    pass


class AmbiguousStrategyError(StrategySelectionError):
    def __init__(self, strategies: list[str], specificity, context):
        self.strategies = list(strategies)
        self.specificity = specificity
        self.context = context
        level = getattr(specificity, "name", specificity)
        super().__init__(
            f"Ambiguous strategy selection for {context.medication.id!r}: "
            f"{', '.join(self.strategies)} all match at specificity {level}"
        )


class NoMatchingStrategyError(StrategySelectionError):
    def __init__(self, context, available: list[str]):
        self.context = context
        self.available = list(available)
        super().__init__(
            f"No strategy matches {context.medication.id!r} "
            f"(dose form {context.medication.dose_form!r}); available: {', '.join(self.available) or 'none'}"
        )
