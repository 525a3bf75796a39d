"""
Service configuration.

Defaults can be overridden through MEDSIG_* environment variables, e.g.

    MEDSIG_LOCALE=en-US
    MEDSIG_AUDIT_CAPACITY=500
    MEDSIG_ALLOW_FALLBACK=1
"""

import os
from dataclasses import dataclass

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")


@dataclass(frozen=True)
class SignatureConfig:
    locale: str = "en-US"
    template_cache_size: int = 100
    audit_capacity: int = 1000
    dispatch_budget_ms: float = 2.0
    render_budget_ms: float = 1.0
    performance_logging: bool = True
    use_templates: bool = True
    # render a generic sentence instead of raising when no unique strategy matches
    allow_fallback: bool = False

    def __post_init__(self):
        if self.template_cache_size < 1:
            raise ValueError(f"Invalid template cache size: {self.template_cache_size!r}")
        if self.audit_capacity < 1:
            raise ValueError(f"Invalid audit capacity: {self.audit_capacity!r}")
        if self.dispatch_budget_ms <= 0 or self.render_budget_ms <= 0:
            raise ValueError(
                f"Invalid latency budget: dispatch={self.dispatch_budget_ms!r} render={self.render_budget_ms!r}"
            )

    @classmethod
    def from_env(cls) -> "SignatureConfig":
        return cls(
            locale=os.getenv("MEDSIG_LOCALE", cls.locale) or cls.locale,
            template_cache_size=_env_number("MEDSIG_TEMPLATE_CACHE_SIZE", cls.template_cache_size, int),
            audit_capacity=_env_number("MEDSIG_AUDIT_CAPACITY", cls.audit_capacity, int),
            dispatch_budget_ms=_env_number("MEDSIG_DISPATCH_BUDGET_MS", cls.dispatch_budget_ms, float),
            render_budget_ms=_env_number("MEDSIG_RENDER_BUDGET_MS", cls.render_budget_ms, float),
            performance_logging=_env_flag("MEDSIG_PERF_LOGGING", cls.performance_logging),
            use_templates=_env_flag("MEDSIG_USE_TEMPLATES", cls.use_templates),
            allow_fallback=_env_flag("MEDSIG_ALLOW_FALLBACK", cls.allow_fallback),
        )
