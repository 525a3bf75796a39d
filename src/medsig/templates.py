"""
Locale-aware template rendering.

High-level role
---------------
Signature sentences are described by small message templates written in an ICU-style
micro-syntax:

- `{name}` inserts a value;
- `{name, select, key {...} undefined {...} other {...}}` branches on a value, where
  `undefined` is taken when the value is missing or None;
- `{name, plural, =0.25 {...} one {...} other {...}}` branches on a number, exact
  `=N` matches first, and `#` inside a branch prints that number.

A message is parsed once, compiled into a jinja2 template and kept in a bounded
per-(locale, key) cache. Rendering never raises: any failure is logged and turned into
`[Template Error: KEY]` so one broken template cannot sink a whole request.
"""

import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping

from jinja2 import Environment, StrictUndefined

from .dosage import format_number

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
DEFAULT_CACHE_SIZE = 100
TEMPLATE_ERROR = "[Template Error: {key}]"

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SELECTOR = re.compile(r"[A-Za-z0-9_\-]+")
_EXACT_SELECTOR = re.compile(r"=-?[0-9]+(\.[0-9]+)?")
# names jinja2 would read as literals or operators
_RESERVED_NAMES = {
    "and", "or", "not", "in", "is", "if", "else", "true", "false", "none",
    "True", "False", "None", "loop", "self", "plural_category",
}
_PLURAL_KEYWORDS = {"zero", "one", "two", "few", "many", "other"}


class MessageSyntaxError(ValueError):
    pass


class TemplateNotFoundError(KeyError):
    pass


# ---- message AST ----

@dataclass(frozen=True)
class _Text:
    value: str


@dataclass(frozen=True)
class _Argument:
    name: str


@dataclass(frozen=True)
class _Pound:
    pass


@dataclass(frozen=True)
class _Select:
    name: str
    options: tuple


@dataclass(frozen=True)
class _Plural:
    name: str
    options: tuple


class _MessageParser:
    def __init__(self, source: str):
        self.source = source
        self.pos = 0

    def parse(self) -> list:
        nodes = self._message(in_plural=False, nested=False)
        if self.pos < len(self.source):
            raise self._error("unexpected '}'")
        return nodes

    def _error(self, reason: str) -> MessageSyntaxError:
        return MessageSyntaxError(f"{reason} at position {self.pos} in {self.source!r}")

    def _peek(self) -> str:
        return self.source[self.pos] if self.pos < len(self.source) else ""

    def _skip_whitespace(self) -> None:
        while self._peek().isspace():
            self.pos += 1

    def _expect(self, char: str) -> None:
        if self._peek() != char:
            raise self._error(f"expected {char!r}")
        self.pos += 1

    def _message(self, in_plural: bool, nested: bool) -> list:
        nodes: list = []
        buffer: list[str] = []

        def flush():
            if buffer:
                nodes.append(_Text("".join(buffer)))
                buffer.clear()

        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char == "{":
                flush()
                nodes.append(self._argument(in_plural))
            elif char == "}":
                if not nested:
                    raise self._error("unmatched '}'")
                break
            elif char == "#" and in_plural:
                flush()
                nodes.append(_Pound())
                self.pos += 1
            elif char == "'":
                buffer.append(self._quoted(in_plural))
            else:
                buffer.append(char)
                self.pos += 1
        flush()
        return nodes

    def _quoted(self, in_plural: bool) -> str:
        following = self.source[self.pos + 1:self.pos + 2]
        if following == "'":
            self.pos += 2
            return "'"
        if following in ("{", "}") or (following == "#" and in_plural):
            end = self.source.find("'", self.pos + 1)
            if end == -1:
                text = self.source[self.pos + 1:]
                self.pos = len(self.source)
            else:
                text = self.source[self.pos + 1:end]
                self.pos = end + 1
            return text
        self.pos += 1
        return "'"

    def _identifier(self, pattern=_IDENTIFIER) -> str:
        match = pattern.match(self.source, self.pos)
        if not match:
            raise self._error("expected a name")
        self.pos = match.end()
        return match.group(0)

    def _argument(self, in_plural: bool):
        self._expect("{")
        self._skip_whitespace()
        name = self._identifier()
        if name in _RESERVED_NAMES or name.startswith("__"):
            raise self._error(f"reserved argument name {name!r}")
        self._skip_whitespace()
        if self._peek() == "}":
            self.pos += 1
            return _Argument(name)
        self._expect(",")
        self._skip_whitespace()
        kind = self._identifier()
        if kind not in ("select", "plural"):
            raise self._error(f"unsupported argument type {kind!r}")
        self._skip_whitespace()
        self._expect(",")
        options = self._options(kind, in_plural or kind == "plural")
        self._expect("}")
        if kind == "select":
            return _Select(name, options)
        return _Plural(name, options)

    def _options(self, kind: str, in_plural: bool) -> tuple:
        options = []
        seen = set()
        while True:
            self._skip_whitespace()
            if self._peek() in ("}", ""):
                break
            if kind == "plural" and self._peek() == "=":
                selector = self._identifier(_EXACT_SELECTOR)
            else:
                selector = self._identifier(_SELECTOR)
                if kind == "plural" and selector not in _PLURAL_KEYWORDS:
                    raise self._error(f"unknown plural category {selector!r}")
            if selector in seen:
                raise self._error(f"duplicate selector {selector!r}")
            seen.add(selector)
            self._skip_whitespace()
            self._expect("{")
            body = self._message(in_plural=in_plural, nested=True)
            self._expect("}")
            options.append((selector, tuple(body)))
        if "other" not in seen:
            raise self._error(f"{kind} argument requires an 'other' option")
        return tuple(options)


# ---- compilation to jinja2 ----

class _Compiler:
    def __init__(self):
        self._counter = 0

    def compile(self, nodes, plural_var: str | None = None) -> str:
        return "".join(self._emit(node, plural_var) for node in nodes)

    def _emit(self, node, plural_var: str | None) -> str:
        if isinstance(node, _Text):
            if "{" in node.value or "}" in node.value:
                return "{{ " + repr(node.value) + " }}"
            return node.value
        if isinstance(node, _Argument):
            return "{{ " + node.name + "|fmt }}"
        if isinstance(node, _Pound):
            if plural_var is None:
                raise MessageSyntaxError("'#' used outside a plural argument")
            return "{{ " + plural_var + "|fmt }}"
        if isinstance(node, _Select):
            return self._select(node, plural_var)
        if isinstance(node, _Plural):
            return self._plural(node)
        raise MessageSyntaxError(f"unknown message node {node!r}")

    def _select(self, node: _Select, plural_var: str | None) -> str:
        branches = dict(node.options)
        undefined_body = branches.get("undefined", branches["other"])
        parts = [
            "{% if " + node.name + " is not defined or " + node.name + " is none %}",
            self.compile(undefined_body, plural_var),
        ]
        for selector, body in node.options:
            if selector in ("undefined", "other"):
                continue
            parts.append("{% elif " + node.name + "|string == " + repr(selector) + " %}")
            parts.append(self.compile(body, plural_var))
        parts += ["{% else %}", self.compile(branches["other"], plural_var), "{% endif %}"]
        return "".join(parts)

    def _plural(self, node: _Plural) -> str:
        var = f"__plural_{self._counter}"
        self._counter += 1
        exact = [(s, b) for s, b in node.options if s.startswith("=")]
        keyword = [(s, b) for s, b in node.options if not s.startswith("=") and s != "other"]
        other = dict(node.options)["other"]

        parts = ["{% set " + var + " = " + node.name + "|number %}"]
        conditions = [(f"{var} == {float(s[1:])!r}", body) for s, body in exact]
        conditions += [(f"plural_category({var}) == {s!r}", body) for s, body in keyword]
        for index, (condition, body) in enumerate(conditions):
            tag = "if" if index == 0 else "elif"
            parts.append("{% " + tag + " " + condition + " %}")
            parts.append(self.compile(body, var))
        if conditions:
            parts += ["{% else %}", self.compile(other, var), "{% endif %}"]
        else:
            parts.append(self.compile(other, var))
        return "".join(parts)


def parse_message(source: str) -> list:
    return _MessageParser(source).parse()


def compile_message(source: str) -> str:
    """Translate a micro-syntax message into jinja2 template source."""
    return _Compiler().compile(parse_message(source))


def _format_value(value: Any) -> str:
    if value is None:
        raise ValueError("cannot render a None value")
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError(f"plural value must be a number, got {value!r}")
    return float(value)


def _english_plural(value: float) -> str:
    return "one" if value == 1 else "other"


# locale language → plural category rule; unknown languages use the English rule
PLURAL_RULES: dict[str, Callable[[float], str]] = {
    "en": _english_plural,
}


def plural_rule(locale: str) -> Callable[[float], str]:
    language = locale.split("-")[0].lower()
    return PLURAL_RULES.get(language, _english_plural)


# ---- template library ----

_DOSE = "{dose_text}{dose_suffix, select, undefined {} other {{dose_suffix}}}"
_PRN = "{prn, select, undefined {} other { as needed{indication, select, undefined {} other { for {indication}}}}}"
_TAIL = (
    "{special_instructions, select, undefined {} other { {special_instructions}}}"
    "{caution, select, undefined {} other { {caution}}}"
    "{trailing, select, undefined {} other { {trailing}}}"
    ".{sentences, select, undefined {} other { {sentences}}}"
)

TEMPLATE_LIBRARY: dict[str, dict[str, str]] = {
    DEFAULT_LOCALE: {
        "ORAL_TABLET_TEMPLATE": (
            "{verb} {count, select, undefined {{dose_text}} other "
            "{{count, plural, =0.25 {1/4 {unit}} =0.5 {1/2 {unit}} =0.75 {3/4 {unit}} other {{dose_text}}}}}"
            "{dose_suffix, select, undefined {} other {{dose_suffix}}}"
            " {route} {frequency}" + _PRN + _TAIL
        ),
        "LIQUID_DOSE_TEMPLATE": "{verb} " + _DOSE + " {route} {frequency}" + _PRN + _TAIL,
        "TOPICAL_APPLICATION_TEMPLATE": (
            "{verb} {clicks, select, undefined {{dose_text}} other "
            "{{clicks, plural, =1 {# {dispenser_unit}} other {# {dispenser_plural_unit}}}}}"
            "{dose_suffix, select, undefined {} other {{dose_suffix}}}"
            " {route} {frequency}" + _PRN + _TAIL
        ),
        "INJECTION_TEMPLATE": "{verb} " + _DOSE + " {route} {frequency}" + _PRN + _TAIL,
        "HIGH_RISK_INJECTION_TEMPLATE": "{verb} " + _DOSE + " {route} {frequency}" + _PRN + _TAIL,
        "PRN_INSTRUCTION_TEMPLATE": (
            "{verb} " + _DOSE + " {route} {frequency} as needed"
            "{indication, select, undefined {} other { for {indication}}}" + _TAIL
        ),
        "DEFAULT_TEMPLATE": "{verb} " + _DOSE + " {route} {frequency}" + _PRN + _TAIL,
    },
}


@dataclass
class TemplateMetrics:
    renders: int = 0
    render_time_ms: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    templates_loaded: int = 0


class TemplateEngine:
    """
    Compiles, caches and renders signature templates for one active locale at a time.

    Thread-safe: the cache and the template library are guarded by a lock.
    """

    def __init__(
        self,
        locale: str = DEFAULT_LOCALE,
        *,
        cache_size: int = DEFAULT_CACHE_SIZE,
        performance_logging: bool = True,
        render_budget_ms: float = 1.0,
        library: Mapping[str, Mapping[str, str]] | None = None,
    ):
        if cache_size < 1:
            raise ValueError(f"Invalid template cache size: {cache_size!r}")
        self._library = library if library is not None else TEMPLATE_LIBRARY
        self._cache_size = cache_size
        self._performance_logging = performance_logging
        self._render_budget_ms = render_budget_ms
        self._templates: dict[str, dict[str, str]] = {}
        self._loaded: set[str] = set()
        self._cache: OrderedDict[tuple[str, str], Any] = OrderedDict()
        self._metrics = TemplateMetrics()
        self._lock = threading.RLock()
        self._env = Environment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
        self._env.filters["fmt"] = _format_value
        self._env.filters["number"] = _to_number
        self._locale = locale

    @property
    def locale(self) -> str:
        return self._locale

    def set_locale(self, locale: str) -> None:
        """
        Switch the active locale. Only that locale's compiled templates are dropped;
        its library is reloaded lazily on the next render.
        """
        with self._lock:
            self._locale = locale
            for cache_key in [k for k in self._cache if k[0] == locale]:
                del self._cache[cache_key]
            self._loaded.discard(locale)

    def register_template(self, locale: str, key: str, template: str) -> None:
        with self._lock:
            self._ensure_loaded(locale)
            self._templates.setdefault(locale, {})[key] = template
            self._cache.pop((locale, key), None)
            if locale == DEFAULT_LOCALE:
                # other locales without their own copy compiled this source as a fallback
                stale = [k for k in self._cache if k[1] == key and key not in self._templates.get(k[0], {})]
                for cache_key in stale:
                    del self._cache[cache_key]

    def has_template(self, key: str, locale: str | None = None) -> bool:
        with self._lock:
            try:
                self._source(locale or self._locale, key)
            except TemplateNotFoundError:
                return False
            return True

    def render(self, key: str, data: Mapping[str, Any], locale: str | None = None) -> str:
        locale = locale or self._locale
        started = time.perf_counter()
        try:
            template = self._compiled(locale, key)
            text = template.render(dict(data))
        except Exception as e:
            logger.error(f"Failed to render template {key!r} ({locale}): {e}")
            return TEMPLATE_ERROR.format(key=key)

        if self._performance_logging:
            elapsed_ms = (time.perf_counter() - started) * 1000
            with self._lock:
                self._metrics.renders += 1
                self._metrics.render_time_ms += elapsed_ms
            if elapsed_ms > self._render_budget_ms:
                logger.warning(
                    f"Rendering {key!r} took {elapsed_ms:.3f} ms (budget {self._render_budget_ms} ms)"
                )
        return text

    def get_performance_metrics(self) -> TemplateMetrics:
        with self._lock:
            return replace(self._metrics)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self._metrics.cache_hits = 0
            self._metrics.cache_misses = 0

    def cached_keys(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._cache)

    # ---- internals ----

    def _ensure_loaded(self, locale: str) -> None:
        if locale in self._loaded:
            return
        templates = self._templates.setdefault(locale, {})
        for key, source in self._library.get(locale, {}).items():
            # templates registered at runtime win over the built-in library
            if key not in templates:
                templates[key] = source
                self._metrics.templates_loaded += 1
        self._loaded.add(locale)

    def _source(self, locale: str, key: str) -> str:
        self._ensure_loaded(locale)
        source = self._templates[locale].get(key)
        if source is None and locale != DEFAULT_LOCALE:
            self._ensure_loaded(DEFAULT_LOCALE)
            source = self._templates[DEFAULT_LOCALE].get(key)
        if source is None:
            raise TemplateNotFoundError(key)
        return source

    def _compiled(self, locale: str, key: str):
        cache_key = (locale, key)
        with self._lock:
            template = self._cache.get(cache_key)
            if template is not None:
                self._cache.move_to_end(cache_key)
                self._metrics.cache_hits += 1
                return template

            self._metrics.cache_misses += 1
            logger.debug(f"Compiling template {key!r} for {locale}")
            source = self._source(locale, key)
            template = self._env.from_string(
                compile_message(source), globals={"plural_category": plural_rule(locale)}
            )
            self._cache[cache_key] = template
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
            return template
