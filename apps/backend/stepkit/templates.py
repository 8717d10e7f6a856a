"""Sandboxed text templates with a fixed helper whitelist."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.filters import FILTERS
from jinja2.sandbox import SandboxedEnvironment, safe_range


class TemplateRenderError(ValueError):
    """Raised when a template cannot be compiled or rendered."""


def _default(fallback: Any, value: Any = None) -> Any:
    if value is None or isinstance(value, Undefined) or value == "":
        return fallback
    return value


def _index(container: Any, *keys: Any) -> Any:
    current = container
    for key in keys:
        current = current[key]
    return current


def _split(value: str, sep: str | None = None) -> list[str]:
    return str(value).split(sep)


def _join(items: Any, sep: str = "") -> str:
    return str(sep).join(str(item) for item in items)


def _replace(value: str, old: str, new: str) -> str:
    return str(value).replace(old, new)


TEMPLATE_FUNCTIONS: Mapping[str, Any] = MappingProxyType(
    {
        "upper": lambda value: str(value).upper(),
        "lower": lambda value: str(value).lower(),
        "trim": lambda value: str(value).strip(),
        "replace": _replace,
        "split": _split,
        "join": _join,
        "default": _default,
        "eq": lambda a, b: a == b,
        "ne": lambda a, b: a != b,
        "lt": lambda a, b: a < b,
        "le": lambda a, b: a <= b,
        "gt": lambda a, b: a > b,
        "ge": lambda a, b: a >= b,
        "len": len,
        "index": _index,
        "range": safe_range,
    }
)

_SAFE_FILTER_NAMES = (
    "abs",
    "capitalize",
    "center",
    "first",
    "float",
    "format",
    "indent",
    "int",
    "last",
    "length",
    "list",
    "max",
    "min",
    "reverse",
    "round",
    "sort",
    "string",
    "sum",
    "title",
    "tojson",
    "truncate",
    "unique",
    "wordcount",
)

TEMPLATE_FILTERS: Mapping[str, Any] = MappingProxyType(
    {
        **{name: FILTERS[name] for name in _SAFE_FILTER_NAMES if name in FILTERS},
        "upper": TEMPLATE_FUNCTIONS["upper"],
        "lower": TEMPLATE_FUNCTIONS["lower"],
        "trim": TEMPLATE_FUNCTIONS["trim"],
        "replace": _replace,
        "split": _split,
        "join": lambda items, sep="": _join(items, sep),
        "default": lambda value, fallback="": _default(fallback, value),
    }
)


def _environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=True)
    env.globals.clear()
    env.globals.update(TEMPLATE_FUNCTIONS)
    env.filters.clear()
    env.filters.update(TEMPLATE_FILTERS)
    return env


def render_template(source: str, data: Mapping[str, Any] | None) -> str:
    env = _environment()
    try:
        template = env.from_string(source)
        return template.render(dict(data or {}))
    except TemplateError as exc:
        raise TemplateRenderError(str(exc) or type(exc).__name__) from exc
    except (TypeError, KeyError, IndexError, ValueError, AttributeError) as exc:
        raise TemplateRenderError(f"{type(exc).__name__}: {exc}") from exc
