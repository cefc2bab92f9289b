"""Handlebars rendering for the turn context block."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pybars


TEMPLATES_DIR = Path(__file__).parent / "presets" / "templates"

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
}


def load_template(name: str, directory: Path = TEMPLATES_DIR) -> str:
    """Read ``{name}.hbs`` from the templates directory."""
    path = directory / f"{name}.hbs"
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise PromptError(f"Template {name!r} not readable: {e}") from e


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e
