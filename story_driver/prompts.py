"""Handlebars rendering for macros and talk-control prompts."""

import re
from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

_NAME_MACRO = re.compile(r"(?<!\{)\{\{\s*(user|char)\s*\}\}(?!\})")


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


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


def substitute_macros(text: str, user: str, char: str | None = None) -> str:
    """Expand {{user}} / {{char}} in authored reply text.

    Text without macros is returned untouched so authored punctuation and
    HTML-ish characters are never escaped.
    """
    if "{{" not in text:
        return text
    # names are shown verbatim, never HTML-escaped
    text = _NAME_MACRO.sub(r"{{{\1}}}", text)
    return render_prompt(text, {"user": user, "char": char or ""})


# ── Quiet prompt ─────────────────────────────────────────

QUIET_PROMPT_TEMPLATE = """\
{{#last history 20}}{{{name}}}: {{{text}}}
{{/last}}
[{{{instruction}}}]
{{{name}}}:"""


def build_quiet_prompt(
    history: list[dict[str, str]],
    instruction: str,
    name: str,
) -> str:
    """Assemble the completion prompt for a one-off in-character reply.

    history entries are {"name": ..., "text": ...}, oldest first.
    """
    return render_prompt(QUIET_PROMPT_TEMPLATE, {
        "history": history,
        "instruction": instruction,
        "name": name,
    })
