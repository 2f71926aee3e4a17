"""Handlebars rendering for module slots and the retry prompt suffix."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from awf_engine.models import LinearSection, ModuleDoc

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

MODULE_HINTS_TEMPLATE = "Mechanic: {{{title}}}. {{#each ai_hints}}{{{this}}} {{/each}}"
MODULE_HINTS_WITH_PARAMS_TEMPLATE = (
    "Mechanic: {{{title}}}. {{{param_summary}}}. {{#each ai_hints}}{{{this}}} {{/each}}"
)
MODULE_ACTIONS_TEMPLATE = "{{#each actions}}{{{type}}}; {{/each}}"


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_template(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def _param_summary(params: dict[str, Any]) -> str:
    """Human phrasing of the parameters a narrator needs to respect."""
    parts: list[str] = []
    gain = params.get("gainCurve")
    if isinstance(gain, dict) and gain.get("scale") is not None:
        parts.append(f"Gains scale {gain['scale']}")
    if params.get("minTrustToRomance") is not None:
        parts.append(f"romance gated at trust ≥ {params['minTrustToRomance']}")
    consent = params.get("consent")
    if isinstance(consent, dict) and consent.get("requireMutual"):
        parts.append("respect consent")
    return "; ".join(parts)


def render_module_slots(module: ModuleDoc, params: dict[str, Any]) -> dict[str, str]:
    """Render the hints/actions/params slots for one attached module."""
    summary = _param_summary(params)
    hints_tpl = MODULE_HINTS_WITH_PARAMS_TEMPLATE if summary else MODULE_HINTS_TEMPLATE
    ctx = {
        "title": module.title or module.id,
        "ai_hints": module.ai_hints,
        "param_summary": summary,
        "actions": [a.model_dump() for a in module.actions],
    }
    slots = {"hints": render_template(hints_tpl, ctx).strip()}
    actions = render_template(MODULE_ACTIONS_TEMPLATE, ctx).strip()
    if actions:
        slots["actions"] = actions
    compact = _compact_params(params)
    if compact:
        slots["params"] = compact
    return slots


def _compact_params(params: dict[str, Any]) -> str:
    parts: list[str] = []
    gain = params.get("gainCurve")
    if isinstance(gain, dict) and gain.get("scale") is not None:
        parts.append(f"scale={gain['scale']}")
    if params.get("minTrustToRomance") is not None:
        parts.append(f"minTrust={params['minTrustToRomance']}")
    return ", ".join(parts)


def join_sections(sections: list[LinearSection]) -> str:
    """Flatten linearized sections into the prompt text sent to the model."""
    return "\n\n".join(s.text for s in sections)


def with_repair_hint(prompt: str, hint: str) -> str:
    """Append the validator's repair hint to a prompt for the single retry."""
    return (
        f"{prompt}\n\n"
        "# REPAIR\n\n"
        "Your previous reply was rejected by the output validator. "
        f"Fix every problem listed and reply again: {hint}"
    )
