"""Budget engine — deterministic token budgeting with a stable trim order.

Tokens are estimated at a fixed 4 characters per token so results are
reproducible across runs and models.

Trim order:
  1. category precedence — INPUT, STATE, NPCS, SCENARIO, MODULES, WORLD,
     RULESET. CORE is never trimmed.
  2. within a category — non-must-keep sections before must-keep ones, then
     ascending slot priority, then key.

A trim removes trailing text and appends TRIM_MARKER. Must-keep sections keep
at least `min_chars` characters of their original text. If everything
trimmable has been trimmed and the total is still over budget, a warning is
recorded and the oversized sections are returned as they are.
"""

from __future__ import annotations

import logging
import math

from pydantic import BaseModel, Field

from awf_engine.models import BudgetReport, Category, LinearSection, TrimRecord

logger = logging.getLogger(__name__)

TRIM_MARKER = "… [[trimmed]]"
CHARS_PER_TOKEN = 4
MIN_CHARS_GUARDRAIL_RATIO = 0.75
# Only back off to a line/word boundary if it keeps this share of the cut target.
BOUNDARY_BACKOFF_RATIO = 0.8

TRIM_PRECEDENCE: dict[Category, int] = {
    "INPUT": 0,
    "STATE": 1,
    "NPCS": 2,
    "SCENARIO": 3,
    "MODULES": 4,
    "WORLD": 5,
    "RULESET": 6,
}

_PREFIXES: list[tuple[str, Category]] = [
    ("core.", "CORE"),
    ("ruleset.", "RULESET"),
    ("module.", "MODULES"),
    ("world.", "WORLD"),
    ("scenario.", "SCENARIO"),
    ("npc.", "NPCS"),
    ("state.", "STATE"),
    ("input.", "INPUT"),
]


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def category_of(key: str) -> Category:
    for prefix, category in _PREFIXES:
        if key.startswith(prefix):
            return category
    return "INPUT"


class BudgetResult(BaseModel):
    sections: list[LinearSection]
    total_tokens_before: int
    total_tokens_after: int
    trims: list[TrimRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def to_report(self) -> BudgetReport:
        return BudgetReport(
            before=self.total_tokens_before,
            after=self.total_tokens_after,
            trims=tuple(self.trims),
            warnings=tuple(self.warnings),
        )


def _safe_cut(text: str, target: int, floor: int) -> int:
    """Pick a cut position at or below `target`, never below `floor`.

    Never cuts inside an open ``` fence when it can avoid it, and prefers a
    newline or space close to the target.
    """
    before = text[:target]
    if before.count("```") % 2 == 1:
        fence = before.rfind("```")
        return fence if fence >= floor else target

    lower = max(floor, int(target * BOUNDARY_BACKOFF_RATIO))
    for sep in ("\n", " "):
        pos = before.rfind(sep)
        if pos >= lower and pos > 0:
            return pos
    return target


def _trim_order(sections: list[LinearSection]) -> list[int]:
    candidates = [
        i for i, s in enumerate(sections)
        if category_of(s.key) in TRIM_PRECEDENCE
    ]

    def sort_key(i: int) -> tuple:
        s = sections[i]
        slot = s.slot
        return (
            TRIM_PRECEDENCE[category_of(s.key)],
            bool(slot and slot.must_keep),
            slot.priority if slot else 0,
            s.key,
        )

    return sorted(candidates, key=sort_key)


def apply_budget(
    sections: list[LinearSection],
    max_tokens: int,
    *,
    soft_budget_per_slot_tokens: int = 2000,
) -> BudgetResult:
    """Fit linearized sections into `max_tokens`; see module docstring."""
    tokens = [estimate_tokens(s.text) for s in sections]
    before = sum(tokens)

    if before <= max_tokens:
        return BudgetResult(
            sections=list(sections),
            total_tokens_before=before,
            total_tokens_after=before,
        )

    warnings: list[str] = []
    for section, count in zip(sections, tokens):
        if count > soft_budget_per_slot_tokens:
            warnings.append(
                f'Slot "{section.key}" exceeds soft budget '
                f"({count} > {soft_budget_per_slot_tokens} tokens)"
            )

    min_chars_total = sum(s.slot.min_chars for s in sections if s.slot and s.slot.must_keep)
    guardrail = math.floor(max_tokens * MIN_CHARS_GUARDRAIL_RATIO * CHARS_PER_TOKEN)
    if min_chars_total > guardrail:
        warnings.append(f"min_chars sum ({min_chars_total}) exceeds guardrail ({guardrail})")

    working = [s.model_copy() for s in sections]
    trims: list[TrimRecord] = []
    current = before

    for i in _trim_order(working):
        if current <= max_tokens:
            break
        section = working[i]
        text = section.text
        floor = section.slot.min_chars if section.slot and section.slot.must_keep else 0

        excess_chars = (current - max_tokens) * CHARS_PER_TOKEN
        target = max(floor, len(text) - excess_chars - len(TRIM_MARKER), 0)
        if target + len(TRIM_MARKER) >= len(text):
            continue

        cut = _safe_cut(text, target, floor)
        new_text = text[:cut] + TRIM_MARKER
        new_tokens = estimate_tokens(new_text)
        removed_tokens = tokens[i] - new_tokens
        if removed_tokens <= 0:
            continue

        working[i] = section.model_copy(update={"text": new_text})
        tokens[i] = new_tokens
        current -= removed_tokens
        trims.append(TrimRecord(
            key=section.key,
            removed_chars=len(text) - len(new_text),
            removed_tokens=removed_tokens,
        ))
        logger.debug("trimmed %s by %d tokens", section.key, removed_tokens)

    if current > max_tokens:
        warnings.append(f"over_budget_after_trim: {current} > {max_tokens} tokens")
        logger.warning("prompt still over budget after trimming (%d > %d)", current, max_tokens)

    return BudgetResult(
        sections=working,
        total_tokens_before=before,
        total_tokens_after=current,
        trims=trims,
        warnings=warnings,
    )
