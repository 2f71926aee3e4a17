"""TurnPacket → ordered, labeled text sections.

Category order is fixed: CORE → RULESET → MODULES → WORLD → SCENARIO → NPCS →
STATE → INPUT. Within a category, known slot names come first in a canonical
order, then any remaining slots sorted by name.

Every slot-backed section carries the trimming policy returned by the slot
lookup (`get_slot_policy(type, name)`); a miss falls back to the default
policy (priority 0, not must-keep, no minimum).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from awf_engine.models import LinearSection, Resolved, SlotPolicy, TurnPacket

logger = logging.getLogger(__name__)

SlotLookup = Callable[[str, str], SlotPolicy | None]

SLOT_ORDER: dict[str, list[str]] = {
    "ruleset": ["principles", "choice_style"],
    "module": ["hints", "actions", "params"],
    "world": ["tone", "taboos", "canon", "lexicon"],
    "scenario": ["setup", "beats", "guards"],
    "npc": ["bio", "persona", "triggers", "voice"],
}


def resolve_slot_policy(lookup: SlotLookup | None, slot_type: str, name: str) -> Resolved[SlotPolicy]:
    policy = lookup(slot_type, name) if lookup else None
    if policy is None:
        return Resolved[SlotPolicy](value=SlotPolicy(name=name), used_default=True)
    return Resolved[SlotPolicy](value=policy)


def _ordered(slot_type: str, slots: dict[str, str]) -> list[tuple[str, str]]:
    known = SLOT_ORDER.get(slot_type, [])
    head = [(n, slots[n]) for n in known if slots.get(n)]
    tail = [(n, slots[n]) for n in sorted(slots) if n not in known and slots[n]]
    return head + tail


def _title(name: str) -> str:
    return name.replace("_", " ").title()


def linearize(tp: TurnPacket, lookup: SlotLookup | None = None) -> list[LinearSection]:
    """Build the section list the budget engine works on."""
    sections: list[LinearSection] = []

    def _slot_section(key: str, label: str, heading: str, slot_type: str, name: str, text: str) -> None:
        policy = resolve_slot_policy(lookup, slot_type, name)
        sections.append(LinearSection(
            key=key, label=label, text=f"{heading}\n{text}", slot=policy.value,
        ))

    # CORE
    core_parts: list[str] = []
    if tp.core.style:
        core_parts.append(f"Style: {tp.core.style}")
    if tp.core.safety:
        core_parts.append(f"Safety: {', '.join(tp.core.safety)}")
    if tp.core.output_rules:
        core_parts.append(f"Output Rules: {tp.core.output_rules}")
    if core_parts:
        sections.append(LinearSection(
            key="core.all", label="CORE", text="# CORE\n\n" + "\n".join(core_parts),
        ))

    # RULESET
    for name, text in _ordered("ruleset", tp.ruleset.slots):
        _slot_section(f"ruleset.{name}", f"RULESET - {_title(name)}",
                      f"## {_title(name)}", "ruleset", name, text)

    # MODULES
    for module in tp.modules:
        for name, text in _ordered("module", module.slots):
            _slot_section(f"module.{module.id}.{name}", f"MODULE - {module.id} {_title(name)}",
                          f"### {module.id} {_title(name)}", "module", name, text)

    # WORLD
    for name, text in _ordered("world", tp.world.slots):
        _slot_section(f"world.{name}", f"WORLD - {_title(name)}",
                      f"## {_title(name)}", "world", name, text)

    # SCENARIO
    if tp.scenario:
        for name, text in _ordered("scenario", tp.scenario.slots):
            _slot_section(f"scenario.{name}", f"SCENARIO - {_title(name)}",
                          f"## {_title(name)}", "scenario", name, text)
        if tp.scenario.reachable:
            sections.append(LinearSection(
                key="scenario.reachability",
                label="SCENARIO - Reachability",
                text=f"### Reachability: [{', '.join(tp.scenario.reachable)}]",
            ))

    # NPCS
    for npc in tp.npcs:
        for name, text in _ordered("npc", npc.slots):
            _slot_section(f"npc.{npc.id}.{name}", f"NPC - {npc.name} {_title(name)}",
                          f"## {npc.name} {_title(name)}", "npc", name, text)

    # STATE
    if tp.state:
        sections.append(LinearSection(
            key="state.all", label="STATE",
            text="# STATE\n\n" + json.dumps(tp.state, indent=2, ensure_ascii=False),
        ))

    # INPUT
    sections.append(LinearSection(
        key="input.all", label="INPUT",
        text=f"# INPUT\n\nKind: {tp.input.kind}\nText: {tp.input.text}",
    ))

    logger.debug("linearized %d sections", len(sections))
    return sections
