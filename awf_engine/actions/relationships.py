"""Relationships module — per-NPC stats with a soft-capped gain curve.

Slice layout: {"<npc id>": {"trust": 40, "warmth": 12, ...}}. Stats that were
never touched read as 0.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from awf_engine.actions.registry import ActContext, ActionRegistry
from awf_engine.models import GameState, ModuleActionDef, ModuleDoc, RelChange

logger = logging.getLogger(__name__)

MODULE_ID = "relationships"
SLICE = "relationships"
OWNER = f"{MODULE_ID}.{SLICE}"
ACT_TYPE = "relationship.delta"

SOFT_CAP_RATIO = 0.5
ROMANCE_STATS = frozenset({"romance", "desire"})

DEFAULT_PARAMS: dict[str, Any] = {
    "gainCurve": {"scale": 1.0, "softCap": 60, "hardCap": 100},
    "minTrustToRomance": 30,
    "consent": {"requireMutual": True},
}

MODULE_DOC = ModuleDoc(
    id=MODULE_ID,
    version="1",
    title="Relationships",
    state_slice=SLICE,
    ai_hints=[
        "Track how each NPC feels about the player.",
        "Emit relationship.delta acts for meaningful shifts only.",
    ],
    params_defaults=DEFAULT_PARAMS,
    actions=[ModuleActionDef(type=ACT_TYPE)],
)

Stat = Literal["trust", "warmth", "respect", "romance", "desire", "awe"]


class RelationshipDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    npc: str = Field(min_length=1)
    stat: Stat
    delta: float = Field(ge=-100, le=100)


def merged_params(params: dict[str, Any] | None) -> dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_PARAMS)
    for key, value in (params or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def apply_gain(current: float, delta: float, *, scale: float, soft_cap: float, hard_cap: float) -> float:
    """Scale the delta, halve gains above max(current, softCap), clamp to [0, hardCap]."""
    raw = current + delta * scale
    threshold = max(current, soft_cap)
    if delta > 0 and raw > threshold:
        raw = threshold + (raw - threshold) * SOFT_CAP_RATIO
    return min(max(raw, 0.0), hard_cap)


def relationship_delta(state: GameState, p: RelationshipDelta, ctx: ActContext) -> GameState:
    params = merged_params(ctx.params_for(MODULE_ID))
    curve = params["gainCurve"]
    stats = state.slices.setdefault(SLICE, {}).setdefault(p.npc, {})
    current = float(stats.get(p.stat, 0))

    delta = p.delta
    if p.stat in ROMANCE_STATS and delta > 0 and stats.get("trust", 0) < params["minTrustToRomance"]:
        ctx.summary.warnings.append(
            f"{p.npc}.{p.stat} gain ignored: trust below {params['minTrustToRomance']}"
        )
        delta = 0.0

    new_value = round(apply_gain(
        current, delta,
        scale=float(curve["scale"]),
        soft_cap=float(curve["softCap"]),
        hard_cap=float(curve["hardCap"]),
    ), 2)
    stats[p.stat] = new_value
    ctx.summary.relationships.append(RelChange(
        npc=p.npc, stat=p.stat, delta=round(new_value - current, 2), new_value=new_value,
    ))
    logger.debug("relationship %s.%s %.2f -> %.2f", p.npc, p.stat, current, new_value)
    return state


def register_relationships(registry: ActionRegistry) -> None:
    registry.register(ACT_TYPE, RelationshipDelta, OWNER, relationship_delta)
    registry.register_module_owner(OWNER, MODULE_ID)
