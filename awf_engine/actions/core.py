"""Built-in acts owned by the engine itself.

Every member of `CoreAct` must have an entry in CORE_ACTIONS;
`register_core` refuses to boot otherwise.

Reducers receive a private copy of the game state, mutate it and return it.
Raising ActRejected discards that copy and records a violation.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from awf_engine.actions.registry import CORE_OWNER, ActContext, ActionRegistry, Reducer
from awf_engine.errors import ActRejected, RegistryError
from awf_engine.models import (
    EpisodicMemory,
    GameState,
    ObjectiveChange,
    ResourceChange,
    TimeChange,
    TimeConfig,
    TimeOfDay,
    Violation,
)

logger = logging.getLogger(__name__)

MAX_NOTE_CHARS = 120


class CoreAct(str, Enum):
    SCENE_SET = "SCENE_SET"
    TIME_ADVANCE = "TIME_ADVANCE"
    OBJECTIVE_UPDATE = "OBJECTIVE_UPDATE"
    FLAG_SET = "FLAG_SET"
    RESOURCE_DELTA = "RESOURCE_DELTA"
    MEMORY_ADD = "MEMORY_ADD"
    MEMORY_PIN = "MEMORY_PIN"
    MEMORY_TAG = "MEMORY_TAG"
    MEMORY_REMOVE = "MEMORY_REMOVE"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SceneSet(_Payload):
    scn: str = Field(min_length=1)


class TimeAdvance(_Payload):
    ticks: int = Field(ge=1)


class ObjectiveUpdate(_Payload):
    id: str = Field(min_length=1)
    status: Literal["not_started", "in_progress", "complete", "failed"]
    progress: float | None = Field(default=None, ge=0, le=1)


class FlagSet(_Payload):
    key: str = Field(min_length=1)
    val: Any


class ResourceDelta(_Payload):
    key: str = Field(min_length=1)
    delta: float


class MemoryAdd(_Payload):
    k: str = Field(min_length=1, alias="key")
    note: str = Field(min_length=1)
    salience: float = Field(default=0.5, ge=0, le=1)
    tags: list[str] = Field(default_factory=list)


class MemoryPin(_Payload):
    key: str = Field(min_length=1)


class MemoryTag(_Payload):
    k: str = Field(min_length=1)
    add_tags: list[str] = Field(default_factory=list, alias="addTags")
    remove_tags: list[str] = Field(default_factory=list, alias="removeTags")


class MemoryRemove(_Payload):
    k: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------

def scene_set(state: GameState, p: SceneSet, ctx: ActContext) -> GameState:
    state.hot["scene"] = p.scn
    ctx.summary.scene = p.scn
    return state


def roll_time(now: TimeOfDay, ticks: int, config: TimeConfig) -> TimeOfDay:
    """Add ticks, rolling into the next band whenever a band's maxTicks is reached."""
    bands = config.bands
    if not bands:
        return TimeOfDay(band=now.band, ticks=now.ticks + ticks)

    names = [b.name for b in bands]
    index = names.index(now.band) if now.band in names else 0
    remaining = now.ticks + ticks
    while remaining >= bands[index].max_ticks > 0:
        remaining -= bands[index].max_ticks
        index = (index + 1) % len(bands)
    return TimeOfDay(band=bands[index].name, ticks=remaining)


def time_advance(state: GameState, p: TimeAdvance, ctx: ActContext) -> GameState:
    if ctx.is_first_turn:
        raise ActRejected("TIME_ADVANCE is not allowed on the first turn")
    if ctx.summary.time is not None:
        raise ActRejected("only one TIME_ADVANCE is allowed per turn")

    raw = state.hot.get("time") or {}
    prev = TimeOfDay(band=raw.get("band", ctx.time.default_band), ticks=raw.get("ticks", 0))
    nxt = roll_time(prev, p.ticks, ctx.time)
    state.hot["time"] = nxt.model_dump()
    ctx.summary.time = TimeChange(prev=prev, next=nxt, added=p.ticks)
    return state


def objective_update(state: GameState, p: ObjectiveUpdate, ctx: ActContext) -> GameState:
    objectives: list[dict[str, Any]] = state.hot.setdefault("objectives", [])
    row = next((o for o in objectives if o.get("id") == p.id), None)
    prev = row.get("status") if row else None
    if row is None:
        row = {"id": p.id}
        objectives.append(row)
    row["status"] = p.status
    if p.progress is not None:
        row["progress"] = p.progress
    ctx.summary.objectives.append(ObjectiveChange(id=p.id, prev=prev, next=p.status))
    return state


def flag_set(state: GameState, p: FlagSet, ctx: ActContext) -> GameState:
    state.hot.setdefault("flags", {})[p.key] = p.val
    ctx.summary.flags.append(p.key)
    return state


def resource_delta(state: GameState, p: ResourceDelta, ctx: ActContext) -> GameState:
    resources = state.hot.setdefault("resources", {})
    value = resources.get(p.key, 0) + p.delta
    resources[p.key] = value
    ctx.summary.resources.append(ResourceChange(key=p.key, delta=p.delta, new_value=value))
    return state


def _memory(state: GameState, key: str) -> EpisodicMemory | None:
    return next((m for m in state.warm.episodic if m.key == key), None)


def memory_add(state: GameState, p: MemoryAdd, ctx: ActContext) -> GameState:
    if _memory(state, p.k) is not None:
        logger.debug("memory %r already present, skipping", p.k)
        return state

    note = p.note
    if len(note) > MAX_NOTE_CHARS:
        note = note[: MAX_NOTE_CHARS - 3] + "..."
        ctx.summary.violations.append(Violation(
            index=ctx.act_index, type=CoreAct.MEMORY_ADD.value, reason="truncated",
            message=f"memory note {p.k!r} truncated to {MAX_NOTE_CHARS} chars",
        ))

    state.warm.episodic.append(EpisodicMemory(
        key=p.k, note=note, salience=p.salience, tags=list(p.tags), turn_id=ctx.turn_id,
    ))
    ctx.summary.memory.added += 1
    return state


def memory_pin(state: GameState, p: MemoryPin, ctx: ActContext) -> GameState:
    if _memory(state, p.key) is None:
        raise ActRejected(f"cannot pin unknown memory {p.key!r}")
    if p.key not in state.warm.pins:
        state.warm.pins.append(p.key)
        ctx.summary.memory.pinned += 1
    return state


def memory_tag(state: GameState, p: MemoryTag, ctx: ActContext) -> GameState:
    memory = _memory(state, p.k)
    if memory is None:
        raise ActRejected(f"cannot tag unknown memory {p.k!r}")
    tags = [t for t in memory.tags if t not in p.remove_tags]
    tags.extend(t for t in p.add_tags if t not in tags)
    memory.tags = tags
    return state


def memory_remove(state: GameState, p: MemoryRemove, ctx: ActContext) -> GameState:
    before = len(state.warm.episodic)
    state.warm.episodic = [m for m in state.warm.episodic if m.key != p.k]
    if len(state.warm.episodic) == before:
        raise ActRejected(f"cannot remove unknown memory {p.k!r}")
    state.warm.pins = [k for k in state.warm.pins if k != p.k]
    return state


CORE_ACTIONS: dict[CoreAct, tuple[type[BaseModel], Reducer]] = {
    CoreAct.SCENE_SET: (SceneSet, scene_set),
    CoreAct.TIME_ADVANCE: (TimeAdvance, time_advance),
    CoreAct.OBJECTIVE_UPDATE: (ObjectiveUpdate, objective_update),
    CoreAct.FLAG_SET: (FlagSet, flag_set),
    CoreAct.RESOURCE_DELTA: (ResourceDelta, resource_delta),
    CoreAct.MEMORY_ADD: (MemoryAdd, memory_add),
    CoreAct.MEMORY_PIN: (MemoryPin, memory_pin),
    CoreAct.MEMORY_TAG: (MemoryTag, memory_tag),
    CoreAct.MEMORY_REMOVE: (MemoryRemove, memory_remove),
}


def register_core(registry: ActionRegistry) -> None:
    missing = [act.value for act in CoreAct if act not in CORE_ACTIONS]
    if missing:
        raise RegistryError(f"Core acts without a reducer: {', '.join(missing)}")
    for act, (model, reducer) in CORE_ACTIONS.items():
        registry.register(act.value, model, CORE_OWNER, reducer)
