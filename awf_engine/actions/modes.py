"""Acts declared in module documents instead of code.

A module document lists `{type, mode, key?}` entries. The mode picks a payload
model and a reducer that writes the module's state slice:

    set_by_key          {key, val}      slice[key] = val
    merge_delta_by_key  {key, delta}    slice[key] += delta (missing = 0)
    add_unique          {value}         append to slice[<key or "items">] once
    upsert_by_id        {id, ...}       slice[id] = {**slice[id], ...}
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from awf_engine.actions.registry import ActContext, ActionRegistry, Reducer
from awf_engine.errors import ActRejected, RegistryError
from awf_engine.models import GameState, ModuleActionDef, ModuleDoc, SliceChange

DEFAULT_LIST_KEY = "items"


class SetByKey(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1)
    val: Any


class MergeDeltaByKey(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1)
    delta: float


class AddUnique(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str | int | float | bool


class UpsertById(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)


def _set_by_key(slice_name: str, action: ModuleActionDef) -> Reducer:
    def apply(state: GameState, p: SetByKey, ctx: ActContext) -> GameState:
        state.slices.setdefault(slice_name, {})[p.key] = p.val
        ctx.summary.slices.append(SliceChange(slice=slice_name, key=p.key, value=p.val))
        return state
    return apply


def _merge_delta_by_key(slice_name: str, action: ModuleActionDef) -> Reducer:
    def apply(state: GameState, p: MergeDeltaByKey, ctx: ActContext) -> GameState:
        data = state.slices.setdefault(slice_name, {})
        current = data.get(p.key, 0)
        if not isinstance(current, (int, float)) or isinstance(current, bool):
            raise ActRejected(f"{slice_name}.{p.key} is not numeric")
        data[p.key] = current + p.delta
        ctx.summary.slices.append(SliceChange(slice=slice_name, key=p.key, value=data[p.key]))
        return state
    return apply


def _add_unique(slice_name: str, action: ModuleActionDef) -> Reducer:
    list_key = action.key or DEFAULT_LIST_KEY

    def apply(state: GameState, p: AddUnique, ctx: ActContext) -> GameState:
        items = state.slices.setdefault(slice_name, {}).setdefault(list_key, [])
        if not isinstance(items, list):
            raise ActRejected(f"{slice_name}.{list_key} is not a list")
        if p.value not in items:
            items.append(p.value)
            ctx.summary.slices.append(SliceChange(slice=slice_name, key=list_key, value=p.value))
        return state
    return apply


def _upsert_by_id(slice_name: str, action: ModuleActionDef) -> Reducer:
    def apply(state: GameState, p: UpsertById, ctx: ActContext) -> GameState:
        data = state.slices.setdefault(slice_name, {})
        row = dict(data.get(p.id) or {})
        row.update(p.model_extra or {})
        data[p.id] = row
        ctx.summary.slices.append(SliceChange(slice=slice_name, key=p.id, value=row))
        return state
    return apply


MODES: dict[str, tuple[type[BaseModel], Callable[[str, ModuleActionDef], Reducer]]] = {
    "set_by_key": (SetByKey, _set_by_key),
    "merge_delta_by_key": (MergeDeltaByKey, _merge_delta_by_key),
    "add_unique": (AddUnique, _add_unique),
    "upsert_by_id": (UpsertById, _upsert_by_id),
}


def register_module_actions(registry: ActionRegistry, module: ModuleDoc) -> list[str]:
    """Register every moded act of a module document; returns the act types."""
    owner = f"{module.id}.{module.state_slice}"
    registry.register_module_owner(owner, module.id)
    registered: list[str] = []
    for action in module.actions:
        if action.mode is None:
            continue
        if action.mode not in MODES:
            raise RegistryError(f"Module {module.id!r}: unknown mode {action.mode!r}")
        model, factory = MODES[action.mode]
        registry.register(action.type, model, owner, factory(module.state_slice, action))
        registered.append(action.type)
    return registered
