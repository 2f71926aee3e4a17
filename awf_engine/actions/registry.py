"""Action registry — act type → payload model, owning state slice, reducer.

One registry object is built at service start (see awf_engine.actions.boot)
and handed to the validator and interpreter. Reads need no locking: the action
table and the slice ownership map live in one frozen snapshot, and every
mutation builds a new snapshot and swaps it in with a single assignment.

Owners are "core" for built-in acts, or "<module>.<slice>" for acts that
write a module-declared state slice. `register_module_owner` records which
modules provide a slice; the validator uses it to check that a story has a
module attached that provides the act's slice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from awf_engine.errors import RegistryError
from awf_engine.models import ActSummary, GameState, TimeConfig

logger = logging.getLogger(__name__)

CORE_OWNER = "core"


class ActContext(BaseModel):
    """Per-batch context handed to every reducer."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    turn_id: int
    is_first_turn: bool = False
    act_index: int = 0
    module_params: dict[str, dict[str, Any]] = Field(default_factory=dict)
    time: TimeConfig = Field(default_factory=TimeConfig)
    summary: ActSummary = Field(default_factory=ActSummary)

    def params_for(self, module_id: str) -> dict[str, Any]:
        """Story-level params for a module; empty when the story sets none."""
        return self.module_params.get(module_id) or {}


# A reducer gets a private copy of the state, may mutate it, and returns it.
Reducer = Callable[[GameState, Any, ActContext], GameState]


class ActionRegistration(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: str
    payload_model: type[BaseModel]
    owner: str
    apply: Reducer

    @property
    def module_scoped(self) -> bool:
        return self.owner != CORE_OWNER

    @property
    def slice(self) -> str | None:
        return slice_of(self.owner) if self.module_scoped else None


def slice_of(owner: str) -> str:
    """"relationships.relationships" → "relationships"; a bare name is its own slice."""
    return owner.split(".", 1)[1] if "." in owner else owner


class _Tables(BaseModel):
    """One immutable snapshot of both lookup maps, swapped as a unit."""

    model_config = ConfigDict(frozen=True)

    actions: dict[str, ActionRegistration] = Field(default_factory=dict)
    slice_modules: dict[str, frozenset[str]] = Field(default_factory=dict)


class ActionRegistry:
    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict
        self._tables = _Tables()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        act_type: str,
        payload_model: type[BaseModel],
        owner: str,
        apply: Reducer,
    ) -> ActionRegistration:
        """Register an act type; re-registration overwrites unless strict."""
        current = self._tables
        if act_type in current.actions:
            previous = current.actions[act_type].owner
            if self.strict:
                raise RegistryError(
                    f"Action {act_type!r} already registered by {previous!r}"
                )
            logger.warning("action %r re-registered: %s -> %s (overwriting)",
                           act_type, previous, owner)

        reg = ActionRegistration(type=act_type, payload_model=payload_model, owner=owner, apply=apply)
        self._tables = current.model_copy(update={"actions": {**current.actions, act_type: reg}})
        return reg

    def register_module_owner(self, owner: str, module_id: str) -> None:
        """Record that `module_id` provides the state slice named by `owner`."""
        name = slice_of(owner)
        current = self._tables
        modules = current.slice_modules.get(name, frozenset()) | {module_id}
        self._tables = current.model_copy(
            update={"slice_modules": {**current.slice_modules, name: modules}}
        )

    def swap_in(self, other: ActionRegistry) -> None:
        """Replace this registry's tables with a freshly built registry's."""
        tables = other._tables
        self._tables = tables
        logger.info("action registry refreshed: %d actions, %d slices",
                    len(tables.actions), len(tables.slice_modules))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, act_type: str) -> ActionRegistration | None:
        return self._tables.actions.get(act_type)

    def __contains__(self, act_type: object) -> bool:
        return act_type in self._tables.actions

    def __len__(self) -> int:
        return len(self._tables.actions)

    def modules_for(self, owner: str) -> frozenset[str]:
        return self._tables.slice_modules.get(slice_of(owner), frozenset())

    def lookup(self, act_type: str) -> tuple[ActionRegistration | None, frozenset[str]]:
        """Registration and providing modules, read from one snapshot."""
        tables = self._tables
        reg = tables.actions.get(act_type)
        if reg is None or not reg.module_scoped:
            return reg, frozenset()
        return reg, tables.slice_modules.get(slice_of(reg.owner), frozenset())

    def health_check(self) -> list[str]:
        """Modeling conflicts worth a warning; nothing here is auto-resolved."""
        tables = self._tables
        problems: list[str] = []
        for name, modules in sorted(tables.slice_modules.items()):
            if len(modules) > 1:
                problems.append(
                    f"State slice {name!r} is declared by multiple modules: {', '.join(sorted(modules))}"
                )
        for reg in tables.actions.values():
            if reg.module_scoped and not tables.slice_modules.get(slice_of(reg.owner)):
                problems.append(
                    f"Action {reg.type!r} writes slice {reg.slice!r} but no module provides it"
                )
        for problem in problems:
            logger.warning("registry health: %s", problem)
        return problems
