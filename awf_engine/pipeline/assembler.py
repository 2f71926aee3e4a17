"""Context assembler — request + content store → budgeted prompt bundle.

Steps:
  1. resolve the entry point to a story, load world and ruleset (required)
  2. load scenario, modules and NPCs (optional; misses are recorded as dropped)
  3. compute scenario reachability from the current game state
  4. build the TurnPacket, linearize it, apply the token budget

A missing world, ruleset or entry point is an InputError. Nothing else stops
assembly.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from awf_engine.actions.relationships import MODULE_DOC as RELATIONSHIPS_DOC
from awf_engine.config import Settings
from awf_engine.errors import GraphError, InputError
from awf_engine.graph import ScenarioGraphs, guard_context, reachable_nodes
from awf_engine.models import (
    GameState,
    ModuleDoc,
    ModulePart,
    NpcPart,
    PlayerInput,
    Resolved,
    RulesetPart,
    ScenarioDoc,
    ScenarioPart,
    TimeConfig,
    TurnPacket,
    WorldPart,
)
from awf_engine.pipeline.budget import BudgetResult, apply_budget
from awf_engine.pipeline.linearizer import linearize
from awf_engine.prompts import join_sections, render_module_slots
from awf_engine.storage import ContentStore

logger = logging.getLogger(__name__)

BUILTIN_MODULE_DOCS: dict[str, ModuleDoc] = {RELATIONSHIPS_DOC.id: RELATIONSHIPS_DOC}


class AssembleRequest(BaseModel):
    world_id: str
    ruleset_id: str
    scenario_id: str | None = None
    entry_start_slug: str
    attached_module_ids: list[str] | None = None  # None = the story's attachments
    npc_ids: list[str] = Field(default_factory=list)
    game_state: GameState = Field(default_factory=GameState)
    player_input_text: str = ""
    input_kind: Literal["action", "choice", "start"] = "action"
    max_tokens: int | None = None


class DroppedItem(BaseModel):
    kind: Literal["scenario", "module", "npc"]
    id: str
    reason: Literal["not_found", "npc_cap", "invalid_graph"]


class AssemblyMeta(BaseModel):
    estimated_tokens: int
    final_tokens: int
    budget: int
    percent_used: float
    included: list[str] = Field(default_factory=list)
    dropped: list[DroppedItem] = Field(default_factory=list)
    defaults_used: list[str] = Field(default_factory=list)


class AssembledTurn(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    story_id: str
    packet: TurnPacket
    budget: BudgetResult
    meta: AssemblyMeta
    prompt: str
    module_params: dict[str, dict[str, Any]] = Field(default_factory=dict)
    time: TimeConfig = Field(default_factory=TimeConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def resolve_module_params(defaults: dict[str, Any], override: dict[str, Any] | None) -> Resolved[dict]:
    """Story-level params over module defaults; flags when defaults were used."""
    if override is None:
        return Resolved[dict](value=copy.deepcopy(defaults), used_default=True)
    return Resolved[dict](value=_deep_merge(defaults, override))


class Assembler:
    def __init__(self, store: ContentStore, settings: Settings, graphs: ScenarioGraphs | None = None) -> None:
        self.store = store
        self.settings = settings
        self.graphs = graphs or ScenarioGraphs()

    # ------------------------------------------------------------------
    # Pieces
    # ------------------------------------------------------------------

    def _module_doc(self, module_id: str) -> ModuleDoc | None:
        return self.store.get_module(module_id) or BUILTIN_MODULE_DOCS.get(module_id)

    def _reachable(self, scenario: ScenarioDoc, state: GameState) -> list[str] | None:
        if scenario.graph is None:
            return []
        cache_key = f"{scenario.id}@{scenario.version}"
        graph = self.graphs.get_graph(cache_key)
        if graph is None:
            try:
                self.graphs.set_graph(cache_key, scenario.graph)
            except GraphError as e:
                logger.warning("scenario %s has an invalid graph: %s", scenario.id, e)
                return None
            graph = scenario.graph
        return sorted(reachable_nodes(graph, guard_context(state)))

    def build_packet(self, req: AssembleRequest) -> tuple[TurnPacket, dict[str, Any]]:
        """The TurnPacket plus bookkeeping (story id, params, included, dropped)."""
        entry = self.store.get_entry_point(req.entry_start_slug)
        if entry is None:
            raise InputError(f"Entry point {req.entry_start_slug!r} not found")
        world = self.store.get_world(req.world_id)
        if world is None:
            raise InputError(f"World {req.world_id!r} not found")
        ruleset = self.store.get_ruleset(req.ruleset_id)
        if ruleset is None:
            raise InputError(f"Ruleset {req.ruleset_id!r} not found")
        if req.input_kind != "start" and not req.player_input_text.strip():
            raise InputError("Player input is empty")

        included = [f"world:{world.id}", f"ruleset:{ruleset.id}"]
        dropped: list[DroppedItem] = []
        defaults_used: list[str] = []

        module_ids = (
            req.attached_module_ids
            if req.attached_module_ids is not None
            else self.store.attached_modules(entry.story_id)
        )
        modules: list[ModulePart] = []
        module_params: dict[str, dict[str, Any]] = {}
        for module_id in module_ids:
            doc = self._module_doc(module_id)
            if doc is None:
                dropped.append(DroppedItem(kind="module", id=module_id, reason="not_found"))
                continue
            params = resolve_module_params(
                doc.params_defaults, self.store.story_module_params(entry.story_id, module_id),
            )
            if params.used_default:
                defaults_used.append(f"module:{module_id}")
            module_params[doc.id] = params.value
            modules.append(ModulePart(
                id=doc.id, version=doc.version, title=doc.title, params=params.value,
                params_defaulted=params.used_default, ai_hints=doc.ai_hints,
                slots=render_module_slots(doc, params.value),
            ))
            included.append(f"module:{doc.id}")

        scenario_part: ScenarioPart | None = None
        if req.scenario_id:
            scenario = self.store.get_scenario(req.scenario_id)
            if scenario is None:
                dropped.append(DroppedItem(kind="scenario", id=req.scenario_id, reason="not_found"))
            else:
                reachable = self._reachable(scenario, req.game_state)
                if reachable is None:
                    dropped.append(DroppedItem(kind="scenario", id=scenario.id, reason="invalid_graph"))
                    reachable = []
                scenario_part = ScenarioPart(
                    id=scenario.id, version=scenario.version, slots=scenario.slots, reachable=reachable,
                )
                included.append(f"scenario:{scenario.id}")

        npcs: list[NpcPart] = []
        for npc_id in req.npc_ids:
            if len(npcs) >= self.settings.max_active_npcs:
                dropped.append(DroppedItem(kind="npc", id=npc_id, reason="npc_cap"))
                continue
            npc = self.store.get_npc(npc_id)
            if npc is None:
                dropped.append(DroppedItem(kind="npc", id=npc_id, reason="not_found"))
                continue
            npcs.append(NpcPart(id=npc.id, name=npc.name, slots=npc.slots))
            included.append(f"npc:{npc.id}")

        state = req.game_state.model_dump(mode="json", exclude={"turn_id"})
        packet = TurnPacket(
            ruleset=RulesetPart(id=ruleset.id, version=ruleset.version, slots=ruleset.slots),
            modules=modules,
            world=WorldPart(id=world.id, version=world.version, slots=world.slots),
            scenario=scenario_part,
            npcs=npcs,
            state={k: v for k, v in state.items() if v},
            input=PlayerInput(kind=req.input_kind, text=req.player_input_text),
        )
        return packet, {
            "story_id": entry.story_id,
            "module_params": module_params,
            "time": world.time,
            "included": included,
            "dropped": dropped,
            "defaults_used": defaults_used,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def assemble(self, req: AssembleRequest) -> AssembledTurn:
        packet, info = self.build_packet(req)
        sections = linearize(packet, self.store.get_slot_policy)
        max_tokens = req.max_tokens or self.settings.max_tokens
        budget = apply_budget(
            sections, max_tokens,
            soft_budget_per_slot_tokens=self.settings.soft_budget_per_slot_tokens,
        )
        meta = AssemblyMeta(
            estimated_tokens=budget.total_tokens_before,
            final_tokens=budget.total_tokens_after,
            budget=max_tokens,
            percent_used=round(100 * budget.total_tokens_after / max_tokens, 1),
            included=info["included"],
            dropped=info["dropped"],
            defaults_used=info["defaults_used"],
        )
        logger.info("assembled turn story=%s tokens=%d/%d trims=%d dropped=%d",
                    info["story_id"], meta.final_tokens, max_tokens,
                    len(budget.trims), len(meta.dropped))
        return AssembledTurn(
            story_id=info["story_id"],
            packet=packet,
            budget=budget,
            meta=meta,
            prompt=join_sections(budget.sections),
            module_params=info["module_params"],
            time=info["time"],
        )
