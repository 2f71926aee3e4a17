"""Core domain models.

All pipeline stages and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")

Category = Literal[
    "CORE",
    "RULESET",
    "MODULES",
    "WORLD",
    "SCENARIO",
    "NPCS",
    "STATE",
    "INPUT",
]


class Resolved(BaseModel, Generic[T]):
    """A lookup result that remembers whether it fell back to a default."""

    value: T
    used_default: bool = False


# ---------------------------------------------------------------------------
# Sections and budgeting
# ---------------------------------------------------------------------------

class SlotPolicy(BaseModel):
    """Trimming policy for one named slot."""

    name: str
    must_keep: bool = False
    min_chars: int = 0
    priority: int = 0


class LinearSection(BaseModel):
    key: str  # "<category prefix>.<...>", e.g. "npc.kiera.bio"
    label: str
    text: str
    slot: SlotPolicy | None = None


class TrimRecord(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    key: str
    removed_chars: int
    removed_tokens: int


class BudgetReport(BaseModel):
    """Audit record stored next to a prompt snapshot. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    before: int
    after: int
    trims: tuple[TrimRecord, ...] = ()
    warnings: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Turn packet
# ---------------------------------------------------------------------------

class CoreContract(BaseModel):
    style: str = "immersive"
    safety: list[str] = Field(default_factory=lambda: ["guardrails_enabled", "consent_required"])
    output_rules: str = (
        "Return exactly one JSON object with keys scn, txt, and optionally "
        "choices (<=5 of {id, label}), acts (<=8 of {type, data}) and val. "
        "No other keys."
    )


class RulesetPart(BaseModel):
    id: str
    version: str
    slots: dict[str, str] = Field(default_factory=dict)


class ModulePart(BaseModel):
    id: str
    version: str
    title: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    params_defaulted: bool = False
    slots: dict[str, str] = Field(default_factory=dict)
    ai_hints: list[str] = Field(default_factory=list)


class WorldPart(BaseModel):
    id: str
    version: str
    slots: dict[str, str] = Field(default_factory=dict)


class ScenarioPart(BaseModel):
    id: str
    version: str
    slots: dict[str, str] = Field(default_factory=dict)
    reachable: list[str] = Field(default_factory=list)


class NpcPart(BaseModel):
    id: str
    name: str
    slots: dict[str, str] = Field(default_factory=dict)


class PlayerInput(BaseModel):
    kind: Literal["action", "choice", "start"] = "action"
    text: str


class TurnPacket(BaseModel):
    """The layered context for one model invocation. Built fresh every turn."""

    core: CoreContract = Field(default_factory=CoreContract)
    ruleset: RulesetPart
    modules: list[ModulePart] = Field(default_factory=list)
    world: WorldPart
    scenario: ScenarioPart | None = None
    npcs: list[NpcPart] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)
    input: PlayerInput


# ---------------------------------------------------------------------------
# Game state
# ---------------------------------------------------------------------------

class EpisodicMemory(BaseModel):
    key: str
    note: str
    salience: float = 0.5
    tags: list[str] = Field(default_factory=list)
    turn_id: int = 0


class WarmState(BaseModel):
    episodic: list[EpisodicMemory] = Field(default_factory=list)
    pins: list[str] = Field(default_factory=list)


class GameState(BaseModel):
    """Game state snapshot.

    `hot` holds the live scene (scene, time, flags, objectives, resources),
    `warm` the episodic memory, `cold` long-lived facts. Module-declared state
    slices (e.g. "relationships") live under `slices`.
    """

    hot: dict[str, Any] = Field(default_factory=dict)
    warm: WarmState = Field(default_factory=WarmState)
    cold: dict[str, Any] = Field(default_factory=dict)
    slices: dict[str, dict[str, Any]] = Field(default_factory=dict)
    turn_id: int = 0


class Act(BaseModel):
    """One effect declared by the model: {"type": ..., "data": {...}}."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Act summary
# ---------------------------------------------------------------------------

class TimeOfDay(BaseModel):
    band: str
    ticks: int = 0


class RelChange(BaseModel):
    npc: str
    stat: str
    delta: float
    new_value: float


class ObjectiveChange(BaseModel):
    id: str
    prev: str | None
    next: str


class ResourceChange(BaseModel):
    key: str
    delta: float
    new_value: float


class TimeChange(BaseModel):
    prev: TimeOfDay
    next: TimeOfDay
    added: int


class SliceChange(BaseModel):
    """A write to a module state slice by a data-driven act."""

    slice: str
    key: str
    value: Any


ViolationReason = Literal[
    "unknown_action",
    "schema_invalid",
    "module_not_attached",
    "rejected",
    "truncated",
]


class Violation(BaseModel):
    index: int
    type: str
    reason: ViolationReason
    message: str


class MemoryStats(BaseModel):
    added: int = 0
    pinned: int = 0
    trimmed: int = 0


class ActSummary(BaseModel):
    """Observable effects of one batch of acts, grouped by category."""

    relationships: list[RelChange] = Field(default_factory=list)
    objectives: list[ObjectiveChange] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    resources: list[ResourceChange] = Field(default_factory=list)
    slices: list[SliceChange] = Field(default_factory=list)
    scene: str | None = None
    time: TimeChange | None = None
    memory: MemoryStats = Field(default_factory=MemoryStats)
    applied: list[Act] = Field(default_factory=list)
    violations: list[Violation] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Scenario graph
# ---------------------------------------------------------------------------

class GraphNode(BaseModel):
    id: str
    label: str = ""
    kind: str = "beat"


class GraphEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    guard: str | None = None


class ScenarioGraph(BaseModel):
    nodes: list[GraphNode]
    edges: list[GraphEdge] = Field(default_factory=list)
    entry_node: str | None = None


class GraphWarning(BaseModel):
    kind: Literal["orphan", "fan_out", "cycle"]
    node: str
    message: str


# ---------------------------------------------------------------------------
# Stored content documents
# ---------------------------------------------------------------------------

class TimeBand(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    max_ticks: int


class TimeConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    default_band: str = "Dawn"
    bands: list[TimeBand] = Field(default_factory=list)


class WorldDoc(BaseModel):
    id: str
    version: str = "1"
    slots: dict[str, str] = Field(default_factory=dict)
    time: TimeConfig = Field(default_factory=TimeConfig)


class RulesetDoc(BaseModel):
    id: str
    version: str = "1"
    slots: dict[str, str] = Field(default_factory=dict)


class ScenarioDoc(BaseModel):
    id: str
    version: str = "1"
    slots: dict[str, str] = Field(default_factory=dict)
    graph: ScenarioGraph | None = None


class NpcDoc(BaseModel):
    id: str
    name: str
    slots: dict[str, str] = Field(default_factory=dict)


class ModuleActionDef(BaseModel):
    """An act exported by a data-driven module."""

    type: str
    mode: Literal["set_by_key", "merge_delta_by_key", "add_unique", "upsert_by_id"] | None = None
    key: str | None = None  # list name for add_unique


class ModuleDoc(BaseModel):
    id: str
    version: str = "1"
    title: str = ""
    state_slice: str
    ai_hints: list[str] = Field(default_factory=list)
    params_defaults: dict[str, Any] = Field(default_factory=dict)
    actions: list[ModuleActionDef] = Field(default_factory=list)


class EntryPoint(BaseModel):
    slug: str
    story_id: str
    title: str = ""


# ---------------------------------------------------------------------------
# Model reply and turn records
# ---------------------------------------------------------------------------

class Choice(BaseModel):
    id: str
    label: str


class ModelReply(BaseModel):
    """A reply that already passed the output validator."""

    scn: str
    txt: str
    choices: list[Choice] = Field(default_factory=list)
    acts: list[Act] = Field(default_factory=list)
    val: str | None = None


class TurnRecord(BaseModel):
    """What the store persists for one committed turn."""

    game_id: str
    turn_id: int
    idempotency_key: str | None = None
    reply: ModelReply
    state: GameState
    summary: ActSummary
    budget: BudgetReport
