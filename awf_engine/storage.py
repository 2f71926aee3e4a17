"""JSON file storage.

The turn pipeline reads content (worlds, rulesets, scenarios, NPCs, modules,
entry points, slot policies) through the `ContentStore` protocol and commits
finished turns through it. `Storage` implements the protocol on flat JSON
files under a base directory. There is no database or ORM.

Directory layout:

    {base}/
      slots.json                    ← {"<type>": {"<name>": SlotPolicy}}
      worlds/{id}.json              ← WorldDoc
      rulesets/{id}.json            ← RulesetDoc
      scenarios/{id}.json           ← ScenarioDoc (graph inline)
      npcs/{id}.json                ← NpcDoc
      modules/{id}.json             ← ModuleDoc
      entry_points/{slug}.json      ← EntryPoint
      stories/{story_id}/
        modules.json                ← [{"module_id": ..., "params": {...} | null}]
      games/{game_id}/
        state.json                  ← latest GameState
        turns.json                  ← append-only TurnRecord list
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from awf_engine.errors import InfraError
from awf_engine.models import (
    EntryPoint,
    GameState,
    ModuleDoc,
    NpcDoc,
    RulesetDoc,
    ScenarioDoc,
    SlotPolicy,
    TurnRecord,
    WorldDoc,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ContentStore(Protocol):
    def get_world(self, world_id: str) -> WorldDoc | None: ...
    def get_ruleset(self, ruleset_id: str) -> RulesetDoc | None: ...
    def get_scenario(self, scenario_id: str) -> ScenarioDoc | None: ...
    def get_npc(self, npc_id: str) -> NpcDoc | None: ...
    def get_module(self, module_id: str) -> ModuleDoc | None: ...
    def list_modules(self) -> list[ModuleDoc]: ...
    def get_entry_point(self, slug: str) -> EntryPoint | None: ...
    def attached_modules(self, story_id: str) -> list[str]: ...
    def story_module_params(self, story_id: str, module_id: str) -> dict[str, Any] | None: ...
    def get_slot_policy(self, slot_type: str, name: str) -> SlotPolicy | None: ...
    def get_game_state(self, game_id: str) -> GameState | None: ...
    def get_turns(self, game_id: str) -> list[TurnRecord]: ...
    def commit_turn(self, record: TurnRecord) -> tuple[TurnRecord, bool]: ...


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _doc_path(self, kind: str, doc_id: str) -> Path:
        return self._base / kind / f"{doc_id}.json"

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise InfraError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False))
        except OSError as e:
            raise InfraError(f"Cannot write {path}: {e}") from e

    def _parse(self, model: type[M], data: Any, path: Path) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise InfraError(f"Corrupt {model.__name__} in {path}: {e.error_count()} invalid field(s)") from e

    def _load(self, kind: str, doc_id: str, model: type[M]) -> M | None:
        path = self._doc_path(kind, doc_id)
        if not path.exists():
            return None
        return self._parse(model, self._read_json(path), path)

    def _save(self, kind: str, doc_id: str, doc: BaseModel) -> None:
        self._write_json(self._doc_path(kind, doc_id), doc.model_dump(mode="json", by_alias=True))

    # ------------------------------------------------------------------
    # Content documents
    # ------------------------------------------------------------------

    def get_world(self, world_id: str) -> WorldDoc | None:
        return self._load("worlds", world_id, WorldDoc)

    def save_world(self, world: WorldDoc) -> None:
        self._save("worlds", world.id, world)

    def get_ruleset(self, ruleset_id: str) -> RulesetDoc | None:
        return self._load("rulesets", ruleset_id, RulesetDoc)

    def save_ruleset(self, ruleset: RulesetDoc) -> None:
        self._save("rulesets", ruleset.id, ruleset)

    def get_scenario(self, scenario_id: str) -> ScenarioDoc | None:
        return self._load("scenarios", scenario_id, ScenarioDoc)

    def save_scenario(self, scenario: ScenarioDoc) -> None:
        self._save("scenarios", scenario.id, scenario)

    def get_npc(self, npc_id: str) -> NpcDoc | None:
        return self._load("npcs", npc_id, NpcDoc)

    def save_npc(self, npc: NpcDoc) -> None:
        self._save("npcs", npc.id, npc)

    def get_module(self, module_id: str) -> ModuleDoc | None:
        return self._load("modules", module_id, ModuleDoc)

    def save_module(self, module: ModuleDoc) -> None:
        self._save("modules", module.id, module)

    def list_modules(self) -> list[ModuleDoc]:
        folder = self._base / "modules"
        if not folder.is_dir():
            return []
        return [
            self._parse(ModuleDoc, self._read_json(p), p)
            for p in sorted(folder.glob("*.json"))
        ]

    def get_entry_point(self, slug: str) -> EntryPoint | None:
        return self._load("entry_points", slug, EntryPoint)

    def save_entry_point(self, entry: EntryPoint) -> None:
        self._save("entry_points", entry.slug, entry)

    # ------------------------------------------------------------------
    # Story ↔ module attachments
    # ------------------------------------------------------------------

    def _story_modules_path(self, story_id: str) -> Path:
        return self._base / "stories" / story_id / "modules.json"

    def _story_modules(self, story_id: str) -> list[dict]:
        path = self._story_modules_path(story_id)
        if not path.exists():
            return []
        return self._read_json(path)

    def attach_module(
        self, story_id: str, module_id: str, params: dict[str, Any] | None = None
    ) -> None:
        """Upsert an attachment; params=None means "use module defaults"."""
        rows = self._story_modules(story_id)
        for row in rows:
            if row["module_id"] == module_id:
                row["params"] = params
                break
        else:
            rows.append({"module_id": module_id, "params": params})
        self._write_json(self._story_modules_path(story_id), rows)

    def attached_modules(self, story_id: str) -> list[str]:
        return [row["module_id"] for row in self._story_modules(story_id)]

    def story_module_params(self, story_id: str, module_id: str) -> dict[str, Any] | None:
        for row in self._story_modules(story_id):
            if row["module_id"] == module_id:
                return row.get("params")
        return None

    # ------------------------------------------------------------------
    # Slot policies
    # ------------------------------------------------------------------

    def _slots_path(self) -> Path:
        return self._base / "slots.json"

    def get_slot_policy(self, slot_type: str, name: str) -> SlotPolicy | None:
        path = self._slots_path()
        if not path.exists():
            return None
        raw = self._read_json(path).get(slot_type, {}).get(name)
        return self._parse(SlotPolicy, {"name": name, **raw}, path) if raw else None

    def save_slot_policy(self, slot_type: str, policy: SlotPolicy) -> None:
        path = self._slots_path()
        data = self._read_json(path) if path.exists() else {}
        data.setdefault(slot_type, {})[policy.name] = policy.model_dump(exclude={"name"})
        self._write_json(path, data)

    # ------------------------------------------------------------------
    # Games and turns
    # ------------------------------------------------------------------

    def _game_dir(self, game_id: str) -> Path:
        return self._base / "games" / game_id

    def get_game_state(self, game_id: str) -> GameState | None:
        path = self._game_dir(game_id) / "state.json"
        if not path.exists():
            return None
        return self._parse(GameState, self._read_json(path), path)

    def save_game_state(self, game_id: str, state: GameState) -> None:
        self._write_json(self._game_dir(game_id) / "state.json", state.model_dump(mode="json"))

    def get_turns(self, game_id: str) -> list[TurnRecord]:
        path = self._game_dir(game_id) / "turns.json"
        if not path.exists():
            return []
        return [self._parse(TurnRecord, t, path) for t in self._read_json(path)]

    def commit_turn(self, record: TurnRecord) -> tuple[TurnRecord, bool]:
        """Append a turn and replace the game state.

        A record whose idempotency key was already committed is not written
        again; the stored record is returned with created=False.
        """
        turns = self.get_turns(record.game_id)
        if record.idempotency_key:
            for existing in turns:
                if existing.idempotency_key == record.idempotency_key:
                    logger.info("duplicate turn commit game=%s key=%s",
                                record.game_id, record.idempotency_key)
                    return existing, False

        turns.append(record)
        self._write_json(
            self._game_dir(record.game_id) / "turns.json",
            [t.model_dump(mode="json") for t in turns],
        )
        self.save_game_state(record.game_id, record.state)
        return record, True
