"""Tests for awf_engine.pipeline.assembler — using the seeded JSON store."""

import pytest

from awf_engine.config import Settings
from awf_engine.errors import InputError
from awf_engine.models import GameState, ModuleDoc
from awf_engine.pipeline.assembler import AssembleRequest, Assembler, resolve_module_params
from awf_engine.storage import Storage

STORY_ID = "story-whispercross"


def _request(**overrides) -> AssembleRequest:
    fields = dict(
        world_id="mystika",
        ruleset_id="default",
        scenario_id="kiera_meet",
        entry_start_slug="whispercross",
        npc_ids=["kiera", "thorne"],
        player_input_text="I search the altar.",
    )
    fields.update(overrides)
    return AssembleRequest(**fields)


class TestRequired:
    def test_missing_world(self, storage: Storage, settings: Settings) -> None:
        with pytest.raises(InputError, match="World"):
            Assembler(storage, settings).assemble(_request(world_id="nowhere"))

    def test_missing_entry_point(self, storage: Storage, settings: Settings) -> None:
        with pytest.raises(InputError, match="Entry point"):
            Assembler(storage, settings).assemble(_request(entry_start_slug="nope"))

    def test_missing_ruleset(self, storage: Storage, settings: Settings) -> None:
        with pytest.raises(InputError, match="Ruleset"):
            Assembler(storage, settings).assemble(_request(ruleset_id="nope"))

    def test_blank_action_input(self, storage: Storage, settings: Settings) -> None:
        with pytest.raises(InputError):
            Assembler(storage, settings).assemble(_request(player_input_text="   "))

    def test_blank_start_input_allowed(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request(player_input_text="", input_kind="start"))
        assert bundle.packet.input.kind == "start"


class TestDegradation:
    def test_missing_optional_pieces_recorded(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request(
            scenario_id="ghost_scenario",
            npc_ids=["kiera", "nobody"],
            attached_module_ids=["relationships", "ghost_module"],
        ))
        dropped = {(d.kind, d.id, d.reason) for d in bundle.meta.dropped}
        assert dropped == {
            ("scenario", "ghost_scenario", "not_found"),
            ("npc", "nobody", "not_found"),
            ("module", "ghost_module", "not_found"),
        }
        assert bundle.packet.scenario is None
        assert [n.id for n in bundle.packet.npcs] == ["kiera"]

    def test_npc_cap(self, storage: Storage) -> None:
        settings = Settings(env="test", max_active_npcs=1)
        bundle = Assembler(storage, settings).assemble(_request())
        assert [n.id for n in bundle.packet.npcs] == ["kiera"]
        assert [(d.id, d.reason) for d in bundle.meta.dropped] == [("thorne", "npc_cap")]


class TestContent:
    def test_story_attachments_used_by_default(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request())
        assert bundle.story_id == STORY_ID
        assert [m.id for m in bundle.packet.modules] == ["relationships"]
        module = bundle.packet.modules[0]
        assert module.params_defaulted is True
        assert "module:relationships" in bundle.meta.defaults_used
        assert "Mechanic: Relationships." in module.slots["hints"]
        assert "module.relationships.hints" in [s.key for s in bundle.budget.sections]

    def test_story_params_override_defaults(self, storage: Storage, settings: Settings) -> None:
        storage.attach_module(STORY_ID, "relationships", {"minTrustToRomance": 55, "gainCurve": {"scale": 2}})
        bundle = Assembler(storage, settings).assemble(_request())
        params = bundle.module_params["relationships"]
        assert params["minTrustToRomance"] == 55
        assert params["gainCurve"] == {"scale": 2, "softCap": 60, "hardCap": 100}
        assert "romance gated at trust ≥ 55" in bundle.packet.modules[0].slots["hints"]

    def test_stored_module_doc(self, storage: Storage, settings: Settings) -> None:
        storage.save_module(ModuleDoc(id="stealth", title="Stealth", state_slice="stealth", ai_hints=["Shadows matter."]))
        bundle = Assembler(storage, settings).assemble(_request(attached_module_ids=["stealth"]))
        assert bundle.packet.modules[0].slots["hints"] == "Mechanic: Stealth. Shadows matter."

    def test_reachability_follows_state(self, storage: Storage, settings: Settings) -> None:
        assembler = Assembler(storage, settings)
        low = assembler.assemble(_request())
        assert low.packet.scenario.reachable == ["chapel", "market"]

        state = GameState(turn_id=3, slices={"relationships": {"kiera": {"trust": 25}}})
        high = assembler.assemble(_request(game_state=state))
        assert high.packet.scenario.reachable == ["chapel", "kiera_camp", "market"]

    def test_state_and_input_in_prompt(self, storage: Storage, settings: Settings) -> None:
        state = GameState(hot={"scene": "chapel"})
        bundle = Assembler(storage, settings).assemble(_request(game_state=state))
        assert '"scene": "chapel"' in bundle.prompt
        assert bundle.prompt.rstrip().endswith("Text: I search the altar.")
        assert bundle.prompt.startswith("# CORE")

    def test_time_config_from_world(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request())
        assert [b.name for b in bundle.time.bands] == ["Dawn", "Day", "Dusk", "Night"]


class TestBudgetMeta:
    def test_meta_under_budget(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request())
        meta = bundle.meta
        assert meta.budget == 8000
        assert meta.estimated_tokens == meta.final_tokens
        assert 0 < meta.percent_used < 100
        assert "world:mystika" in meta.included
        assert "npc:kiera" in meta.included

    def test_request_max_tokens_trims(self, storage: Storage, settings: Settings) -> None:
        bundle = Assembler(storage, settings).assemble(_request(max_tokens=120))
        assert bundle.meta.budget == 120
        assert bundle.budget.trims
        tone = next(s for s in bundle.budget.sections if s.key == "world.tone")
        assert tone.slot.must_keep is True


class TestResolveModuleParams:
    def test_defaults_when_no_override(self) -> None:
        resolved = resolve_module_params({"a": 1}, None)
        assert resolved.used_default is True
        assert resolved.value == {"a": 1}

    def test_deep_merge(self) -> None:
        resolved = resolve_module_params({"a": {"x": 1, "y": 2}, "b": 3}, {"a": {"y": 9}})
        assert resolved.used_default is False
        assert resolved.value == {"a": {"x": 1, "y": 9}, "b": 3}

    def test_defaults_not_mutated(self) -> None:
        defaults = {"a": {"x": 1}}
        resolve_module_params(defaults, None).value["a"]["x"] = 5
        assert defaults == {"a": {"x": 1}}
