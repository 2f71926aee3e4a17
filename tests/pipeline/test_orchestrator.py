"""Turn orchestrator tests with canned model replies.

Each test sets up a turn against the seeded store and feeds the orchestrator
a fixed sequence of model outputs, then checks the outcome, the number and
order of model calls, and what was persisted.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from awf_engine.actions import ActionRegistry
from awf_engine.config import Settings
from awf_engine.llm import EchoLLM, HttpLLM, LLMError
from awf_engine.models import EntryPoint, GameState
from awf_engine.pipeline.orchestrator import TurnFailure, TurnOrchestrator, TurnRequest, TurnResult
from awf_engine.storage import Storage


# ── Helpers ──────────────────────────────────────────────


class LLMSequence:
    """Return canned responses in order and record every call.

    An Exception instance in `responses` is raised instead of returned.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []  # list of (stage, prompt) tuples

    async def __call__(self, stage, prompt):
        self.calls.append((stage, prompt))
        idx = len(self.calls) - 1
        response = self.responses[idx] if idx < len(self.responses) else ""
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def stages(self):
        return [stage for stage, _ in self.calls]


def _reply(**overrides) -> str:
    body = {
        "scn": "chapel",
        "txt": "Dust drifts through the broken window.",
        "choices": [{"id": "c1", "label": "Search the altar"}],
        "acts": [],
    }
    body.update(overrides)
    return json.dumps(body)


def _request(**overrides) -> TurnRequest:
    fields = dict(
        game_id="g1",
        world_id="mystika",
        ruleset_id="default",
        scenario_id="kiera_meet",
        entry_start_slug="whispercross",
        npc_ids=["kiera"],
        player_input_text="I look around.",
    )
    fields.update(overrides)
    return TurnRequest(**fields)


def _orchestrator(storage, registry, settings, llm) -> TurnOrchestrator:
    return TurnOrchestrator(store=storage, llm=llm, registry=registry, settings=settings)


# ── Happy path ───────────────────────────────────────────


class TestHappyPath:
    async def test_single_call_when_valid(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply(acts=[{"type": "SCENE_SET", "data": {"scn": "chapel"}}])])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())

        assert isinstance(result, TurnResult)
        assert llm.stages == ["turn"]
        assert result.attempts == 1
        assert result.narration == "Dust drifts through the broken window."
        assert result.choices[0].label == "Search the altar"
        assert result.state.hot["scene"] == "chapel"
        assert result.state.turn_id == 1
        assert result.trace == ["ASSEMBLING", "INFERRING", "VALIDATING", "INTERPRETING", "DONE"]

    async def test_prompt_contains_layers(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply()])
        await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        prompt = llm.calls[0][1]
        assert prompt.startswith("# CORE")
        assert "Kiera Bio" in prompt
        assert "Mechanic: Relationships." in prompt
        assert "Text: I look around." in prompt

    async def test_turn_persisted(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply(acts=[{"type": "FLAG_SET", "data": {"key": "bell_rung", "val": True}}])])
        await _orchestrator(storage, registry, settings, llm).run_turn(_request(idempotency_key="k1"))
        turns = storage.get_turns("g1")
        assert len(turns) == 1
        assert turns[0].summary.flags == ["bell_rung"]
        assert storage.get_game_state("g1").hot["flags"] == {"bell_rung": True}

    async def test_stored_state_used_when_none_given(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        storage.save_game_state("g1", GameState(turn_id=4, hot={"scene": "market"}))
        llm = LLMSequence([_reply(scn="market", acts=[{"type": "TIME_ADVANCE", "data": {"ticks": 1}}])])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert result.state.turn_id == 5
        assert result.summary.time is not None
        assert result.summary.violations == []

    async def test_duplicate_idempotency_key(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply(), _reply(txt="A different reply.")])
        orch = _orchestrator(storage, registry, settings, llm)
        first = await orch.run_turn(_request(idempotency_key="same"))
        second = await orch.run_turn(_request(idempotency_key="same"))
        assert first.duplicate is False
        assert second.duplicate is True
        assert second.narration == first.narration
        assert len(storage.get_turns("g1")) == 1


# ── Retry ────────────────────────────────────────────────


class TestRetry:
    async def test_retry_with_repair_hint_then_success(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence(['{"txt": "no scene"}', _reply()])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())

        assert isinstance(result, TurnResult)
        assert llm.stages == ["turn", "turn_retry"]
        assert result.attempts == 2
        retry_prompt = llm.calls[1][1]
        assert retry_prompt.startswith(llm.calls[0][1])
        assert "# REPAIR" in retry_prompt
        assert "scn" in retry_prompt.split("# REPAIR")[1]
        assert result.trace == [
            "ASSEMBLING", "INFERRING", "VALIDATING", "RETRYING",
            "INFERRING", "VALIDATING", "INTERPRETING", "DONE",
        ]

    async def test_two_invalid_replies_fail_without_third_call(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence(["not json", '{"scn": "s"}', _reply()])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())

        assert isinstance(result, TurnFailure)
        assert result.reason == "validation_failed_after_retry"
        assert len(llm.calls) == 2
        assert result.attempts == 2
        assert any(e.startswith("txt") for e in result.errors)
        assert result.trace[-1] == "FAILED"
        assert storage.get_turns("g1") == []

    async def test_echo_llm_fails_validation(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        result = await _orchestrator(storage, registry, settings, EchoLLM()).run_turn(_request())
        assert isinstance(result, TurnFailure)
        assert result.reason == "validation_failed_after_retry"


# ── Failures ─────────────────────────────────────────────


class TestFailures:
    async def test_input_invalid(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply()])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request(world_id="nowhere"))
        assert isinstance(result, TurnFailure)
        assert result.reason == "input_invalid"
        assert result.phase == "ASSEMBLING"
        assert llm.calls == []

    async def test_transport_error_is_infra(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([LLMError("Cannot connect to LLM backend at http://x")])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert isinstance(result, TurnFailure)
        assert result.reason == "infra_error"
        assert result.phase == "INFERRING"
        assert "Cannot connect" in result.message

    async def test_timeout_is_infra(self, storage: Storage, registry: ActionRegistry) -> None:
        async def slow(stage, prompt):
            await asyncio.sleep(1)
            return _reply()

        settings = Settings(env="test", model_timeout=0.01)
        result = await _orchestrator(storage, registry, settings, slow).run_turn(_request())
        assert isinstance(result, TurnFailure)
        assert result.reason == "infra_error"
        assert "timed out" in result.message

    async def test_retry_transport_error_is_infra(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence(["garbage", LLMError("LLM backend returned HTTP 503")])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert result.reason == "infra_error"
        assert result.attempts == 2

    async def test_read_error_is_infra(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = HttpLLM(provider_url="http://localhost:5001")
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert isinstance(result, TurnFailure)
        assert result.reason == "infra_error"
        assert result.phase == "INFERRING"

    async def test_non_json_body_is_infra(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        resp = MagicMock()
        resp.raise_for_status = MagicMock()
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        llm = HttpLLM(provider_url="http://localhost:5001")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert result.reason == "infra_error"
        assert "non-JSON" in result.message

    async def test_corrupt_stored_state_is_infra(self, tmp_path, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        path = tmp_path / "data" / "games" / "g1" / "state.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"turn_id": "many", "warm": []}))
        llm = LLMSequence([_reply()])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert isinstance(result, TurnFailure)
        assert result.reason == "infra_error"
        assert result.phase == "ASSEMBLING"
        assert llm.calls == []


# ── Acts ─────────────────────────────────────────────────


class TestActs:
    async def test_bad_acts_become_violations_not_failures(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        acts = [
            {"type": "SCENE_SET", "data": {"scn": "market"}},
            {"type": "CAST_FIREBALL", "data": {}},
            {"type": "RESOURCE_DELTA", "data": {"key": "gold"}},
            {"type": "relationship.delta", "data": {"npc": "kiera", "stat": "trust", "delta": 5}},
        ]
        llm = LLMSequence([_reply(acts=acts)])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())

        assert isinstance(result, TurnResult)
        reasons = [(v.index, v.reason) for v in result.summary.violations]
        assert reasons == [(1, "unknown_action"), (2, "schema_invalid")]
        assert [a.type for a in result.summary.applied] == ["SCENE_SET", "relationship.delta"]
        assert result.state.slices["relationships"]["kiera"]["trust"] == 5

    async def test_module_act_without_attachment(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        acts = [{"type": "relationship.delta", "data": {"npc": "kiera", "stat": "trust", "delta": 5}}]
        llm = LLMSequence([_reply(acts=acts)])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(
            _request(attached_module_ids=[], entry_start_slug="whispercross")
        )
        # authorization follows the story's attachments, not the prompt's module list
        assert result.summary.violations == []

        storage.attach_module("story-other", "nothing")
        storage.save_entry_point(EntryPoint(slug="elsewhere", story_id="story-other"))
        llm = LLMSequence([_reply(acts=acts)])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(
            _request(game_id="g2", entry_start_slug="elsewhere")
        )
        assert [v.reason for v in result.summary.violations] == ["module_not_attached"]
        assert "relationships" not in result.state.slices

    async def test_first_turn_time_advance_rejected(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([_reply(acts=[{"type": "TIME_ADVANCE", "data": {"ticks": 2}}])])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert [v.reason for v in result.summary.violations] == ["rejected"]
        assert "time" not in result.state.hot

    async def test_malformed_stored_value_does_not_fail_turn(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        storage.save_game_state("g1", GameState(turn_id=2, hot={"resources": {"gold": "lots"}}))
        acts = [
            {"type": "RESOURCE_DELTA", "data": {"key": "gold", "delta": 5}},
            {"type": "FLAG_SET", "data": {"key": "paid", "val": False}},
        ]
        llm = LLMSequence([_reply(acts=acts)])
        result = await _orchestrator(storage, registry, settings, llm).run_turn(_request())
        assert isinstance(result, TurnResult)
        assert [(v.index, v.reason) for v in result.summary.violations] == [(0, "rejected")]
        assert result.state.hot["flags"] == {"paid": False}
        assert result.state.hot["resources"] == {"gold": "lots"}


# ── Preview ──────────────────────────────────────────────


class TestPreview:
    def test_preview_makes_no_model_call(self, storage: Storage, registry: ActionRegistry, settings: Settings) -> None:
        llm = LLMSequence([])
        preview = _orchestrator(storage, registry, settings, llm).preview(_request(max_tokens=150))
        assert llm.calls == []
        assert preview.prompt.startswith("# CORE")
        assert preview.meta.budget == 150
        assert preview.budget.trims
        assert storage.get_turns("g1") == []
