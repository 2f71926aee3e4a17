"""Turn orchestrator — runs one player turn end-to-end.

Turn flow:
  1. ASSEMBLING    build the packet, linearize, apply the token budget.
  2. INFERRING     call the model with the assembled prompt (stage "turn").
  3. VALIDATING    check the reply against the output contract.
  4. RETRYING      on failure, call once more with the repair hint appended
                   (stage "turn_retry") and validate again. There is never a
                   third call.
  5. INTERPRETING  validate and fold the reply's acts into a new game state.
  6. DONE          commit the turn record and return the result.

Every exit other than DONE is FAILED with a reason: input_invalid,
infra_error (transport, timeout, storage) or validation_failed_after_retry.
Rejected acts do not fail a turn; they show up as violations in the summary.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from pydantic import BaseModel, Field

from awf_engine.actions.interpreter import ActInterpreter
from awf_engine.actions.registry import ActionRegistry
from awf_engine.actions.validator import ActionValidator
from awf_engine.config import Settings
from awf_engine.errors import FailureReason, InfraError, InputError
from awf_engine.llm import LLM, Inference, LLMError, infer
from awf_engine.models import ActSummary, BudgetReport, Choice, GameState, TurnRecord
from awf_engine.output import LocaleOptions, OutputCheck, check_inference
from awf_engine.pipeline.assembler import AssembledTurn, AssembleRequest, Assembler, AssemblyMeta
from awf_engine.prompts import with_repair_hint
from awf_engine.storage import ContentStore

logger = logging.getLogger(__name__)

TurnPhase = Literal["ASSEMBLING", "INFERRING", "VALIDATING", "RETRYING", "INTERPRETING", "DONE", "FAILED"]


class TurnRequest(AssembleRequest):
    game_id: str
    idempotency_key: str | None = None
    locale: str | None = None


class TurnResult(BaseModel):
    ok: Literal[True] = True
    narration: str
    scene: str
    choices: list[Choice] = Field(default_factory=list)
    val: str | None = None
    state: GameState
    summary: ActSummary
    budget: BudgetReport
    meta: AssemblyMeta
    attempts: int
    duplicate: bool = False
    trace: list[TurnPhase] = Field(default_factory=list)


class TurnFailure(BaseModel):
    ok: Literal[False] = False
    reason: FailureReason
    phase: TurnPhase
    message: str
    errors: list[str] = Field(default_factory=list)
    attempts: int = 0
    trace: list[TurnPhase] = Field(default_factory=list)


class TurnPreview(BaseModel):
    prompt: str
    meta: AssemblyMeta
    budget: BudgetReport


class TurnOrchestrator:
    def __init__(
        self,
        *,
        store: ContentStore,
        llm: LLM,
        registry: ActionRegistry,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self.settings = settings or Settings()
        self.assembler = Assembler(store, self.settings)
        self.validator = ActionValidator(
            registry, store, allow_unknown=self.settings.allow_unknown_actions,
        )
        self.interpreter = ActInterpreter(self.validator)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _infer(self, stage: str, prompt: str) -> Inference:
        try:
            return await asyncio.wait_for(infer(self.llm, stage, prompt), timeout=self.settings.model_timeout)
        except asyncio.TimeoutError as e:
            raise InfraError(f"Model call timed out after {self.settings.model_timeout}s") from e
        except LLMError as e:
            raise InfraError(str(e)) from e

    def _locale(self, request: TurnRequest) -> LocaleOptions:
        return LocaleOptions.for_locale(request.locale or self.settings.locale)

    def _prepare(self, request: TurnRequest) -> TurnRequest:
        """Fill the game state from the store when the caller sent none."""
        if "game_state" in request.model_fields_set:
            return request
        stored = self.store.get_game_state(request.game_id)
        if stored is None:
            return request
        return request.model_copy(update={"game_state": stored})

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def preview(self, request: TurnRequest) -> TurnPreview:
        """Dry run: assemble and budget without calling the model."""
        bundle = self.assembler.assemble(self._prepare(request))
        return TurnPreview(prompt=bundle.prompt, meta=bundle.meta, budget=bundle.budget.to_report())

    async def run_turn(self, request: TurnRequest) -> TurnResult | TurnFailure:
        trace: list[TurnPhase] = []
        attempts = 0

        def enter(phase: TurnPhase) -> TurnPhase:
            trace.append(phase)
            logger.debug("turn %s: %s", request.game_id, phase)
            return phase

        def fail(phase: TurnPhase, reason: FailureReason, message: str, errors: list[str] | None = None) -> TurnFailure:
            trace.append("FAILED")
            logger.warning("turn %s failed in %s: %s (%s)", request.game_id, phase, reason, message)
            return TurnFailure(
                reason=reason, phase=phase, message=message,
                errors=errors or [], attempts=attempts, trace=trace,
            )

        # 1. Assemble
        phase = enter("ASSEMBLING")
        try:
            request = self._prepare(request)
            bundle: AssembledTurn = self.assembler.assemble(request)
        except InputError as e:
            return fail(phase, "input_invalid", str(e))
        except InfraError as e:
            return fail(phase, "infra_error", str(e))

        locale = self._locale(request)

        # 2-3. First attempt
        phase = enter("INFERRING")
        attempts += 1
        try:
            inference = await self._infer("turn", bundle.prompt)
        except InfraError as e:
            return fail(phase, "infra_error", str(e))

        phase = enter("VALIDATING")
        check: OutputCheck = check_inference(inference, locale)

        # 4. Single retry with repair hint
        if not check.is_valid:
            enter("RETRYING")
            logger.info("turn %s: reply invalid, retrying once", request.game_id)
            phase = enter("INFERRING")
            attempts += 1
            try:
                inference = await self._infer("turn_retry", with_repair_hint(bundle.prompt, check.repair_hint or ""))
            except InfraError as e:
                return fail(phase, "infra_error", str(e))

            phase = enter("VALIDATING")
            check = check_inference(inference, locale)
            if not check.is_valid:
                return fail(
                    phase, "validation_failed_after_retry",
                    "Model reply failed validation twice",
                    [f"{e.field}: {e.message}" for e in check.errors],
                )

        reply = check.reply
        if reply is None:
            return fail(phase, "validation_failed_after_retry", "Validated reply carried no body")

        # 5. Interpret acts
        phase = enter("INTERPRETING")
        try:
            applied = self.interpreter.apply_acts(
                request.game_state, reply.acts,
                story_id=bundle.story_id, module_params=bundle.module_params, time=bundle.time,
            )
        except InfraError as e:
            return fail(phase, "infra_error", str(e))
        new_state = applied.new_state.model_copy(update={"turn_id": request.game_state.turn_id + 1})

        # 6. Commit
        record = TurnRecord(
            game_id=request.game_id,
            turn_id=new_state.turn_id,
            idempotency_key=request.idempotency_key,
            reply=reply,
            state=new_state,
            summary=applied.summary,
            budget=bundle.budget.to_report(),
        )
        try:
            stored, created = self.store.commit_turn(record)
        except InfraError as e:
            return fail(phase, "infra_error", str(e))

        enter("DONE")
        logger.info("turn %s/%d done: %d acts applied, %d violations, attempts=%d",
                    stored.game_id, stored.turn_id, len(stored.summary.applied),
                    len(stored.summary.violations), attempts)
        return TurnResult(
            narration=stored.reply.txt,
            scene=stored.reply.scn,
            choices=stored.reply.choices,
            val=stored.reply.val,
            state=stored.state,
            summary=stored.summary,
            budget=stored.budget,
            meta=bundle.meta,
            attempts=attempts,
            duplicate=not created,
            trace=trace,
        )
