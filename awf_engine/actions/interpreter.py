"""Act interpreter — folds validated acts into a new game state.

Acts are applied in list order, each against a fresh copy of the state so a
rejected act leaves nothing behind. A failed act never aborts the batch: it
becomes a violation in the summary and the next act runs. The input state is
never mutated.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from awf_engine.actions.registry import ActContext
from awf_engine.actions.validator import ActionValidator
from awf_engine.errors import ActRejected
from awf_engine.models import Act, ActSummary, GameState, TimeConfig, Violation

logger = logging.getLogger(__name__)

MAX_EPISODIC = 60


class ApplyResult(BaseModel):
    new_state: GameState
    summary: ActSummary


def trim_episodic(state: GameState, limit: int = MAX_EPISODIC) -> int:
    """Evict lowest-salience, then oldest, memories beyond `limit`. Pins stay."""
    episodic = state.warm.episodic
    if len(episodic) <= limit:
        return 0
    pinned = set(state.warm.pins)
    evictable = sorted(
        (m for m in episodic if m.key not in pinned),
        key=lambda m: (m.salience, m.turn_id),
    )
    excess = len(episodic) - limit
    drop = {id(m) for m in evictable[:excess]}
    state.warm.episodic = [m for m in episodic if id(m) not in drop]
    return len(drop)


class ActInterpreter:
    def __init__(self, validator: ActionValidator) -> None:
        self.validator = validator

    def apply_acts(
        self,
        state: GameState,
        acts: list[Act],
        *,
        story_id: str,
        module_params: dict[str, dict[str, Any]] | None = None,
        time: TimeConfig | None = None,
    ) -> ApplyResult:
        summary = ActSummary()
        ctx = ActContext(
            turn_id=state.turn_id + 1,
            is_first_turn=state.turn_id == 0,
            module_params=module_params or {},
            time=time or TimeConfig(),
            summary=summary,
        )
        current = state.model_copy(deep=True)

        for index, act in enumerate(acts):
            check = self.validator.validate_action(act, story_id)
            summary.warnings.extend(check.warnings)
            if not check.ok:
                summary.violations.append(Violation(
                    index=index, type=act.type, reason=check.status, message=check.describe(),
                ))
                logger.warning("act %d rejected: %s", index, check.describe())
                continue
            if check.registration is None:
                continue

            ctx.act_index = index
            try:
                current = check.registration.apply(current.model_copy(deep=True), check.payload, ctx)
            except ActRejected as e:
                summary.violations.append(Violation(
                    index=index, type=act.type, reason="rejected", message=str(e),
                ))
                logger.warning("act %d (%s) rejected by reducer: %s", index, act.type, e)
                continue
            except Exception as e:
                # stored state of an unexpected shape; the copy is discarded
                summary.violations.append(Violation(
                    index=index, type=act.type, reason="rejected",
                    message=f"{type(e).__name__}: {e}",
                ))
                logger.warning("act %d (%s) failed in reducer", index, act.type, exc_info=True)
                continue
            summary.applied.append(act)

        trimmed = trim_episodic(current)
        if trimmed:
            summary.memory.trimmed += trimmed
            logger.info("episodic memory trimmed by %d entries", trimmed)

        return ApplyResult(new_state=current, summary=summary)
