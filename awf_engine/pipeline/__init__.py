from awf_engine.pipeline.assembler import AssembledTurn, AssembleRequest, Assembler, AssemblyMeta
from awf_engine.pipeline.budget import BudgetResult, apply_budget, estimate_tokens
from awf_engine.pipeline.linearizer import linearize
from awf_engine.pipeline.orchestrator import (
    TurnFailure,
    TurnOrchestrator,
    TurnPreview,
    TurnRequest,
    TurnResult,
)

__all__ = [
    "AssembleRequest",
    "AssembledTurn",
    "Assembler",
    "AssemblyMeta",
    "BudgetResult",
    "TurnFailure",
    "TurnOrchestrator",
    "TurnPreview",
    "TurnRequest",
    "TurnResult",
    "apply_budget",
    "estimate_tokens",
    "linearize",
]
