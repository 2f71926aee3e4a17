from awf_engine.actions.boot import build_registry, refresh_registry
from awf_engine.actions.core import CoreAct
from awf_engine.actions.interpreter import ActInterpreter, ApplyResult
from awf_engine.actions.registry import ActContext, ActionRegistration, ActionRegistry
from awf_engine.actions.validator import ActionCheck, ActionValidator

__all__ = [
    "ActContext",
    "ActInterpreter",
    "ActionCheck",
    "ActionRegistration",
    "ActionRegistry",
    "ActionValidator",
    "ApplyResult",
    "CoreAct",
    "build_registry",
    "refresh_registry",
]
