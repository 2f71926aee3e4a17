"""Exception taxonomy for the turn pipeline.

Input, infrastructure and registry problems are raised as exceptions inside
the engine. The orchestrator catches them at the turn boundary and reports a
`FailureReason` to the caller instead of a raw traceback.
"""

from __future__ import annotations

from typing import Literal

FailureReason = Literal[
    "unknown_action",
    "schema_invalid",
    "module_not_attached",
    "validation_failed_after_retry",
    "infra_error",
    "input_invalid",
]


class AwfError(Exception):
    """Base class for engine errors."""


class InputError(AwfError):
    """Bad request data: missing world, unknown entry point, empty input."""


class InfraError(AwfError):
    """Transport, timeout or storage failure. Callers may retry the whole turn."""


class RegistryError(AwfError):
    """Raised by a strict registry when an action type is registered twice."""


class GraphError(ValueError):
    """Structural problem in a scenario graph (duplicate ids, dangling edges)."""


class GuardSyntaxError(GraphError):
    """A guard expression could not be parsed."""


class ActRejected(ValueError):
    """A reducer refused to apply an act. Recorded as a violation, never fatal."""
