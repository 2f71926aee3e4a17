"""Per-act validation: existence, payload schema, module authorization.

Checks run in that order and stop at the first failure, so the status names
the earliest problem. Nothing is applied here.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from awf_engine.actions.registry import ActionRegistration, ActionRegistry
from awf_engine.models import Act

logger = logging.getLogger(__name__)

ActionStatus = Literal["valid", "unknown_action", "schema_invalid", "module_not_attached"]


class AttachmentLookup(Protocol):
    def attached_modules(self, story_id: str) -> list[str]: ...


class FieldError(BaseModel):
    loc: str
    message: str


class ActionCheck(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    act_type: str
    status: ActionStatus
    errors: list[FieldError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    registration: ActionRegistration | None = None
    payload: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "valid"

    def describe(self) -> str:
        if not self.errors:
            return f"{self.act_type}: {self.status}"
        details = "; ".join(f"{e.loc}: {e.message}" if e.loc else e.message for e in self.errors)
        return f"{self.act_type}: {self.status} ({details})"


def _field_errors(exc: ValidationError) -> list[FieldError]:
    return [
        FieldError(loc=".".join(str(p) for p in err["loc"]), message=err["msg"])
        for err in exc.errors()
    ]


class ActionValidator:
    def __init__(
        self,
        registry: ActionRegistry,
        attachments: AttachmentLookup,
        *,
        allow_unknown: bool = False,
    ) -> None:
        self.registry = registry
        self.attachments = attachments
        self.allow_unknown = allow_unknown

    def validate_action(self, act: Act, story_id: str) -> ActionCheck:
        reg, providers = self.registry.lookup(act.type)
        if reg is None:
            if self.allow_unknown:
                return ActionCheck(
                    act_type=act.type, status="valid",
                    warnings=[f"Unknown action {act.type!r} allowed without effect"],
                )
            return ActionCheck(
                act_type=act.type, status="unknown_action",
                errors=[FieldError(loc="type", message=f"Unknown action type {act.type!r}")],
            )

        try:
            payload = reg.payload_model.model_validate(act.data)
        except ValidationError as e:
            return ActionCheck(
                act_type=act.type, status="schema_invalid",
                errors=_field_errors(e), registration=reg,
            )

        if reg.module_scoped:
            attached = set(self.attachments.attached_modules(story_id))
            if not providers & attached:
                needed = ", ".join(sorted(providers)) or reg.slice
                return ActionCheck(
                    act_type=act.type, status="module_not_attached", registration=reg,
                    errors=[FieldError(
                        loc="type",
                        message=f"Story {story_id!r} has no module attached for slice {reg.slice!r} (needs {needed})",
                    )],
                )

        return ActionCheck(act_type=act.type, status="valid", registration=reg, payload=payload)
