"""Output validator — checks a model reply against the turn output contract.

A reply is one JSON object with exactly the keys scn, txt, choices, acts and
val. Every problem is collected rather than stopping at the first, so the
repair hint sent back on the retry can address all of them at once.

Locale checks (choice label length, one-language heuristic) only run for
non-English locales.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from awf_engine.llm import Inference, parse_json_object
from awf_engine.models import Act, Choice, ModelReply

logger = logging.getLogger(__name__)

ALLOWED_KEYS = ("scn", "txt", "choices", "acts", "val")
MAX_CHOICES = 5
MAX_ACTS = 8

CHOICE_LABEL_LIMITS: dict[str, int] = {
    "de": 60,
    "es": 56,
    "fr": 56,
    "it": 56,
    "ja": 24,
    "ko": 28,
    "zh": 20,
}
DEFAULT_CHOICE_LABEL_LIMIT = 48

_ENGLISH_STOPWORDS = re.compile(
    r"\b(the|and|or|but|in|on|at|to|for|of|with|by|is|are|was|were|be|been|being|"
    r"have|has|had|do|does|did|will|would|could|should|may|might|can|must|shall)\b",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r"\{\{?[^}]+\}?\}")
MAX_ENGLISH_STOPWORDS = 2


class OutputError(BaseModel):
    field: str
    message: str
    expected: Any = None
    actual: Any = None


class LocaleOptions(BaseModel):
    locale: str = "en-US"
    max_choice_label_length: int | None = None
    enforce_one_language: bool = True

    @classmethod
    def for_locale(cls, locale: str) -> LocaleOptions:
        lang = locale.split("-")[0].lower()
        return cls(
            locale=locale,
            max_choice_label_length=CHOICE_LABEL_LIMITS.get(lang, DEFAULT_CHOICE_LABEL_LIMIT),
        )

    @property
    def is_english(self) -> bool:
        return self.locale.lower().startswith("en")


class OutputCheck(BaseModel):
    is_valid: bool
    errors: list[OutputError] = Field(default_factory=list)
    repair_hint: str | None = None
    reply: ModelReply | None = None


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_reply(inference: Inference) -> dict[str, Any] | None:
    """The reply object: parsed JSON, unwrapped from {"AWF": {...}} if wrapped."""
    obj = inference.json_obj
    if obj is None:
        obj = parse_json_object(inference.raw)
    if obj is None:
        return None
    wrapped = obj.get("AWF")
    if isinstance(wrapped, dict) and len(obj) == 1:
        return wrapped
    return obj


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _required_string(obj: dict[str, Any], key: str, errors: list[OutputError]) -> None:
    value = obj.get(key)
    if not isinstance(value, str) or not value.strip():
        errors.append(OutputError(
            field=key, message=f"{key} is required and must be a non-empty string",
            expected="string", actual=_type_name(value),
        ))


def _check_choices(choices: Any, errors: list[OutputError]) -> None:
    if not isinstance(choices, list):
        errors.append(OutputError(
            field="choices", message="choices must be an array",
            expected="array", actual=_type_name(choices),
        ))
        return
    if len(choices) > MAX_CHOICES:
        errors.append(OutputError(
            field="choices", message=f"choices must have at most {MAX_CHOICES} items",
            expected=f"<= {MAX_CHOICES}", actual=len(choices),
        ))
    for i, choice in enumerate(choices):
        if not isinstance(choice, dict):
            errors.append(OutputError(
                field=f"choices[{i}]", message="each choice must be an object",
                expected="object", actual=_type_name(choice),
            ))
            continue
        for key in ("id", "label"):
            value = choice.get(key)
            if not isinstance(value, str) or not value:
                errors.append(OutputError(
                    field=f"choices[{i}].{key}",
                    message=f"choice {key} is required and must be a string",
                    expected="string", actual=_type_name(value),
                ))


def _check_acts(acts: Any, errors: list[OutputError]) -> None:
    if not isinstance(acts, list):
        errors.append(OutputError(
            field="acts", message="acts must be an array",
            expected="array", actual=_type_name(acts),
        ))
        return
    if len(acts) > MAX_ACTS:
        errors.append(OutputError(
            field="acts", message=f"acts must have at most {MAX_ACTS} items",
            expected=f"<= {MAX_ACTS}", actual=len(acts),
        ))
    for i, act in enumerate(acts):
        if not isinstance(act, dict):
            errors.append(OutputError(
                field=f"acts[{i}]", message="each act must be an object",
                expected="object", actual=_type_name(act),
            ))
            continue
        if not isinstance(act.get("type"), str) or not act.get("type"):
            errors.append(OutputError(
                field=f"acts[{i}].type", message="act type is required and must be a string",
                expected="string", actual=_type_name(act.get("type")),
            ))
        if not isinstance(act.get("data"), dict):
            errors.append(OutputError(
                field=f"acts[{i}].data", message="act data is required and must be an object",
                expected="object", actual=_type_name(act.get("data")),
            ))


def english_leak(text: str) -> bool:
    """More than two English stopwords once {placeholders} are removed."""
    stripped = _PLACEHOLDER.sub(" ", text)
    return len(_ENGLISH_STOPWORDS.findall(stripped)) > MAX_ENGLISH_STOPWORDS


def _check_locale(obj: dict[str, Any], options: LocaleOptions, errors: list[OutputError]) -> None:
    choices = obj.get("choices") if isinstance(obj.get("choices"), list) else []
    labels = [c.get("label") for c in choices if isinstance(c, dict) and isinstance(c.get("label"), str)]

    limit = options.max_choice_label_length
    if limit:
        for i, choice in enumerate(choices):
            label = choice.get("label") if isinstance(choice, dict) else None
            if isinstance(label, str) and len(label) > limit:
                errors.append(OutputError(
                    field=f"choices[{i}].label",
                    message=f"choice label exceeds maximum length for {options.locale}",
                    expected=f"<= {limit} characters", actual=f"{len(label)} characters",
                ))

    if options.enforce_one_language:
        texts = [obj.get("txt"), obj.get("scn"), *labels]
        if any(isinstance(t, str) and english_leak(t) for t in texts):
            errors.append(OutputError(
                field="txt",
                message=f"text contains mixed languages, expected only {options.locale}",
                expected=f"single language: {options.locale}", actual="English words detected",
            ))


def repair_hint(errors: list[OutputError]) -> str:
    """Instruction for the retry prompt covering every error found."""
    hints: list[str] = []
    messages = [e.message for e in errors]
    if any("required" in m for m in messages):
        hints.append("Include all required fields: scn, txt")
    if any("at most" in m for m in messages):
        hints.append(f"Limit array sizes: choices <= {MAX_CHOICES}, acts <= {MAX_ACTS}")
    if any("Extra keys" in m for m in messages):
        hints.append(f"Remove extra keys, only include: {', '.join(ALLOWED_KEYS)}")
    if any("must be an object" in m or "must be an array" in m for m in messages):
        hints.append("Ensure proper object/array structure for choices and acts")
    if any("mixed languages" in m or "maximum length" in m for m in messages):
        hints.append("Write every text field in the target language and keep choice labels short")
    if not hints:
        hints.append(
            f"Return exactly one JSON object; include scn and txt; choices <= {MAX_CHOICES}; "
            f"acts <= {MAX_ACTS}; do not include extra keys"
        )
    problems = "; ".join(f"{e.field}: {e.message}" for e in errors)
    return f"{'; '.join(hints)}. Problems: {problems}."


def validate_output(obj: Any, locale: LocaleOptions | None = None) -> OutputCheck:
    errors: list[OutputError] = []

    if not isinstance(obj, dict):
        errors.append(OutputError(
            field="reply", message="reply must be a JSON object",
            expected="object", actual=_type_name(obj),
        ))
        return OutputCheck(is_valid=False, errors=errors, repair_hint=repair_hint(errors))

    _required_string(obj, "scn", errors)
    _required_string(obj, "txt", errors)
    if "choices" in obj:
        _check_choices(obj["choices"], errors)
    if "acts" in obj:
        _check_acts(obj["acts"], errors)
    if obj.get("val") is not None and not isinstance(obj["val"], str):
        errors.append(OutputError(
            field="val", message="val must be a string if provided",
            expected="string", actual=_type_name(obj["val"]),
        ))

    extra = [k for k in obj if k not in ALLOWED_KEYS]
    if extra:
        errors.append(OutputError(
            field="reply", message=f"Extra keys not allowed: {', '.join(extra)}",
            expected=f"only {', '.join(ALLOWED_KEYS)}", actual=f"also {', '.join(extra)}",
        ))

    if locale is not None and not locale.is_english:
        _check_locale(obj, locale, errors)

    if errors:
        logger.info("model reply rejected: %d error(s)", len(errors))
        return OutputCheck(is_valid=False, errors=errors, repair_hint=repair_hint(errors))

    reply = ModelReply(
        scn=obj["scn"],
        txt=obj["txt"],
        choices=[Choice(id=c["id"], label=c["label"]) for c in obj.get("choices") or []],
        acts=[Act(type=a["type"], data=a["data"]) for a in obj.get("acts") or []],
        val=obj.get("val"),
    )
    return OutputCheck(is_valid=True, reply=reply)


def check_inference(inference: Inference, locale: LocaleOptions | None = None) -> OutputCheck:
    """Extract the reply object from a model response and validate it."""
    obj = extract_reply(inference)
    if obj is None:
        errors = [OutputError(
            field="reply", message="reply must be a JSON object",
            expected="object", actual="no JSON object found",
        )]
        return OutputCheck(is_valid=False, errors=errors, repair_hint=repair_hint(errors))
    return validate_output(obj, locale)
