"""Model transport — HTTP connection to a completion backend.

The orchestrator talks to the model through a callable matching:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` names the orchestrator step that is calling ("turn", "turn_retry").
Implementations may use it for logging or routing.

`infer()` wraps any such callable and returns an `Inference`: the raw text plus
the JSON object parsed from it, or None when the reply holds no JSON object.

Implementations:

    HttpLLM   — real HTTP client for KoboldCpp, OpenAI-compatible completion
                and OpenAI-compatible chat backends.
    EchoLLM   — returns the prompt back unchanged, for wiring smoke tests.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


class Inference(BaseModel):
    raw: str
    json_obj: dict[str, Any] | None = None


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object found in `text`, or None.

    Tries the whole text, then fenced ```json blocks, then the first balanced
    {...} span. Arrays and scalars are not objects and yield None.
    """
    candidates = [text.strip()]
    candidates.extend(m.group(1).strip() for m in _FENCE_RE.finditer(text))
    span = _first_brace_span(text)
    if span:
        candidates.append(span)

    for candidate in candidates:
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _first_brace_span(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


async def infer(llm: LLM, stage: str, prompt: str) -> Inference:
    """Call the model and parse its reply. Transport errors propagate."""
    raw = await llm(stage, prompt)
    return Inference(raw=raw, json_obj=parse_json_object(raw))


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai", "openai-chat"]


class HttpLLM:
    """Async HTTP client for completion backends.

    Supported formats:
      "koboldcpp"    — POST /api/v1/generate       {"prompt": ...}
                       Response: {"results": [{"text": "..."}]}
      "openai"       — POST /v1/completions        {"model": ..., "prompt": ...}
                       Response: {"choices": [{"text": "..."}]}
      "openai-chat"  — POST /v1/chat/completions   {"model": ..., "messages": [...]}
                       Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used by the openai formats.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        max_tokens:      Completion length cap, omitted when 0.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        max_tokens: int = 0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai-chat":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {
                "messages": [{"role": "user", "content": prompt}],
                "response_format": {"type": "json_object"},
            }
        elif self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body = {"prompt": prompt}
        else:
            url = f"{self._base_url}/api/v1/generate"
            body = {"prompt": prompt}

        if self._model and self._format != "koboldcpp":
            body["model"] = self._model
        if self._max_tokens:
            key = "max_length" if self._format == "koboldcpp" else "max_tokens"
            body[key] = self._max_tokens
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai-chat":
            choices = data.get("choices")
            message = choices[0].get("message") if choices else None
            if not message or "content" not in message:
                raise LLMError("Unexpected response format from OpenAI-compatible chat backend")
            return message["content"] or ""

        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM transport error: {type(e).__name__}: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LLMError("Unexpected response format from LLM backend")

        try:
            text = self._parse_response(data)
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise LLMError(f"Unexpected response format from LLM backend: {e}") from e
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM — returns the prompt unchanged; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    The echoed prompt is not a valid reply, so a turn run against EchoLLM ends
    in validation_failed_after_retry. That is enough to check that assembly,
    budgeting and the retry path are wired.
    """

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


# ---------------------------------------------------------------------------
# LLMError — raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
