"""Language-model gateway: one completion per call, with one retry on
transient failures.

The Anthropic SDK's own retries are disabled so that the retry budget is
exactly one, and every request carries a hard timeout.  Failures surface
as ``TransientUpstreamError`` (timeouts, connection errors, 5xx after the
retry) or ``UpstreamError`` (everything else, including empty output).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage, SystemMessage

from patient_assistant.config import (
    ANTHROPIC_API_KEY,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    MODEL_NAME,
    USE_NATIVE_TOOLS,
)
from patient_assistant.errors import TransientUpstreamError, UpstreamError
from patient_assistant.services.metrics import metrics
from patient_assistant.tools.catalog import CATALOG, ActionCatalog

logger = logging.getLogger(__name__)

ATTEMPTS = 2


@dataclass(frozen=True)
class Completion:
    text: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)


def is_transient(exc: Exception) -> bool:
    """Timeouts, connection failures and 5xx responses are worth one more try."""
    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(exc, anthropic.APIConnectionError):
        return True
    return isinstance(exc, anthropic.APIStatusError) and exc.status_code >= 500


def _build_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=LLM_TEMPERATURE,
        max_tokens=LLM_MAX_TOKENS,
        timeout=LLM_TIMEOUT_SECONDS,
        max_retries=0,
    )


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class LLMGateway:
    """Invoke the chat model with a system prompt and a message window."""

    def __init__(
        self,
        llm: Any = None,
        *,
        catalog: ActionCatalog = CATALOG,
        native_tools: bool = USE_NATIVE_TOOLS,
    ):
        llm = llm if llm is not None else _build_llm()
        if native_tools:
            llm = llm.bind_tools(catalog.tool_schemas())
        self._llm = llm

    def invoke(self, system_prompt: str, messages: list[BaseMessage]) -> Completion:
        payload = [SystemMessage(content=system_prompt), *messages]
        last_error: Exception | None = None

        for attempt in range(1, ATTEMPTS + 1):
            t0 = time.perf_counter()
            try:
                response = self._llm.invoke(payload)
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke", error_type=type(exc).__name__, latency_ms=elapsed,
                )
                if not is_transient(exc):
                    logger.error("LLM request failed: %s", exc)
                    raise UpstreamError(f"Language model request failed: {exc}") from exc
                last_error = exc
                logger.warning(
                    "LLM attempt %d/%d failed (%s) after %.0fms",
                    attempt, ATTEMPTS, type(exc).__name__, elapsed,
                )
                continue

            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
            logger.debug("LLM responded in %.0fms", elapsed)
            return self._to_completion(response)

        raise TransientUpstreamError(
            f"Language model unavailable after {ATTEMPTS} attempts: {last_error}"
        ) from last_error

    def _to_completion(self, response: Any) -> Completion:
        text = _text_of(getattr(response, "content", response)).strip()
        tool_calls = [
            {"name": call["name"], "args": call.get("args") or {}}
            for call in getattr(response, "tool_calls", None) or []
        ]
        if not text and not tool_calls:
            raise UpstreamError("Language model returned an empty completion")
        return Completion(text=text, tool_calls=tool_calls)
