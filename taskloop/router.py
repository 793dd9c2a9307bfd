"""
TASKLOOP Router — Model Collaborator Abstraction

The controller only sees ``ModelProvider.generate(system_prompt, history,
metadata)``, a stream of typed chunks. ``LiteLLMProvider`` backs it with
LiteLLM so the loop never knows which vendor is behind it; tests plug in
scripted providers.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Protocol, Union

import litellm
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from taskloop.config_loader import ModelConfig
from taskloop.errors import (
    AuthError,
    ContextWindowError,
    ModelError,
    NetworkError,
    RateLimitError,
)
from taskloop.messages import Message


# ---------------------------------------------------------------------------
# Stream chunks
# ---------------------------------------------------------------------------

@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class UsageChunk:
    input_tokens: int = 0
    output_tokens: int = 0
    response_id: str | None = None


@dataclass
class ToolUseChunk:
    """A natively structured tool call, folded back into the tag grammar."""
    name: str
    args: dict[str, str] = field(default_factory=dict)

    def as_markup(self) -> str:
        inner = "".join(f"<{k}>{v}</{k}>" for k, v in self.args.items())
        return f"\n<{self.name}>{inner}</{self.name}>\n"


@dataclass
class ErrorChunk:
    message: str
    error: Exception | None = None


StreamChunk = Union[TextDelta, ReasoningDelta, UsageChunk, ToolUseChunk, ErrorChunk]


class ModelProvider(Protocol):
    def generate(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        metadata: dict[str, Any],
    ) -> Iterable[StreamChunk]: ...


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageTracker:
    """Token accounting for one task."""
    input_tokens: int = 0
    output_tokens: int = 0
    request_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def record(self, chunk: UsageChunk) -> None:
        self.input_tokens += chunk.input_tokens
        self.output_tokens += chunk.output_tokens

    def summary(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "request_count": self.request_count,
        }


# ---------------------------------------------------------------------------
# Stream processing
# ---------------------------------------------------------------------------

@dataclass
class StreamOutcome:
    text: str = ""
    reasoning: str = ""
    response_id: str | None = None


class StreamProcessor:
    """
    Folds a chunk stream into one assistant reply.

    ``on_text`` receives the accumulated text after every text delta so the
    caller can patch a streaming message in place.
    """

    def __init__(self, usage: UsageTracker | None = None):
        self.usage = usage or UsageTracker()

    def consume(
        self,
        stream: Iterable[StreamChunk],
        on_text: Callable[[str], None] | None = None,
        on_reasoning: Callable[[str], None] | None = None,
    ) -> StreamOutcome:
        outcome = StreamOutcome()
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        self.usage.request_count += 1

        for chunk in stream:
            if isinstance(chunk, TextDelta):
                text_parts.append(chunk.text)
                if on_text:
                    on_text("".join(text_parts))
            elif isinstance(chunk, ToolUseChunk):
                text_parts.append(chunk.as_markup())
                if on_text:
                    on_text("".join(text_parts))
            elif isinstance(chunk, ReasoningDelta):
                reasoning_parts.append(chunk.text)
                if on_reasoning:
                    on_reasoning("".join(reasoning_parts))
            elif isinstance(chunk, UsageChunk):
                self.usage.record(chunk)
                if chunk.response_id:
                    outcome.response_id = chunk.response_id
            elif isinstance(chunk, ErrorChunk):
                if chunk.error is not None:
                    raise chunk.error
                raise ModelError(chunk.message)

        outcome.text = "".join(text_parts)
        outcome.reasoning = "".join(reasoning_parts)
        return outcome


# ---------------------------------------------------------------------------
# LiteLLM backend
# ---------------------------------------------------------------------------

_RETRY_AFTER = re.compile(r"retry[- ]after[:\s]+(\d+(?:\.\d+)?)", re.IGNORECASE)


def map_litellm_error(e: Exception) -> Exception:
    """Translate a LiteLLM exception into the ModelError family."""
    if isinstance(e, ModelError):
        return e
    message = str(e)
    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextWindowError(message)
    if isinstance(e, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return AuthError(message)
    if isinstance(e, litellm.RateLimitError):
        match = _RETRY_AFTER.search(message)
        return RateLimitError(message, retry_after=float(match.group(1)) if match else None)
    if isinstance(e, (
        litellm.APIConnectionError,
        litellm.Timeout,
        litellm.ServiceUnavailableError,
        litellm.InternalServerError,
    )):
        return NetworkError(message)
    return e


def _is_gpt5_model(model: str) -> bool:
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def to_chat_messages(system_prompt: str, history: list[dict[str, str]]) -> list[dict[str, str]]:
    """Provider-neutral chat payload; tool results travel as user turns."""
    messages = [{"role": "system", "content": system_prompt}]
    for entry in history:
        role = entry["role"]
        content = entry["content"]
        if role == "tool":
            messages.append({"role": "user", "content": f"[tool result]\n{content}"})
        elif role == "system":
            messages.append({"role": "user", "content": f"[system]\n{content}"})
        else:
            messages.append({"role": role, "content": content})
    return messages


class LiteLLMProvider:
    def __init__(self, config: ModelConfig):
        self.config = config
        litellm.suppress_debug_info = True

    def _build_kwargs(self, messages: list[dict[str, str]], metadata: dict[str, Any]) -> dict[str, Any]:
        model = self.config.name
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.config.max_output_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        # GPT-5 and o-series models don't support arbitrary temperature
        if not _is_gpt5_model(model) and not _is_o_series_model(model):
            kwargs["temperature"] = self.config.temperature
        if metadata:
            kwargs["metadata"] = dict(metadata)
        return kwargs

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type((NetworkError, RateLimitError)),
        reraise=True,
    )
    def _open_stream(self, kwargs: dict[str, Any]) -> Any:
        try:
            return litellm.completion(**kwargs)
        except Exception as e:
            mapped = map_litellm_error(e)
            if mapped is e:
                raise
            raise mapped from e

    def generate(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        metadata: dict[str, Any],
    ) -> Iterator[StreamChunk]:
        messages = to_chat_messages(system_prompt, history)
        kwargs = self._build_kwargs(messages, metadata)

        start = time.monotonic()
        logger.debug(f"[ROUTER] → {self.config.name} ({len(messages)} messages)")
        response = self._open_stream(kwargs)

        try:
            for chunk in response:
                choices = getattr(chunk, "choices", None) or []
                if choices:
                    delta = choices[0].delta
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning:
                        yield ReasoningDelta(reasoning)
                    if getattr(delta, "content", None):
                        yield TextDelta(delta.content)
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield UsageChunk(
                        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                        response_id=getattr(chunk, "id", None),
                    )
        except Exception as e:
            mapped = map_litellm_error(e)
            if mapped is e:
                raise
            raise mapped from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug(f"[ROUTER] {self.config.name} complete — {elapsed_ms}ms")


def history_payload(messages: Iterable[Message]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in messages]
