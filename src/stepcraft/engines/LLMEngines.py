from __future__ import annotations

# LLMEngines.py
# Engines are stateless adapters around provider SDKs.
# The agent owns conversation history; engines map messages (+ tool schemas)
# to provider-specific requests.

import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

import openai
from openai import OpenAI

from ..core.Exceptions import ModelError, ModelErrorKind
from .base import LLMEngine, ModelDelta, ModelOutput, TokenUsage

logger = logging.getLogger(__name__)

__all__ = ["OpenAIEngine"]


# ───────────────────────────────────────────────────────────────────────────────
# OpenAI-compatible chat completions
# ───────────────────────────────────────────────────────────────────────────────
class OpenAIEngine(LLMEngine):
    """
    Adapter for OpenAI-compatible chat-completions endpoints.

    Works against api.openai.com and any compatible server reachable through
    ``base_url`` (Ollama, vLLM, OpenRouter, LM Studio, ...). Native function
    calling is used when tool schemas are passed; streaming requests ask for a
    final usage chunk.
    """

    supports_streaming = True

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.1,
        *,
        name: Optional[str] = None,
        timeout_seconds: float = 600.0,
        max_retries: int = 2,
        retry_backoff_base: float = 0.5,
        retry_backoff_max: float = 8.0,
        client: Optional[Any] = None,
    ) -> None:
        """
        Parameters
        ----------
        model:
            Model identifier (e.g. "gpt-4o-mini", "qwen2.5:7b").
        api_key:
            Optional API key; if omitted, `OPENAI_API_KEY` from the environment is used.
        base_url:
            Optional OpenAI-compatible endpoint; if omitted, `OPENAI_BASE_URL` or the SDK default.
        temperature:
            Sampling temperature.
        client:
            Pre-built client object exposing `chat.completions.create` (used in tests).
        name, timeout_seconds, max_retries, retry_backoff_base, retry_backoff_max:
            Template-method engine configuration (see `engines.base.LLMEngine`).
        """
        super().__init__(
            name=name or f"openai:{model}",
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_backoff_base=retry_backoff_base,
            retry_backoff_max=retry_backoff_max,
        )
        self.model = model
        self.temperature = float(temperature)
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL") or None

        # Retries are owned by the template; the SDK's own retry loop is disabled.
        self.llm = client if client is not None else OpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=self.base_url,
            timeout=self._timeout_seconds,
            max_retries=0,
        )

    # ------------------------------------------------------------------ #
    # Template hooks
    # ------------------------------------------------------------------ #
    def _build_provider_payload(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[Sequence[Mapping[str, Any]]],
        stop_sequences: Optional[Sequence[str]],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = [dict(t) for t in tools]
            payload["tool_choice"] = "auto"
        if stop_sequences:
            payload["stop"] = list(stop_sequences)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _call_provider(self, payload: Dict[str, Any]) -> Any:
        return self.llm.chat.completions.create(**payload)

    def _extract_output(self, response: Any) -> ModelOutput:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ModelError(f"{self.name}: response has no choices", kind=ModelErrorKind.INVALID_RESPONSE)
        message = choices[0].message

        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            if fn is None or not getattr(fn, "name", None):
                continue
            tool_calls.append({"name": fn.name, "arguments": fn.arguments or "{}"})

        return ModelOutput(
            text=message.content or "",
            tool_calls=tuple(tool_calls),
            usage=self._read_usage(getattr(response, "usage", None)),
            raw=response,
        )

    def _extract_delta(self, chunk: Any) -> Optional[ModelDelta]:
        usage = getattr(chunk, "usage", None)
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            # Final usage-only chunk (stream_options.include_usage)
            return ModelDelta(usage=self._read_usage(usage)) if usage is not None else None

        delta = choices[0].delta
        fragments = []
        for tc in getattr(delta, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            fragments.append({
                "index": tc.index,
                "name": getattr(fn, "name", None),
                "arguments": getattr(fn, "arguments", None) or "",
            })
        return ModelDelta(
            text=getattr(delta, "content", None) or "",
            tool_call_fragments=tuple(fragments),
            usage=self._read_usage(usage) if usage is not None else None,
        )

    def _classify_error(self, exc: Exception) -> ModelErrorKind:
        if isinstance(exc, openai.RateLimitError):
            return ModelErrorKind.RATE_LIMITED
        # APITimeoutError is a subclass of APIConnectionError
        if isinstance(exc, openai.APIConnectionError):
            return ModelErrorKind.TRANSPORT
        if isinstance(exc, openai.APIStatusError):
            status = getattr(exc, "status_code", 0) or 0
            if status == 429:
                return ModelErrorKind.RATE_LIMITED
            if status >= 500:
                return ModelErrorKind.TRANSPORT
            return ModelErrorKind.INVALID_RESPONSE
        return super()._classify_error(exc)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _read_usage(usage: Any) -> TokenUsage:
        if usage is None:
            return TokenUsage()
        return TokenUsage(
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({
            "model": self.model,
            "temperature": self.temperature,
            "base_url": self.base_url,
        })
        return d
