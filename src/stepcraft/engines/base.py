from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..core.Exceptions import ModelError, ModelErrorKind

logger = logging.getLogger(__name__)

_VALID_ROLES = {"system", "user", "assistant"}


# ───────────────────────────────────────────────────────────────────────────────
# Engine records
# ───────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> Optional["TokenUsage"]:
        if d is None:
            return None
        return cls(int(d.get("input_tokens", 0)), int(d.get("output_tokens", 0)))


@dataclass(frozen=True)
class ModelOutput:
    """One complete model response.

    ``tool_calls`` holds native provider tool calls as ``{"name", "arguments"}``
    mappings; ``arguments`` may still be a JSON-encoded string.
    """

    text: str = ""
    tool_calls: tuple = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ModelDelta:
    """One streamed fragment. Tool-call fragments carry an ``index`` used for merging."""

    text: str = ""
    tool_call_fragments: tuple = ()
    usage: Optional[TokenUsage] = None


def collect_stream(deltas: Iterable[ModelDelta]) -> ModelOutput:
    """
    Reassemble streamed deltas into one :class:`ModelOutput`.

    Text is concatenated in order, tool-call fragments are merged by index
    (names are taken from the first fragment that carries one, argument text
    is concatenated) and the last reported usage wins.
    """
    text_parts: List[str] = []
    calls: Dict[int, Dict[str, Any]] = {}
    usage: Optional[TokenUsage] = None

    for delta in deltas:
        if delta.text:
            text_parts.append(delta.text)
        for frag in delta.tool_call_fragments:
            index = int(frag.get("index", 0))
            slot = calls.setdefault(index, {"name": None, "arguments": ""})
            if frag.get("name") and not slot["name"]:
                slot["name"] = frag["name"]
            args = frag.get("arguments")
            if isinstance(args, str):
                slot["arguments"] += args
            elif args is not None:
                slot["arguments"] = args
        if delta.usage is not None:
            usage = delta.usage

    tool_calls = tuple(
        {"name": c["name"], "arguments": c["arguments"]}
        for _, c in sorted(calls.items())
        if c["name"]
    )
    return ModelOutput(
        text="".join(text_parts),
        tool_calls=tool_calls,
        usage=usage or TokenUsage(),
    )


# ───────────────────────────────────────────────────────────────────────────────
# LLM Engine primitive
# ───────────────────────────────────────────────────────────────────────────────
class LLMEngine(ABC):
    """
    Base template-method primitive for model provider adapters.

    Engines are stateless with respect to conversation history: the agent owns
    memory and renders it into messages on every step.

    Public contract
    ---------------
    - `generate(messages, tools=None, stop_sequences=None) -> ModelOutput`
    - `stream(messages, tools=None, stop_sequences=None) -> Iterator[ModelDelta]`

    Failures are classified into :class:`ModelErrorKind`. Rate-limit and
    transport failures are retried with exponential backoff and jitter; an
    invalid response is never retried. Exhaustion raises :class:`ModelError`.
    """

    #: Subclasses that implement `_extract_delta` set this to True.
    supports_streaming: bool = False

    def __init__(
        self,
        *,
        name: Optional[str] = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_backoff_base: float = 0.5,
        retry_backoff_max: float = 8.0,
    ) -> None:
        """
        Parameters
        ----------
        name:
            Optional human-friendly identifier for logging/introspection.
        timeout_seconds:
            Suggested per-call timeout; subclasses should honor this where
            their provider SDKs allow it.
        max_retries:
            Maximum number of *retries* after the initial call (so total
            attempts is `max_retries + 1`).
        retry_backoff_base:
            Base seconds for exponential backoff (approx base * 2^(attempt-1)).
        retry_backoff_max:
            Upper bound in seconds for backoff delay.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._name = name or type(self).__name__
        self._timeout_seconds = float(timeout_seconds)
        self._max_retries = int(max_retries)
        self._retry_backoff_base = float(retry_backoff_base)
        self._retry_backoff_max = float(retry_backoff_max)

    # --------------------------------------------------------------------- #
    # Public surface
    # --------------------------------------------------------------------- #
    @property
    def name(self) -> str:
        """Human-friendly identifier for this engine instance."""
        return self._name

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def generate(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        stop_sequences: Optional[Sequence[str]] = None,
    ) -> ModelOutput:
        """
        Template method that defines the engine invocation lifecycle.

        Steps:
        1. Normalize and validate the input `messages`.
        2. Ask the subclass to build a provider-specific payload.
        3. Call the provider with retries.
        4. Extract a :class:`ModelOutput`.

        Subclasses **must not** override this method.
        """
        start = time.time()
        try:
            normalized = self._normalize_messages(messages)
            payload = self._build_provider_payload(normalized, tools, stop_sequences, False)
            response = self._call_with_retries(self._call_provider, payload)
            try:
                output = self._extract_output(response)
            except ModelError:
                raise
            except Exception as exc:
                raise ModelError(
                    f"{self._name}: could not read provider response: {exc}",
                    kind=ModelErrorKind.INVALID_RESPONSE,
                ) from exc
            if not isinstance(output, ModelOutput):
                raise ModelError(
                    f"{type(self).__name__}._extract_output must return ModelOutput; got {type(output)!r}",
                    kind=ModelErrorKind.INVALID_RESPONSE,
                )
            return output
        finally:
            logger.debug("LLMEngine %s.generate completed in %.3fs", self._name, time.time() - start)

    def stream(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        stop_sequences: Optional[Sequence[str]] = None,
    ) -> Iterator[ModelDelta]:
        """
        Yield ordered :class:`ModelDelta` fragments of one response.

        Only opening the stream is retried; a failure after the first fragment
        raises :class:`ModelError` immediately. Engines without streaming
        support yield the complete response as a single delta.
        """
        if not self.supports_streaming:
            output = self.generate(messages, tools, stop_sequences)
            fragments = tuple(
                {"index": i, "name": c["name"], "arguments": c["arguments"]}
                for i, c in enumerate(output.tool_calls)
            )
            yield ModelDelta(text=output.text, tool_call_fragments=fragments, usage=output.usage)
            return

        normalized = self._normalize_messages(messages)
        payload = self._build_provider_payload(normalized, tools, stop_sequences, True)
        chunks = self._call_with_retries(self._call_provider, payload)
        try:
            for chunk in chunks:
                delta = self._extract_delta(chunk)
                if delta is not None:
                    yield delta
        except ModelError:
            raise
        except Exception as exc:
            kind = self._classify_error(exc)
            raise ModelError(f"{self._name}: stream interrupted: {exc}", kind=kind) from exc

    # --------------------------------------------------------------------- #
    # Shared helpers used by the template
    # --------------------------------------------------------------------- #
    def _normalize_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """
        Validate and normalize a sequence of chat messages.

        - Ensures `messages` is a non-empty list of mappings.
        - Ensures each entry has string `role` and `content` keys.
        - Normalizes `role` to lowercase.
        """
        if not isinstance(messages, list):
            raise ModelError("LLMEngine: messages must be a list", kind=ModelErrorKind.INVALID_RESPONSE)
        if not messages:
            raise ModelError("LLMEngine: messages must not be empty", kind=ModelErrorKind.INVALID_RESPONSE)

        normalized: List[Dict[str, str]] = []
        for idx, msg in enumerate(messages):
            if not isinstance(msg, Mapping):
                raise ModelError(
                    f"LLMEngine: message {idx} is not a mapping (got {type(msg)!r})",
                    kind=ModelErrorKind.INVALID_RESPONSE,
                )
            role = msg.get("role")
            content = msg.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                raise ModelError(
                    "LLMEngine: each message must have 'role' and 'content' as strings",
                    kind=ModelErrorKind.INVALID_RESPONSE,
                )
            role = role.lower()
            if role not in _VALID_ROLES:
                raise ModelError(f"LLMEngine: unsupported role {role!r}", kind=ModelErrorKind.INVALID_RESPONSE)
            normalized.append({"role": role, "content": content})
        return normalized

    def _call_with_retries(self, call: Callable[[Any], Any], payload: Any) -> Any:
        """
        Run `call(payload)` with the retry/backoff policy.

        Subclasses customize behavior through `_classify_error` and
        `_should_retry`, or the backoff parameters in the constructor.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return call(payload)
            except ModelError:
                # Already normalized; do not re-wrap or retry.
                raise
            except Exception as exc:
                kind = self._classify_error(exc)
                if not self._should_retry(kind, attempt):
                    raise ModelError(
                        f"{self._name}: provider call failed after {attempt} attempt(s): "
                        f"{type(exc).__name__}: {exc}",
                        kind=kind,
                        attempts=attempt,
                    ) from exc
                sleep = min(
                    self._retry_backoff_base * (2 ** (attempt - 1)),
                    self._retry_backoff_max,
                )
                # Add a little jitter to avoid thundering herds.
                sleep *= random.uniform(0.8, 1.2)
                logger.debug(
                    "LLMEngine %s attempt %d failed with %s (%r); retrying in %.2fs",
                    self._name,
                    attempt,
                    kind.value,
                    exc,
                    sleep,
                )
                time.sleep(sleep)

    def _should_retry(self, kind: ModelErrorKind, attempt: int) -> bool:
        if attempt > self._max_retries:
            return False
        return kind in (ModelErrorKind.RATE_LIMITED, ModelErrorKind.TRANSPORT)

    def _classify_error(self, exc: Exception) -> ModelErrorKind:
        """
        Map a provider exception onto a :class:`ModelErrorKind`.

        The baseline recognizes timeout/connection-style errors as transport
        failures; everything else is an invalid response. Subclasses override
        this to recognize provider-specific error types.
        """
        if isinstance(exc, (TimeoutError, ConnectionError)):
            return ModelErrorKind.TRANSPORT
        return ModelErrorKind.INVALID_RESPONSE

    # --------------------------------------------------------------------- #
    # Abstract hooks for subclasses
    # --------------------------------------------------------------------- #
    @abstractmethod
    def _build_provider_payload(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[Sequence[Mapping[str, Any]]],
        stop_sequences: Optional[Sequence[str]],
        stream: bool,
    ) -> Any:
        """Convert normalized messages into the provider-specific request payload."""
        raise NotImplementedError

    @abstractmethod
    def _call_provider(self, payload: Any) -> Any:
        """Perform a single call to the underlying provider using the given payload."""
        raise NotImplementedError

    @abstractmethod
    def _extract_output(self, response: Any) -> ModelOutput:
        """Build a :class:`ModelOutput` from a provider response object."""
        raise NotImplementedError

    def _extract_delta(self, chunk: Any) -> Optional[ModelDelta]:
        """Build a :class:`ModelDelta` from one streamed chunk (streaming engines only)."""
        raise NotImplementedError

    # --------------------------------------------------------------------- #
    # Introspection
    # --------------------------------------------------------------------- #
    def to_dict(self) -> Dict[str, Any]:
        """Shallow, non-secret configuration snapshot for debugging / logging."""
        return {
            "name": self._name,
            "timeout_seconds": self._timeout_seconds,
            "max_retries": self._max_retries,
            "provider": type(self).__name__,
            "supports_streaming": self.supports_streaming,
        }


__all__ = ["LLMEngine", "ModelOutput", "ModelDelta", "TokenUsage", "collect_stream"]
