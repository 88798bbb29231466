from typing import Any, Dict, List, Optional

import pytest

from stepcraft.engines.base import LLMEngine, ModelDelta, ModelOutput, TokenUsage


class FakeEngine(LLMEngine):
    """Scripted engine: each provider call pops the next response.

    A response may be a string, a ModelOutput or an exception instance (raised
    from the provider call). When the script runs out, ``default`` is returned.
    """

    def __init__(self, responses=(), *, default: Any = None, usage: Optional[TokenUsage] = None, **kwargs):
        kwargs.setdefault("retry_backoff_base", 0.0)
        kwargs.setdefault("retry_backoff_max", 0.0)
        super().__init__(**kwargs)
        self.responses: List[Any] = list(responses)
        self.default = default
        self.usage = usage or TokenUsage(0, 0)
        self.calls: List[Dict[str, Any]] = []

    def _build_provider_payload(self, messages, tools, stop_sequences, stream):
        return {
            "messages": messages,
            "tools": list(tools) if tools else None,
            "stop": list(stop_sequences) if stop_sequences else None,
        }

    def _call_provider(self, payload):
        self.calls.append(payload)
        if self.responses:
            item = self.responses.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("FakeEngine script exhausted")
        if isinstance(item, BaseException):
            raise item
        return item

    def _extract_output(self, response):
        if isinstance(response, ModelOutput):
            return response
        return ModelOutput(text=str(response), usage=self.usage)


class StreamingFakeEngine(FakeEngine):
    """Streams every scripted text response in small chunks."""

    supports_streaming = True

    def __init__(self, responses=(), *, chunk_size: int = 4, **kwargs):
        super().__init__(responses, **kwargs)
        self.chunk_size = chunk_size

    def _call_provider(self, payload):
        item = super()._call_provider(payload)
        text = item.text if isinstance(item, ModelOutput) else str(item)
        chunks = [text[i:i + self.chunk_size] for i in range(0, len(text), self.chunk_size)]
        return iter([*chunks, self.usage])

    def _extract_delta(self, chunk):
        if isinstance(chunk, TokenUsage):
            return ModelDelta(usage=chunk)
        return ModelDelta(text=chunk)


def code(source: str, thought: str = "I will run some code.") -> str:
    return f"Thought: {thought}\nCode:\n```py\n{source}\n```<end_code>"


def action(name: str, arguments: Dict[str, Any], thought: str = "I will call a tool.") -> str:
    import json

    return f"Thought: {thought}\nAction:\n" + json.dumps({"name": name, "arguments": arguments})


@pytest.fixture
def fake_engine():
    def make(responses=(), **kwargs):
        return FakeEngine(responses, **kwargs)

    return make
