from types import SimpleNamespace

import httpx
import openai
import pytest

from stepcraft.core.Exceptions import ModelError, ModelErrorKind
from stepcraft.engines import OpenAIEngine
from stepcraft.engines.base import TokenUsage

REQUEST = httpx.Request("POST", "https://llm.example.test/v1/chat/completions")
MESSAGES = [{"role": "system", "content": "Be brief."}, {"role": "User", "content": "hi"}]


def status_error(cls, status):
    return cls(f"status {status}", response=httpx.Response(status, request=REQUEST), body=None)


def completion(text="hello", tool_calls=None, usage=(3, 2)):
    message = SimpleNamespace(content=text, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1]),
    )


class FakeCompletions:
    def __init__(self, script):
        self.script = list(script)
        self.payloads = []

    def create(self, **payload):
        self.payloads.append(payload)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def make_engine(script, **kwargs):
    completions = FakeCompletions(script)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    kwargs.setdefault("retry_backoff_base", 0.0)
    return OpenAIEngine("test-model", client=client, **kwargs), completions


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------

def test_generate_builds_payload_and_reads_usage():
    engine, completions = make_engine([completion("4")])
    output = engine.generate(MESSAGES, stop_sequences=["Observation:"])

    assert output.text == "4"
    assert output.usage == TokenUsage(3, 2)
    payload = completions.payloads[0]
    assert payload["model"] == "test-model"
    assert payload["stop"] == ["Observation:"]
    assert payload["messages"][1] == {"role": "user", "content": "hi"}
    assert "tools" not in payload and "stream" not in payload


def test_native_tool_calls_are_extracted():
    call = SimpleNamespace(function=SimpleNamespace(name="get_time", arguments='{"city": "Rome"}'))
    engine, completions = make_engine([completion(None, tool_calls=[call])])
    schema = {"type": "function", "function": {"name": "get_time", "parameters": {}}}

    output = engine.generate(MESSAGES, tools=[schema])

    assert output.text == ""
    assert output.tool_calls == ({"name": "get_time", "arguments": '{"city": "Rome"}'},)
    assert completions.payloads[0]["tools"] == [schema]
    assert completions.payloads[0]["tool_choice"] == "auto"


def test_response_without_choices_is_invalid():
    engine, _ = make_engine([SimpleNamespace(choices=[], usage=None)])
    with pytest.raises(ModelError) as info:
        engine.generate(MESSAGES)
    assert info.value.kind is ModelErrorKind.INVALID_RESPONSE


def test_unsupported_role_is_rejected_before_calling():
    engine, completions = make_engine([])
    with pytest.raises(ModelError, match="unsupported role"):
        engine.generate([{"role": "tool", "content": "x"}])
    assert completions.payloads == []


# ---------------------------------------------------------------------------
# Error classification and retries
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "exc, kind",
    [
        (status_error(openai.RateLimitError, 429), ModelErrorKind.RATE_LIMITED),
        (openai.APIConnectionError(request=REQUEST), ModelErrorKind.TRANSPORT),
        (status_error(openai.InternalServerError, 503), ModelErrorKind.TRANSPORT),
        (status_error(openai.BadRequestError, 400), ModelErrorKind.INVALID_RESPONSE),
        (TimeoutError("slow"), ModelErrorKind.TRANSPORT),
        (KeyError("x"), ModelErrorKind.INVALID_RESPONSE),
    ],
)
def test_error_classification(exc, kind):
    engine, _ = make_engine([])
    assert engine._classify_error(exc) is kind


def test_rate_limit_is_retried_until_success():
    engine, completions = make_engine(
        [status_error(openai.RateLimitError, 429), status_error(openai.RateLimitError, 429), completion("ok")],
        max_retries=2,
    )
    assert engine.generate(MESSAGES).text == "ok"
    assert len(completions.payloads) == 3


def test_retries_are_bounded():
    engine, completions = make_engine([openai.APIConnectionError(request=REQUEST)] * 3, max_retries=1)
    with pytest.raises(ModelError) as info:
        engine.generate(MESSAGES)
    assert info.value.kind is ModelErrorKind.TRANSPORT
    assert info.value.attempts == 2
    assert len(completions.payloads) == 2


def test_bad_request_is_not_retried():
    engine, completions = make_engine([status_error(openai.BadRequestError, 400)], max_retries=5)
    with pytest.raises(ModelError) as info:
        engine.generate(MESSAGES)
    assert info.value.kind is ModelErrorKind.INVALID_RESPONSE
    assert len(completions.payloads) == 1


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def chunk(content=None, tool_calls=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def test_stream_yields_text_and_final_usage():
    usage_chunk = SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=9, completion_tokens=4))
    engine, completions = make_engine([iter([chunk("Hel"), chunk("lo"), usage_chunk])])

    deltas = list(engine.stream(MESSAGES))

    assert [d.text for d in deltas] == ["Hel", "lo", ""]
    assert deltas[-1].usage == TokenUsage(9, 4)
    assert completions.payloads[0]["stream"] is True
    assert completions.payloads[0]["stream_options"] == {"include_usage": True}


def test_stream_tool_call_fragments():
    fragment = SimpleNamespace(index=0, function=SimpleNamespace(name="get_time", arguments='{"city"'))
    rest = SimpleNamespace(index=0, function=SimpleNamespace(name=None, arguments=': "Rome"}'))
    engine, _ = make_engine([iter([chunk(tool_calls=[fragment]), chunk(tool_calls=[rest])])])

    deltas = list(engine.stream(MESSAGES))

    assert deltas[0].tool_call_fragments == ({"index": 0, "name": "get_time", "arguments": '{"city"'},)
    assert deltas[1].tool_call_fragments[0]["arguments"] == ': "Rome"}'


def test_stream_interrupted_mid_way_is_model_error():
    def broken():
        yield chunk("partial")
        raise openai.APIConnectionError(request=REQUEST)

    engine, _ = make_engine([broken()])
    stream = engine.stream(MESSAGES)
    assert next(stream).text == "partial"
    with pytest.raises(ModelError, match="stream interrupted") as info:
        next(stream)
    assert info.value.kind is ModelErrorKind.TRANSPORT


def test_to_dict_has_no_secrets():
    engine = OpenAIEngine("test-model", api_key="sk-secret", base_url="http://localhost:11434/v1")
    snapshot = engine.to_dict()
    assert snapshot["model"] == "test-model"
    assert snapshot["base_url"] == "http://localhost:11434/v1"
    assert "sk-secret" not in repr(snapshot)
