import os
import time

import pytest

from conftest import FakeEngine, action, code
from stepcraft.agents import (
    ActionStep,
    BudgetExhausted,
    CancellationToken,
    CodeAgent,
    Failed,
    FinalAnswerStep,
    Finished,
    PlanningStep,
    SystemPromptStep,
    TaskStep,
    ToolCallingAgent,
)
from stepcraft.core.Exceptions import ConfigError, ErrorKind, ModelErrorKind
from stepcraft.engines.base import ModelOutput, TokenUsage
from stepcraft.tools import Tool


def get_time(city: str) -> str:
    """Current local time in a city."""
    return f"12:00 in {city}"


def make_tool_agent(engine, **kwargs):
    kwargs.setdefault("tools", [get_time])
    return ToolCallingAgent(name="assistant", description="General helper.", llm_engine=engine, **kwargs)


def make_code_agent(engine, **kwargs):
    return CodeAgent(name="coder", description="Solves tasks with code.", llm_engine=engine, **kwargs)


def assert_single_terminal_marker(agent, outcome):
    steps = agent.memory.steps
    finals = [s for s in steps if isinstance(s, FinalAnswerStep)]
    if isinstance(outcome, Finished):
        assert len(finals) == 1 and steps[-1] is finals[0]
        assert finals[0].value == outcome.value
    else:
        assert finals == []
    assert agent.memory.closed


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_code_agent_computes_then_finishes():
    engine = FakeEngine([code("2+2"), code("final_answer(4)")])
    agent = make_code_agent(engine)

    outcome = agent.run("what is 2+2")

    assert outcome == Finished(4)
    first, second = agent.memory.action_steps
    assert first.output == 4
    assert first.error is None
    assert "Last output from code snippet:\n4" in first.observation
    assert second.is_final_answer
    assert_single_terminal_marker(agent, outcome)


def test_unknown_tool_is_recorded_and_run_continues():
    engine = FakeEngine([
        action("get_weather", {"city": "Paris"}),
        action("final_answer", {"answer": "I cannot check the weather."}),
    ])
    agent = make_tool_agent(engine, tools=[])

    outcome = agent.run("What is the weather in Paris?")

    assert outcome == Finished("I cannot check the weather.")
    failed = agent.memory.action_steps[0]
    assert failed.error.kind is ErrorKind.VALIDATION
    assert "unknown tool 'get_weather'" in failed.error.message
    # The error is shown to the model on the next turn.
    second_prompt = engine.calls[1]["messages"]
    assert second_prompt[-1]["content"].startswith("Error (ValidationError):")


def test_unknown_tool_forever_exhausts_budget():
    engine = FakeEngine(default=action("get_weather", {"city": "Paris"}))
    agent = make_tool_agent(engine, tools=[], max_steps=2)

    outcome = agent.run("What is the weather in Paris?")

    assert isinstance(outcome, BudgetExhausted)
    assert [s.error.kind for s in agent.memory.action_steps] == [ErrorKind.VALIDATION] * 2


def test_unauthorised_import_is_security_violation(monkeypatch):
    listed = []
    monkeypatch.setattr(os, "listdir", lambda *a, **k: listed.append(a) or [])
    engine = FakeEngine([code("import os\nos.listdir('.')"), code("final_answer('done')")])
    agent = make_code_agent(engine)

    outcome = agent.run("list the files")

    assert outcome == Finished("done")
    blocked = agent.memory.action_steps[0]
    assert blocked.error.kind is ErrorKind.SECURITY
    assert "Import of os is not allowed" in blocked.error.message
    assert listed == []
    assert len(agent.memory.action_steps) == 2


def test_budget_exhausted_after_exactly_max_steps():
    engine = FakeEngine(default=code("x = 1"))
    agent = make_code_agent(engine, max_steps=3)

    outcome = agent.run("loop forever")

    assert isinstance(outcome, BudgetExhausted)
    assert "max steps reached (3)" in outcome.reason
    assert len(agent.memory.action_steps) == 3
    assert len(engine.calls) == 3
    assert_single_terminal_marker(agent, outcome)


def test_managed_agent_budget_exhaustion_is_a_tool_error():
    sub_engine = FakeEngine(default=action("get_time", {"city": "Oslo"}))
    researcher = ToolCallingAgent(
        name="researcher",
        description="Looks things up.",
        llm_engine=sub_engine,
        tools=[get_time],
        max_steps=1,
    )
    engine = FakeEngine([
        action("researcher", {"task": "find the time in Oslo"}),
        action("final_answer", {"answer": "researcher gave up"}),
    ])
    parent = make_tool_agent(engine, tools=[], managed_agents=[researcher])

    outcome = parent.run("What time is it in Oslo?")

    assert outcome == Finished("researcher gave up")
    delegated = parent.memory.action_steps[0]
    assert delegated.error.kind is ErrorKind.TOOL
    assert "exhausted its budget" in delegated.error.message
    assert isinstance(researcher.memory.steps[-1], ActionStep)


def test_managed_agent_result_returned_to_code_agent():
    sub_engine = FakeEngine([action("final_answer", {"answer": "12:00"})])
    clock = ToolCallingAgent(name="clock", description="Tells the time.", llm_engine=sub_engine, tools=[])
    engine = FakeEngine([code("t = clock('time in Oslo?')\nfinal_answer(t)")])
    parent = make_code_agent(engine, managed_agents=[clock])

    assert parent.run("time?") == Finished("12:00")
    assert "clock(task: string) -> any" in parent.system_prompt


# ---------------------------------------------------------------------------
# Tool-calling details
# ---------------------------------------------------------------------------

def test_tool_result_becomes_observation():
    engine = FakeEngine([action("get_time", {"city": "Rome"}), action("final_answer", {"answer": "noon"})])
    agent = make_tool_agent(engine)

    assert agent.run("time in Rome?") == Finished("noon")
    step = agent.memory.action_steps[0]
    assert step.output == "12:00 in Rome"
    assert step.observation == "12:00 in Rome"
    assert engine.calls[1]["messages"][-1] == {"role": "user", "content": "Observation:\n12:00 in Rome"}


def test_bad_arguments_are_validation_errors():
    engine = FakeEngine([action("get_time", {"town": "Rome"}), action("final_answer", {"answer": "x"})])
    agent = make_tool_agent(engine)

    agent.run("time?")
    assert agent.memory.action_steps[0].error.kind is ErrorKind.VALIDATION


def test_unparseable_response_is_parse_error():
    engine = FakeEngine(["The answer is 4.", action("final_answer", {"answer": 4})])
    agent = make_tool_agent(engine)

    assert agent.run("2+2?") == Finished(4)
    step = agent.memory.action_steps[0]
    assert step.error.kind is ErrorKind.PARSE
    assert step.action is None
    assert step.model_output == "The answer is 4."


def test_bare_final_answer_argument_is_accepted():
    engine = FakeEngine(['Action: {"name": "final_answer", "arguments": 4}'])
    assert make_tool_agent(engine).run("2+2?") == Finished(4)


def test_native_tool_calls():
    engine = FakeEngine([
        ModelOutput(tool_calls=({"name": "final_answer", "arguments": '{"answer": "ok"}'},)),
    ])
    agent = make_tool_agent(engine, native_tool_calls=True)

    assert agent.run("go") == Finished("ok")
    tool_names = [t["function"]["name"] for t in engine.calls[0]["tools"]]
    assert tool_names == ["get_time", "final_answer"]
    assert "Action:" in agent.memory.action_steps[0].model_output


def test_stop_sequences_and_system_prompt():
    engine = FakeEngine([action("final_answer", {"answer": 1})])
    agent = make_tool_agent(engine)
    agent.run("go")

    call = engine.calls[0]
    assert call["stop"] == ["Observation:"]
    assert call["tools"] is None
    assert call["messages"][0]["role"] == "system"
    assert "get_time" in call["messages"][0]["content"]
    assert call["messages"][1] == {"role": "user", "content": "New task:\ngo"}


def test_caller_supplied_final_answer_tool_is_kept():
    def final_answer(answer: str) -> str:
        """Return the answer in upper case."""
        return answer.upper()

    engine = FakeEngine([action("final_answer", {"answer": "done"})])
    agent = make_tool_agent(engine, tools=[final_answer])

    assert agent.tools.names() == ["final_answer"]
    assert agent.run("go") == Finished("DONE")


# ---------------------------------------------------------------------------
# Code agent details
# ---------------------------------------------------------------------------

def test_code_agent_prompt_lists_imports_and_stop_sequences():
    engine = FakeEngine([code("final_answer(1)")])
    agent = make_code_agent(engine, authorized_imports=["numpy"])
    agent.run("go")

    system = engine.calls[0]["messages"][0]["content"]
    assert "numpy" in system and "math" in system
    assert engine.calls[0]["stop"] == ["<end_code>", "Observation:"]


def test_variables_persist_within_a_run_but_not_across_runs():
    engine = FakeEngine([
        code("x = 41"),
        code("final_answer(x + 1)"),
        code("final_answer(x)"),
        code("final_answer('fresh')"),
    ])
    agent = make_code_agent(engine)

    assert agent.run("first") == Finished(42)
    assert agent.run("second") == Finished("fresh")
    leaked = agent.memory.action_steps[0]
    assert leaked.error.kind is ErrorKind.RUNTIME
    assert "NameError" in leaked.error.message


def test_code_tools_are_callable_from_code():
    engine = FakeEngine([code("final_answer(get_time('Lima'))")])
    agent = make_code_agent(engine, tools=[get_time])
    assert agent.run("time in Lima?") == Finished("12:00 in Lima")


def test_code_timeout_is_recorded():
    engine = FakeEngine([code("while True:\n    pass"), code("final_answer('gave up')")])
    agent = make_code_agent(engine, code_timeout=0.3)

    assert agent.run("spin") == Finished("gave up")
    assert agent.memory.action_steps[0].error.kind is ErrorKind.TIMEOUT


# ---------------------------------------------------------------------------
# Fatal failures and cancellation
# ---------------------------------------------------------------------------

def test_transport_failures_retry_then_fail_the_run():
    engine = FakeEngine([ConnectionError("down"), ConnectionError("still down")], max_retries=1)
    agent = make_tool_agent(engine)

    outcome = agent.run("go")

    assert isinstance(outcome, Failed)
    assert outcome.kind is ErrorKind.MODEL
    assert "after 2 attempt(s)" in outcome.message
    assert len(engine.calls) == 2
    assert agent.memory.action_steps == []
    assert_single_terminal_marker(agent, outcome)


def test_invalid_response_is_not_retried():
    engine = FakeEngine([ValueError("garbage")], max_retries=3)
    outcome = make_tool_agent(engine).run("go")
    assert outcome.kind is ErrorKind.MODEL
    assert len(engine.calls) == 1


def test_cancelled_before_start():
    token = CancellationToken()
    token.cancel("user pressed stop")
    engine = FakeEngine()
    outcome = make_tool_agent(engine).run("go", cancel_token=token)

    assert outcome == Failed(ErrorKind.CANCELLED, "run cancelled: user pressed stop")
    assert engine.calls == []


def test_cancelled_between_steps_keeps_recorded_steps():
    token = CancellationToken()

    def stop_everything() -> str:
        """Stop the run."""
        token.cancel("stop requested")
        return "stopping"

    engine = FakeEngine(default=action("stop_everything", {}))
    agent = make_tool_agent(engine, tools=[stop_everything])

    outcome = agent.run("go", cancel_token=token)

    assert isinstance(outcome, Failed) and outcome.kind is ErrorKind.CANCELLED
    assert len(agent.memory.action_steps) == 1
    assert agent.memory.action_steps[0].output == "stopping"


def test_cancel_during_planning_stops_before_the_action_call():
    token = CancellationToken()

    class CancellingPlanner(FakeEngine):
        def _call_provider(self, payload):
            if payload["stop"] == ["<end_plan>"]:
                token.cancel("stop requested")
            return super()._call_provider(payload)

    engine = CancellingPlanner(["1. answer<end_plan>", action("final_answer", {"answer": "done"})])
    agent = make_tool_agent(engine, planning_interval=1)

    outcome = agent.run("go", cancel_token=token)

    assert outcome == Failed(ErrorKind.CANCELLED, "run cancelled: stop requested")
    assert len(engine.calls) == 1
    assert agent.memory.action_steps == []
    assert len(agent.memory.planning_steps) == 1


def test_external_deadline_cancels():
    outcome = make_tool_agent(FakeEngine()).run("go", cancel_token=CancellationToken(deadline_seconds=0))
    assert outcome.kind is ErrorKind.CANCELLED
    assert "deadline exceeded" in outcome.message


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

def test_token_budget():
    engine = FakeEngine(default=action("get_time", {"city": "Rome"}), usage=TokenUsage(4, 2))
    agent = make_tool_agent(engine, max_tokens=10)

    outcome = agent.run("go")

    assert isinstance(outcome, BudgetExhausted)
    assert "max tokens" in outcome.reason
    assert len(agent.memory.action_steps) == 2


def test_time_budget():
    def slow() -> str:
        """Takes a while."""
        time.sleep(0.3)
        return "done"

    engine = FakeEngine(default=action("slow", {}))
    agent = make_tool_agent(engine, tools=[slow], max_seconds=0.2)

    outcome = agent.run("go")

    assert isinstance(outcome, BudgetExhausted)
    assert "max seconds" in outcome.reason
    assert len(agent.memory.action_steps) == 1


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def test_planning_runs_before_first_step_and_every_interval():
    engine = FakeEngine([
        "1. look up the time<end_plan>",
        action("get_time", {"city": "Rome"}),
        action("get_time", {"city": "Oslo"}),
        "2. answer",
        action("final_answer", {"answer": "done"}),
    ])
    agent = make_tool_agent(engine, planning_interval=2)

    assert agent.run("times?") == Finished("done")

    kinds = [type(s) for s in agent.memory.steps]
    assert kinds == [
        SystemPromptStep, TaskStep, PlanningStep, ActionStep, ActionStep,
        PlanningStep, ActionStep, FinalAnswerStep,
    ]
    initial, update = agent.memory.planning_steps
    assert initial.plan == "1. look up the time" and not initial.is_update
    assert update.is_update
    assert engine.calls[0]["stop"] == ["<end_plan>"]
    assert engine.calls[0]["tools"] is None
    assert "# PROGRESS SO FAR" in engine.calls[3]["messages"][0]["content"]
    # Planning steps do not consume the step budget.
    assert [s.step_number for s in agent.memory.action_steps] == [1, 2, 3]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"name": "bad name"}, "valid identifier"),
        ({"description": "  "}, "description"),
        ({"llm_engine": object()}, "LLMEngine"),
        ({"max_steps": 0}, "max_steps"),
        ({"planning_interval": 0}, "planning_interval"),
        ({"system_prompt": "no placeholders here"}, "missing required placeholder"),
        ({"system_prompt": "{TOOLS} {EXTRA}"}, "unsupported placeholder"),
        ({"history": [{"role": "tool", "content": "x"}]}, "history"),
    ],
)
def test_invalid_configuration(kwargs, message):
    base = {"name": "assistant", "description": "Helper.", "llm_engine": FakeEngine()}
    base.update(kwargs)
    with pytest.raises(ConfigError, match=message):
        ToolCallingAgent(**base)


def test_custom_system_prompt_and_history():
    engine = FakeEngine([action("final_answer", {"answer": 1})])
    agent = make_tool_agent(
        engine,
        system_prompt="Only use these: {TOOLS}",
        history=[{"role": "assistant", "content": "Hello again."}],
    )
    agent.run("go")
    messages = engine.calls[0]["messages"]
    assert messages[0]["content"].startswith("Only use these: - get_time")
    assert messages[1] == {"role": "assistant", "content": "Hello again."}


def test_empty_goal_rejected():
    with pytest.raises(ValueError):
        make_tool_agent(FakeEngine()).run("   ")


def test_to_dict_snapshot():
    agent = make_code_agent(FakeEngine(), max_steps=4)
    snapshot = agent.to_dict()
    assert snapshot["mode"] == "code"
    assert snapshot["budget"]["max_steps"] == 4
    assert snapshot["tools"] == ["final_answer"]
    assert "authorized_imports" in snapshot["sandbox"]


def test_model_error_kind_is_exposed_on_exception():
    engine = FakeEngine([TimeoutError("slow")], max_retries=0)
    with pytest.raises(Exception) as info:
        engine.generate([{"role": "user", "content": "hi"}])
    assert info.value.kind is ModelErrorKind.TRANSPORT
    assert info.value.attempts == 1


def test_tool_passthrough_in_agent_registry():
    t = Tool(get_time, name="clock_time")
    agent = make_tool_agent(FakeEngine(), tools=[t])
    assert agent.tools.lookup("clock_time") is t
