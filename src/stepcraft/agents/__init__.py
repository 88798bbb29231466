from .actions import ActionResolver, AgentMode, CodeAction, ParsedResponse, ToolCall
from .base import MultiStepAgent, StepResult
from .events import (
    AgentEvent,
    ModelTextDelta,
    RunCompleted,
    RunStarted,
    StepRecorded,
    StepStarted,
)
from .memory import (
    ActionStep,
    AgentMemory,
    FinalAnswerStep,
    MemoryStep,
    PlanningStep,
    SystemPromptStep,
    TaskStep,
)
from .state import (
    Budget,
    BudgetExhausted,
    BudgetTracker,
    CancellationToken,
    Failed,
    Finished,
    RunOutcome,
)
from .tool_agents import CodeAgent, ToolCallingAgent

__all__ = ["MultiStepAgent",
           "ToolCallingAgent",
           "CodeAgent",
           "StepResult",
           "AgentMode",
           "ActionResolver",
           "ParsedResponse",
           "ToolCall",
           "CodeAction",
           "AgentMemory",
           "MemoryStep",
           "SystemPromptStep",
           "TaskStep",
           "PlanningStep",
           "ActionStep",
           "FinalAnswerStep",
           "Budget",
           "BudgetTracker",
           "CancellationToken",
           "RunOutcome",
           "Finished",
           "BudgetExhausted",
           "Failed",
           "AgentEvent",
           "RunStarted",
           "StepStarted",
           "ModelTextDelta",
           "StepRecorded",
           "RunCompleted",]
