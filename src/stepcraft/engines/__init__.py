from .base import LLMEngine, ModelDelta, ModelOutput, TokenUsage, collect_stream
from .LLMEngines import OpenAIEngine

__all__ = ["LLMEngine",
           "ModelOutput",
           "ModelDelta",
           "TokenUsage",
           "collect_stream",
           "OpenAIEngine",]
