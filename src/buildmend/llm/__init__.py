from buildmend.llm.cache import ResponseCache
from buildmend.llm.client import (
    CodeGeneration,
    LLMClient,
    ReasoningRequest,
    ReasoningResponse,
    is_retryable,
)
from buildmend.llm.guardrails import Guardrails

__all__ = [
    "CodeGeneration",
    "Guardrails",
    "LLMClient",
    "ReasoningRequest",
    "ReasoningResponse",
    "ResponseCache",
    "is_retryable",
]
