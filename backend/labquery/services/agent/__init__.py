"""Conversational SQL agent: tool loop, validator and fuzzy search."""

from importlib import import_module

__all__ = [
    "TurnOrchestrator",
    "TurnResult",
    "TurnState",
    "SqlValidator",
    "ValidatedQuery",
    "ValidationFinding",
    "FuzzySearchService",
    "FuzzyMatch",
    "OpenAIReasoningModel",
    "ReasoningModel",
    "ModelReply",
    "ToolCall",
]

_LAZY_IMPORTS = {
    "TurnOrchestrator": ("labquery.services.agent.orchestrator", "TurnOrchestrator"),
    "TurnResult": ("labquery.services.agent.orchestrator", "TurnResult"),
    "TurnState": ("labquery.services.agent.orchestrator", "TurnState"),
    "SqlValidator": ("labquery.services.agent.validator", "SqlValidator"),
    "ValidatedQuery": ("labquery.services.agent.validator", "ValidatedQuery"),
    "ValidationFinding": ("labquery.services.agent.validator", "ValidationFinding"),
    "FuzzySearchService": ("labquery.services.agent.fuzzy", "FuzzySearchService"),
    "FuzzyMatch": ("labquery.services.agent.fuzzy", "FuzzyMatch"),
    "OpenAIReasoningModel": ("labquery.services.agent.reasoning", "OpenAIReasoningModel"),
    "ReasoningModel": ("labquery.services.agent.reasoning", "ReasoningModel"),
    "ModelReply": ("labquery.services.agent.reasoning", "ModelReply"),
    "ToolCall": ("labquery.services.agent.reasoning", "ToolCall"),
}


def __getattr__(name: str):
    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)
