"""Tool schema offered to the reasoning model and argument parsing."""

from __future__ import annotations

import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

SEARCH_PARAMETER_NAMES = "search_parameter_names"
SEARCH_ANALYTE_NAMES = "search_analyte_names"
RUN_EXPLORATORY_QUERY = "run_exploratory_query"
FINALIZE_QUERY = "finalize_query"


class ToolArgumentError(ValueError):
    """Tool arguments could not be parsed or validated."""


class SearchArguments(BaseModel):
    term: str = Field(..., max_length=200)
    limit: Optional[int] = Field(default=None, ge=1)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("term")
    @classmethod
    def _term_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("term must not be blank")
        return value


class ExploratoryQueryArguments(BaseModel):
    sql: str = Field(..., min_length=1)
    reasoning: Optional[str] = None


class FinalizeQueryArguments(BaseModel):
    sql: str = Field(..., min_length=1)
    explanation: str = ""
    display: Literal["table", "plot"] = "table"
    title: Optional[str] = Field(default=None, max_length=120)


ARGUMENT_MODELS: dict[str, type[BaseModel]] = {
    SEARCH_PARAMETER_NAMES: SearchArguments,
    SEARCH_ANALYTE_NAMES: SearchArguments,
    RUN_EXPLORATORY_QUERY: ExploratoryQueryArguments,
    FINALIZE_QUERY: FinalizeQueryArguments,
}


def _search_parameters(
    subject: str, default_limit: int, max_limit: int, default_threshold: float
) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "term": {
                "type": "string",
                "description": f"The {subject} to search for (any language or script, typos allowed)",
            },
            "limit": {
                "type": "integer",
                "description": (
                    f"Maximum number of matches to return (default {default_limit}, "
                    f"max {max_limit})"
                ),
            },
            "threshold": {
                "type": "number",
                "description": (
                    f"Minimum trigram similarity between 0 and 1 (default {default_threshold:g})"
                ),
            },
        },
        "required": ["term"],
    }


def build_tool_definitions(
    *,
    search_limit: int,
    search_max_limit: int,
    similarity_threshold: float,
    exploratory_row_limit: int,
) -> list[dict[str, Any]]:
    """Function-calling tool list with the limits the agent actually applies."""
    search = (search_limit, search_max_limit, similarity_threshold)
    return [
        {
            "type": "function",
            "function": {
                "name": SEARCH_PARAMETER_NAMES,
                "description": (
                    "Find lab parameter names (lab_results.parameter_name) similar to a term "
                    "using trigram similarity. Handles typos, abbreviations and other "
                    "languages. Use it before filtering on a parameter name."
                ),
                "parameters": _search_parameters("parameter name", *search),
            },
        },
        {
            "type": "function",
            "function": {
                "name": SEARCH_ANALYTE_NAMES,
                "description": (
                    "Find canonical analytes through their multilingual aliases. Returns the "
                    "analyte code, which groups differently spelled parameters; join "
                    "lab_results.analyte_id to analytes to use it."
                ),
                "parameters": _search_parameters("analyte name", *search),
            },
        },
        {
            "type": "function",
            "function": {
                "name": RUN_EXPLORATORY_QUERY,
                "description": (
                    "Run a read-only SELECT to inspect data before answering. The query is "
                    f"validated and limited to {exploratory_row_limit} rows."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "sql": {"type": "string", "description": "A single literal SELECT statement"},
                        "reasoning": {"type": "string", "description": "Why this query is needed"},
                    },
                    "required": ["sql"],
                },
            },
        },
        {
            "type": "function",
            "function": {
                "name": FINALIZE_QUERY,
                "description": (
                    "Commit to the final SELECT that answers the question. Use literal values "
                    "only (no placeholders) and a single statement. For plots return columns "
                    "t (timestamp), y (numeric value), parameter_name and unit."
                ),
                "parameters": {
                    "type": "object",
                    "properties": {
                        "sql": {"type": "string", "description": "The final SELECT statement"},
                        "explanation": {
                            "type": "string",
                            "description": "One or two sentences on what the query returns",
                        },
                        "display": {
                            "type": "string",
                            "enum": ["table", "plot"],
                            "description": "How to show the rows (default table)",
                        },
                        "title": {"type": "string", "description": "Short title for the result"},
                    },
                    "required": ["sql", "explanation"],
                },
            },
        },
    ]


def parse_tool_arguments(name: str, raw_arguments: str) -> BaseModel:
    """Decode and validate the JSON arguments of a tool call.

    Raises:
        ToolArgumentError: Unknown tool, malformed JSON or invalid fields
    """
    model = ARGUMENT_MODELS.get(name)
    if model is None:
        raise ToolArgumentError(
            f"Unknown tool '{name}'. Available tools: {', '.join(ARGUMENT_MODELS)}."
        )
    try:
        payload = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(f"Arguments for {name} are not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ToolArgumentError(f"Arguments for {name} must be a JSON object.")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ToolArgumentError(f"Invalid arguments for {name}: {problems}") from exc
