"""Exception hierarchy for the query agent."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from labquery.services.agent.validator import ValidationFinding


class AgentError(Exception):
    """Base class for agent failures. ``code`` is the stable machine-readable name."""

    code = "AGENT_ERROR"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationRejected(AgentError):
    """Proposed SQL failed validation."""

    code = "VALIDATION_REJECTED"

    def __init__(self, findings: Sequence["ValidationFinding"]):
        self.findings = tuple(findings)
        codes = ", ".join(finding.code for finding in self.findings) or "unknown"
        super().__init__(f"SQL rejected: {codes}")


class DatastoreError(AgentError):
    """The datastore raised an error or timed out."""

    code = "DATASTORE_ERROR"


class ToolExecutionError(AgentError):
    """A tool failed while talking to the datastore."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(message)


class ReasoningModelError(AgentError):
    """The reasoning model call failed."""

    code = "REASONING_MODEL_ERROR"


class IterationLimitExceeded(AgentError):
    """The turn used up its iteration budget."""

    code = "ITERATION_LIMIT"


class WallClockTimeout(AgentError):
    """The turn ran past its wall-clock limit."""

    code = "TIMEOUT"


class SessionBusy(AgentError):
    """The session is already answering a message."""

    code = "SESSION_BUSY"


class SessionNotFound(AgentError):
    """No such session."""

    code = "SESSION_NOT_FOUND"


class StreamAlreadyAttached(AgentError):
    """Another client is already reading this session's event stream."""

    code = "STREAM_ALREADY_ATTACHED"
