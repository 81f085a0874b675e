"""Outbound events of the chat stream.

Each event is one SSE frame ``data: <json>\\n\\n`` with a mandatory ``type``.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class OutboundEvent(BaseModel):
    """Base class for every streamed event."""

    model_config = ConfigDict(populate_by_name=True)

    type: str

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


class SessionStartEvent(OutboundEvent):
    type: Literal["session_start"] = "session_start"
    session_id: str = Field(..., serialization_alias="sessionId")
    patient_scope: Optional[str] = Field(default=None, serialization_alias="patientScope")


class MessageStartEvent(OutboundEvent):
    type: Literal["message_start"] = "message_start"
    message_id: str


class TextEvent(OutboundEvent):
    type: Literal["text"] = "text"
    message_id: str
    content: str


class ToolStartEvent(OutboundEvent):
    type: Literal["tool_start"] = "tool_start"
    message_id: str
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)
    iteration: int


class ToolCompleteEvent(OutboundEvent):
    type: Literal["tool_complete"] = "tool_complete"
    message_id: str
    tool: str
    iteration: int
    duration_ms: int
    error: Optional[str] = None


class StatusEvent(OutboundEvent):
    type: Literal["status"] = "status"
    message_id: str
    status: str
    message: str


class PlotResultEvent(OutboundEvent):
    type: Literal["plot_result"] = "plot_result"
    message_id: str
    plot_title: str
    rows: list[dict[str, Any]]
    columns: list[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    sql: Optional[str] = None


class TableResultEvent(OutboundEvent):
    type: Literal["table_result"] = "table_result"
    message_id: str
    table_title: str
    rows: list[dict[str, Any]]
    columns: list[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    sql: Optional[str] = None


class ErrorEvent(OutboundEvent):
    type: Literal["error"] = "error"
    message_id: Optional[str] = None
    code: str
    message: str


class MessageEndEvent(OutboundEvent):
    type: Literal["message_end"] = "message_end"
    message_id: str
