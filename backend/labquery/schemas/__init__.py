"""Pydantic schemas for API request/response validation."""

from labquery.schemas.chat import (
    MessageAccepted,
    MessageCreate,
    SessionCreate,
    SessionReset,
    SessionResponse,
)
from labquery.schemas.events import (
    ErrorEvent,
    MessageEndEvent,
    MessageStartEvent,
    OutboundEvent,
    PlotResultEvent,
    SessionStartEvent,
    StatusEvent,
    TableResultEvent,
    TextEvent,
    ToolCompleteEvent,
    ToolStartEvent,
)

__all__ = [
    # Chat API
    "SessionCreate",
    "SessionReset",
    "SessionResponse",
    "MessageCreate",
    "MessageAccepted",
    # Stream events
    "OutboundEvent",
    "SessionStartEvent",
    "MessageStartEvent",
    "TextEvent",
    "ToolStartEvent",
    "ToolCompleteEvent",
    "StatusEvent",
    "PlotResultEvent",
    "TableResultEvent",
    "ErrorEvent",
    "MessageEndEvent",
]
