"""Conversation state for multi-turn SQL dialogues.

Messages use the chat-completions wire format (``role``/``content`` dicts,
assistant ``tool_calls`` and ``tool`` replies) so they can be sent to the
reasoning model unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from labquery.services.agent.reasoning import ToolCall


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass
class ToolInvocation:
    """One tool call within a turn's loop."""

    iteration: int
    tool: str
    arguments: dict[str, Any]
    result: Any = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class Turn:
    """A user message and the assistant's response lifecycle for it."""

    message_id: str
    user_text: str
    role: str = "assistant"
    text: str = ""
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    status: Optional[TurnStatus] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.status is not None

    def append_text(self, text: str) -> None:
        self._ensure_open()
        self.text += text

    def record(self, invocation: ToolInvocation) -> None:
        self._ensure_open()
        self.tool_invocations.append(invocation)

    def finalize(self, status: TurnStatus) -> None:
        self._ensure_open()
        self.status = status
        self.finished_at = datetime.now(UTC)

    def _ensure_open(self) -> None:
        if self.finalized:
            raise RuntimeError(f"Turn {self.message_id} is already finalized")


def user_message(text: str) -> dict[str, Any]:
    return {"role": "user", "content": text}


def assistant_message(text: str, tool_call: Optional[ToolCall] = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_call is not None:
        message["tool_calls"] = [tool_call.to_message()]
    return message


def tool_message(tool_call_id: str, content: str) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    """Rough token count (characters / 4)."""
    chars = 0
    for message in messages:
        chars += len(message.get("content") or "")
        for call in message.get("tool_calls") or []:
            chars += len(call["function"]["arguments"]) + len(call["function"]["name"])
    return chars // 4


def prune_history(
    messages: list[dict[str, Any]],
    *,
    token_budget: int,
    keep_recent: int,
) -> list[dict[str, Any]]:
    """Keep the system prompt plus the most recent messages once over budget.

    A ``tool`` reply is never kept without the assistant message that
    requested it.
    """
    if estimate_tokens(messages) <= token_budget:
        return list(messages)
    head = messages[:1] if messages and messages[0]["role"] == "system" else []
    recent = messages[len(head) :][-keep_recent:] if keep_recent > 0 else []
    while recent and recent[0]["role"] == "tool":
        recent = recent[1:]
    return head + recent
