"""Session records and their storage."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional, Protocol

from labquery.services.agent.conversation import Turn
from labquery.services.sessions.channel import EventChannel


@dataclass
class ChatSession:
    """One conversation scope, owned by the session manager."""

    id: str
    patient_scope: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    busy: bool = False
    turns: list[Turn] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)
    channel: EventChannel = field(default_factory=EventChannel)
    task: Optional[asyncio.Task[None]] = None

    def touch(self) -> None:
        self.last_activity = datetime.now(UTC)


class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[ChatSession]:
        ...

    def add(self, session: ChatSession) -> None:
        ...

    def remove(self, session_id: str) -> Optional[ChatSession]:
        ...

    def all(self) -> list[ChatSession]:
        ...

    def __len__(self) -> int:
        ...


class InMemorySessionStore:
    """Process-local session registry."""

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}

    def get(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def add(self, session: ChatSession) -> None:
        self._sessions[session.id] = session

    def remove(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.pop(session_id, None)

    def all(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
