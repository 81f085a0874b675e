"""Session lifecycle and the one-turn-at-a-time guard."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional

from labquery.config import settings
from labquery.logging import session_id_var
from labquery.schemas.events import ErrorEvent, MessageEndEvent, SessionStartEvent
from labquery.services.agent.orchestrator import FAILURE_MESSAGE, TurnOrchestrator
from labquery.services.errors import SessionBusy, SessionNotFound
from labquery.services.sessions.channel import EventChannel
from labquery.services.sessions.store import ChatSession, InMemorySessionStore, SessionStore

logger = logging.getLogger("labquery.sessions")


class AcceptResult(str, Enum):
    ACCEPTED = "accepted"
    SESSION_BUSY = "SESSION_BUSY"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"


@dataclass(frozen=True)
class AcceptOutcome:
    result: AcceptResult
    message_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.result is AcceptResult.ACCEPTED

    def raise_for_result(self) -> str:
        """Return the message id or raise the matching session error."""
        if self.result is AcceptResult.SESSION_BUSY:
            raise SessionBusy()
        if self.result is AcceptResult.SESSION_NOT_FOUND:
            raise SessionNotFound()
        return self.message_id or ""


class SessionManager:
    """Owns every session and starts at most one turn per session at a time.

    The check-and-set of ``busy`` in ``accept_message`` runs without an await,
    so two messages arriving together on the event loop cannot both start a
    turn. Turns run as background tasks and only talk to the client through
    the session's ``EventChannel``.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        store: Optional[SessionStore] = None,
        *,
        idle_timeout_seconds: Optional[int] = None,
        max_sessions: Optional[int] = None,
        continue_on_disconnect: Optional[bool] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store if store is not None else InMemorySessionStore()
        self.idle_timeout = timedelta(
            seconds=idle_timeout_seconds or settings.session_idle_timeout_seconds
        )
        self.max_sessions = max_sessions or settings.session_max_sessions
        self.continue_on_disconnect = (
            continue_on_disconnect
            if continue_on_disconnect is not None
            else settings.session_continue_on_disconnect
        )
        # Turns of replaced sessions that were left running to completion.
        self._detached_turns: set[asyncio.Task] = set()

    def create_session(self, patient_scope: Optional[str] = None) -> ChatSession:
        if len(self.store) >= self.max_sessions:
            self._evict_oldest_idle()
        session = ChatSession(id=str(uuid.uuid4()), patient_scope=patient_scope)
        session.channel.publish(
            SessionStartEvent(session_id=session.id, patient_scope=patient_scope)
        )
        self.store.add(session)
        logger.info("Session created id=%s scoped=%s", session.id, patient_scope is not None)
        return session

    def get_session(self, session_id: str) -> ChatSession:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    def accept_message(self, session_id: str, text: str) -> AcceptOutcome:
        """Start a turn for ``text`` unless the session is missing or busy.

        Rejections emit nothing on the session's channel.
        """
        session = self.store.get(session_id)
        if session is None:
            return AcceptOutcome(AcceptResult.SESSION_NOT_FOUND)
        if session.busy:
            logger.info("Message rejected, session busy id=%s", session_id)
            return AcceptOutcome(AcceptResult.SESSION_BUSY)

        session.busy = True
        session.touch()
        message_id = str(uuid.uuid4())
        session.task = asyncio.create_task(
            self._run_turn(session, text, message_id),
            name=f"turn-{session.id}",
        )
        return AcceptOutcome(AcceptResult.ACCEPTED, message_id)

    async def _run_turn(self, session: ChatSession, text: str, message_id: str) -> None:
        session_id_var.set(session.id)
        try:
            result = await self.orchestrator.run_turn(
                session_id=session.id,
                user_text=text,
                emit=session.channel.publish,
                history=session.history,
                patient_scope=session.patient_scope,
                message_id=message_id,
            )
            session.history.extend(result.messages)
            session.turns.append(result.turn)
        except asyncio.CancelledError:
            logger.info("Turn cancelled message_id=%s", message_id)
            raise
        except Exception:
            logger.exception("Turn crashed message_id=%s", message_id)
            session.channel.publish(
                ErrorEvent(message_id=message_id, code="INTERNAL_ERROR", message=FAILURE_MESSAGE)
            )
            session.channel.publish(MessageEndEvent(message_id=message_id))
        finally:
            session.busy = False
            session.task = None
            session.touch()

    def new_session(
        self,
        previous_session_id: Optional[str] = None,
        patient_scope: Optional[str] = None,
        *,
        keep_previous_scope: bool = True,
    ) -> ChatSession:
        """Replace a session with a fresh one.

        The old session's stream ends immediately whatever its turn is doing.
        The new session inherits the old patient scope unless ``patient_scope``
        is given or ``keep_previous_scope`` is False.
        """
        if previous_session_id is not None:
            previous = self.store.remove(previous_session_id)
            if previous is None:
                raise SessionNotFound(f"Session {previous_session_id} not found")
            previous.channel.close()
            if previous.task is not None:
                if self.continue_on_disconnect:
                    self._detached_turns.add(previous.task)
                    previous.task.add_done_callback(self._detached_turns.discard)
                else:
                    previous.task.cancel()
            if patient_scope is None and keep_previous_scope:
                patient_scope = previous.patient_scope
        return self.create_session(patient_scope)

    def delete_session(self, session_id: str) -> bool:
        session = self.store.remove(session_id)
        if session is None:
            return False
        self._dispose(session)
        logger.info("Session deleted id=%s", session_id)
        return True

    def attach_stream(self, session_id: str) -> EventChannel:
        session = self.get_session(session_id)
        session.channel.attach()
        session.touch()
        return session.channel

    def detach_stream(self, session_id: str) -> None:
        session = self.store.get(session_id)
        if session is None:
            return
        session.channel.detach()
        session.touch()
        if session.busy and session.task is not None and not self.continue_on_disconnect:
            logger.info("Stream detached, cancelling turn id=%s", session_id)
            session.task.cancel()

    def reclaim_idle(self, now: Optional[datetime] = None) -> int:
        """Drop non-busy sessions idle longer than the timeout. Returns the count."""
        now = now or datetime.now(UTC)
        reclaimed = 0
        for session in self.store.all():
            if session.busy or now - session.last_activity <= self.idle_timeout:
                continue
            self.store.remove(session.id)
            self._dispose(session)
            reclaimed += 1
        if reclaimed:
            logger.info("Reclaimed %d idle sessions", reclaimed)
        return reclaimed

    async def shutdown(self) -> None:
        """Close every session and cancel and await all running turns."""
        tasks = []
        for session in self.store.all():
            self.store.remove(session.id)
            if session.task is not None:
                tasks.append(session.task)
            self._dispose(session)
        for task in list(self._detached_turns):
            task.cancel()
            tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _evict_oldest_idle(self) -> None:
        idle = [session for session in self.store.all() if not session.busy]
        if not idle:
            logger.warning(
                "Session cap %d reached with every session busy", self.max_sessions
            )
            return
        oldest = min(idle, key=lambda session: session.last_activity)
        self.store.remove(oldest.id)
        self._dispose(oldest)
        logger.info("Evicted session id=%s to stay under cap", oldest.id)

    @staticmethod
    def _dispose(session: ChatSession) -> None:
        session.channel.close()
        if session.task is not None:
            session.task.cancel()
