"""Chat session API: create sessions, post questions, stream events."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import StreamingResponse

from labquery.api.deps import get_session_manager
from labquery.config import settings
from labquery.schemas.chat import (
    MessageAccepted,
    MessageCreate,
    SessionCreate,
    SessionReset,
    SessionResponse,
)
from labquery.services.errors import SessionNotFound
from labquery.services.sessions.manager import SessionManager

logger = logging.getLogger("labquery.api.chat")

router = APIRouter(prefix="/sessions", tags=["Chat"])

KEEPALIVE_FRAME = ": keepalive\n\n"


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: Optional[SessionCreate] = None,
    manager: SessionManager = Depends(get_session_manager),
):
    """Open a chat session, optionally scoped to one patient."""
    scope = payload.patient_scope if payload else None
    session = manager.create_session(str(scope) if scope else None)
    return SessionResponse(session_id=session.id, patient_scope=session.patient_scope)


@router.post(
    "/{session_id}/messages",
    response_model=MessageAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def post_message(
    session_id: str,
    payload: MessageCreate,
    manager: SessionManager = Depends(get_session_manager),
):
    """Start answering a question. Progress arrives on the session stream.

    Returns 409 ``SESSION_BUSY`` while a previous question is still running.
    """
    message_id = manager.accept_message(session_id, payload.text).raise_for_result()
    return MessageAccepted(session_id=session_id, message_id=message_id)


@router.get("/{session_id}/stream")
async def stream_events(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Server-sent event stream of everything the session emits."""
    channel = manager.attach_stream(session_id)
    keepalive = settings.sse_keepalive_seconds

    async def generate():
        try:
            while True:
                try:
                    event = await channel.next_event(timeout=keepalive)
                except TimeoutError:
                    yield KEEPALIVE_FRAME
                    continue
                if event is None:
                    break
                yield event.to_sse()
        finally:
            manager.detach_stream(session_id)
            logger.info("Stream closed session_id=%s", session_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{session_id}/reset", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def reset_session(
    session_id: str,
    payload: Optional[SessionReset] = None,
    manager: SessionManager = Depends(get_session_manager),
):
    """Replace the session with a fresh one; the old stream ends immediately."""
    payload = payload or SessionReset()
    session = manager.new_session(
        session_id,
        str(payload.patient_scope) if payload.patient_scope else None,
        keep_previous_scope=not payload.clear_patient_scope,
    )
    return SessionResponse(session_id=session.id, patient_scope=session.patient_scope)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """End a session and cancel any running turn."""
    if not manager.delete_session(session_id):
        raise SessionNotFound(f"Session {session_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
