"""Shared API dependencies."""

from fastapi import Header, HTTPException, Request, status

from labquery.config import settings
from labquery.services.sessions.manager import SessionManager


async def require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")):
    """Require the API key when one is configured."""
    if not settings.api_key:
        return None
    if x_api_key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return None


def get_session_manager(request: Request) -> SessionManager:
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session manager is not ready",
        )
    return manager
