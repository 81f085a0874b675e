from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labquery.api import chat, health
from labquery.api.deps import require_api_key
from labquery.config import settings
from labquery.database import async_session_maker, close_db, engine, init_db
from labquery.logging import configure_logging, request_id_var
from labquery.services.agent.audit import DatabaseAuditLog
from labquery.services.agent.orchestrator import TurnOrchestrator
from labquery.services.agent.reasoning import OpenAIReasoningModel
from labquery.services.datastore import SQLAlchemyDatastore
from labquery.services.errors import (
    AgentError,
    SessionBusy,
    SessionNotFound,
    StreamAlreadyAttached,
)
from labquery.services.sessions.manager import SessionManager
from labquery.services.sessions.reaper import SessionReaper

configure_logging()
logger = logging.getLogger("labquery")

AGENT_ERROR_STATUS = {
    SessionNotFound: 404,
    SessionBusy: 409,
    StreamAlreadyAttached: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting LabQuery API")
    try:
        await init_db()
        logger.info("Database initialized")
    except Exception:
        logger.exception("Failed to initialize database")
        raise

    model = OpenAIReasoningModel()
    orchestrator = TurnOrchestrator(
        model,
        SQLAlchemyDatastore(engine),
        audit=DatabaseAuditLog(async_session_maker),
    )
    manager = SessionManager(orchestrator)
    reaper = SessionReaper(manager)
    await reaper.start()
    app.state.session_manager = manager

    yield

    logger.info("Shutting down LabQuery API")
    await reaper.stop()
    await manager.shutdown()
    try:
        await model.close()
        await close_db()
        logger.info("Database connections closed")
    except Exception:
        logger.exception("Error closing connections")
    logger.info("LabQuery API shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # LabQuery API

    Conversational SQL over patient lab results.

    ## Features

    - **Sessions** - One question at a time per conversation, optionally scoped to a patient
    - **Agent** - Tool-calling loop with fuzzy name lookup and exploratory queries
    - **Safety** - Read-only, single-statement, row-limited SQL validated before execution
    - **Streaming** - Progress and results as server-sent events
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id", str(uuid.uuid4()))
    request_id_var.set(request_id)
    response = await call_next(request)
    response.headers.setdefault("X-Request-Id", request_id)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if not settings.debug:
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=63072000; includeSubDomains; preload",
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.include_router(health.router)
app.include_router(
    chat.router,
    prefix=settings.api_prefix,
    dependencies=[Depends(require_api_key)],
)


def agent_error_response(exc: AgentError) -> JSONResponse:
    status_code = AGENT_ERROR_STATUS.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": exc.message,
                "status_code": status_code,
                "type": "agent_error",
                "code": exc.code,
                "request_id": request_id_var.get(),
            }
        },
    )


@app.exception_handler(AgentError)
async def agent_exception_handler(_request: Request, exc: AgentError):
    return agent_error_response(exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(_request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "status_code": exc.status_code,
                "type": "http_error",
                "request_id": request_id_var.get(),
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "Validation error",
                "status_code": 422,
                "type": "validation_error",
                "details": exc.errors(),
                "request_id": request_id_var.get(),
            }
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, _exc: Exception):
    logger.exception("Unhandled error")
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "status_code": 500,
                "type": "server_error",
                "request_id": request_id_var.get(),
            }
        },
    )
