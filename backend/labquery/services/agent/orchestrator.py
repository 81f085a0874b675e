"""Tool-calling loop that turns one user question into one executed query.

The orchestrator drives the plan -> act -> observe loop for a single turn:
it calls the reasoning model with the running conversation and the tool
schema, executes the requested tool, appends the observation and repeats
until the model finalizes a query that passes validation, or a limit is hit.
Progress is reported only through the ``emit`` callback, in order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from labquery.config import settings
from labquery.schemas.events import (
    ErrorEvent,
    MessageEndEvent,
    MessageStartEvent,
    OutboundEvent,
    PlotResultEvent,
    StatusEvent,
    TableResultEvent,
    TextEvent,
    ToolCompleteEvent,
    ToolStartEvent,
)
from labquery.services.agent.audit import AuditEntry, AuditLog
from labquery.services.agent.conversation import (
    ToolInvocation,
    Turn,
    TurnStatus,
    assistant_message,
    prune_history,
    tool_message,
    user_message,
)
from labquery.services.agent.fuzzy import FuzzySearchService
from labquery.services.agent.plotting import shape_plot_rows
from labquery.services.agent.prompts import FINALIZE_NUDGE, build_system_prompt
from labquery.services.agent.reasoning import ReasoningModel, ToolCall
from labquery.services.agent.schema_snapshot import SchemaSnapshotService
from labquery.services.agent.tools import (
    FINALIZE_QUERY,
    RUN_EXPLORATORY_QUERY,
    SEARCH_ANALYTE_NAMES,
    SEARCH_PARAMETER_NAMES,
    ExploratoryQueryArguments,
    FinalizeQueryArguments,
    SearchArguments,
    ToolArgumentError,
    build_tool_definitions,
    parse_tool_arguments,
)
from labquery.services.agent.validator import SqlValidator, ValidatedQuery
from labquery.services.datastore import Datastore
from labquery.services.errors import (
    AgentError,
    DatastoreError,
    IterationLimitExceeded,
    ToolExecutionError,
    ValidationRejected,
    WallClockTimeout,
)

logger = logging.getLogger("labquery.orchestrator")

EventSink = Callable[[OutboundEvent], None]

SIMPLIFY_MESSAGE = (
    "I could not finish answering this question. Please try simplifying your question."
)
FAILURE_MESSAGE = "Something went wrong while answering. Please try again."


class TurnState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    TOOL_REQUESTED = "tool_requested"
    EXECUTING_TOOL = "executing_tool"
    FINALIZE_REQUESTED = "finalize_requested"
    VALIDATING = "validating"
    DONE = "done"
    TIMEOUT = "timeout"
    ITERATION_LIMIT = "iteration_limit"
    FATAL_ERROR = "fatal_error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {TurnState.DONE, TurnState.TIMEOUT, TurnState.ITERATION_LIMIT, TurnState.FATAL_ERROR}
)


@dataclass
class TurnResult:
    """Outcome of ``run_turn``; the caller commits ``messages`` to the session."""

    turn: Turn
    state: TurnState
    messages: list[dict[str, Any]]
    iterations: int = 0
    validated_query: Optional[ValidatedQuery] = None
    error: Optional[AgentError] = None


@dataclass
class _TurnRun:
    session_id: str
    turn: Turn
    emit: EventSink
    patient_scope: Optional[str]
    system_prompt: str = ""
    history: list[dict[str, Any]] = field(default_factory=list)
    new_messages: list[dict[str, Any]] = field(default_factory=list)
    transient: list[dict[str, Any]] = field(default_factory=list)
    state: TurnState = TurnState.AWAITING_MODEL
    iterations: int = 0
    text_replies: int = 0
    tool_failures: Counter[str] = field(default_factory=Counter)
    validated_query: Optional[ValidatedQuery] = None

    @property
    def message_id(self) -> str:
        return self.turn.message_id

    def add(self, message: dict[str, Any]) -> None:
        self.new_messages.append(message)
        self.transient.append(message)

    def conversation(self) -> list[dict[str, Any]]:
        return [{"role": "system", "content": self.system_prompt}, *self.history, *self.transient]


class TurnOrchestrator:
    """Runs one turn of the SQL agent against injected collaborators."""

    _global_counters: Counter[str] = Counter()

    @classmethod
    def get_global_counters(cls) -> dict[str, int]:
        """Expose process-wide agent counters for the metrics endpoint."""
        return dict(cls._global_counters)

    def __init__(
        self,
        model: ReasoningModel,
        datastore: Datastore,
        *,
        validator: Optional[SqlValidator] = None,
        fuzzy: Optional[FuzzySearchService] = None,
        schema: Optional[SchemaSnapshotService] = None,
        audit: Optional[AuditLog] = None,
        max_iterations: Optional[int] = None,
        turn_timeout_seconds: Optional[float] = None,
        tool_timeout_seconds: Optional[float] = None,
        exploratory_row_limit: Optional[int] = None,
        result_row_limit: Optional[int] = None,
        max_text_replies: Optional[int] = None,
        history_token_budget: Optional[int] = None,
        keep_recent_messages: Optional[int] = None,
    ):
        self.model = model
        self.datastore = datastore
        self.validator = validator or SqlValidator(datastore)
        self.fuzzy = fuzzy or FuzzySearchService(datastore)
        self.schema = schema or SchemaSnapshotService(datastore)
        self.audit = audit
        self.max_iterations = max_iterations or settings.agent_max_iterations
        self.turn_timeout_seconds = turn_timeout_seconds or settings.agent_turn_timeout_seconds
        self.tool_timeout_seconds = tool_timeout_seconds or settings.agent_tool_timeout_seconds
        self.exploratory_row_limit = (
            exploratory_row_limit or settings.agent_exploratory_row_limit
        )
        self.result_row_limit = result_row_limit or settings.agent_result_row_limit
        self.max_text_replies = max_text_replies or settings.agent_max_text_replies
        self.history_token_budget = (
            history_token_budget or settings.agent_history_token_budget
        )
        self.keep_recent_messages = (
            keep_recent_messages or settings.agent_keep_recent_messages
        )
        self.tool_definitions = build_tool_definitions(
            search_limit=self.fuzzy.default_limit,
            search_max_limit=self.fuzzy.max_limit,
            similarity_threshold=self.fuzzy.default_threshold,
            exploratory_row_limit=self.exploratory_row_limit,
        )

    @property
    def statement_timeout_ms(self) -> int:
        return int(self.tool_timeout_seconds * 1000)

    async def run_turn(
        self,
        *,
        session_id: str,
        user_text: str,
        emit: EventSink,
        history: Optional[list[dict[str, Any]]] = None,
        patient_scope: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> TurnResult:
        """Answer one user message.

        Args:
            session_id: Owning session (for logs and the audit trail)
            user_text: The user's question
            emit: Callback receiving every outbound event in order
            history: Prior conversation messages (not modified)
            patient_scope: Patient id every query must be restricted to
            message_id: Id for the assistant message; generated when omitted

        Returns:
            TurnResult with the terminal state and the messages to persist
        """
        turn = Turn(message_id=message_id or str(uuid.uuid4()), user_text=user_text)
        run = _TurnRun(
            session_id=session_id,
            turn=turn,
            emit=emit,
            patient_scope=patient_scope,
            history=list(history or []),
        )
        run.add(user_message(user_text))
        emit(MessageStartEvent(message_id=turn.message_id))
        emit(
            StatusEvent(
                message_id=turn.message_id,
                status="thinking",
                message="Working out how to answer your question",
            )
        )

        error: Optional[AgentError] = None
        try:
            async with asyncio.timeout(self.turn_timeout_seconds):
                run.system_prompt = await self._build_system_prompt(patient_scope)
                state = await self._loop(run)
        except TimeoutError:
            state = TurnState.TIMEOUT
            error = WallClockTimeout(
                f"Turn exceeded {self.turn_timeout_seconds:g}s wall-clock limit."
            )
        except IterationLimitExceeded as exc:
            state, error = TurnState.ITERATION_LIMIT, exc
        except AgentError as exc:
            state, error = TurnState.FATAL_ERROR, exc

        run.state = state
        if error is not None:
            user_facing = (
                SIMPLIFY_MESSAGE
                if state in (TurnState.TIMEOUT, TurnState.ITERATION_LIMIT)
                or isinstance(error, ToolExecutionError)
                else FAILURE_MESSAGE
            )
            emit(ErrorEvent(message_id=turn.message_id, code=error.code, message=user_facing))
            turn.finalize(TurnStatus.ERRORED)
            messages = [user_message(user_text), assistant_message(user_facing)]
            logger.warning(
                "Turn %s ended state=%s code=%s iterations=%d detail=%s",
                turn.message_id,
                state.value,
                error.code,
                run.iterations,
                error.message,
            )
        else:
            turn.finalize(TurnStatus.COMPLETED)
            messages = run.new_messages
            logger.info(
                "Turn %s ended state=%s iterations=%d tools=%d",
                turn.message_id,
                state.value,
                run.iterations,
                len(turn.tool_invocations),
            )
        emit(MessageEndEvent(message_id=turn.message_id))
        self._count(f"turn_state:{state.value}")

        return TurnResult(
            turn=turn,
            state=state,
            messages=messages,
            iterations=run.iterations,
            validated_query=run.validated_query,
            error=error,
        )

    async def _build_system_prompt(self, patient_scope: Optional[str]) -> str:
        snapshot = await self.schema.get_snapshot()
        patient = (
            await self.schema.get_patient_context(patient_scope) if patient_scope else None
        )
        return build_system_prompt(
            snapshot.to_prompt(),
            max_iterations=self.max_iterations,
            exploratory_limit=self.exploratory_row_limit,
            result_limit=self.result_row_limit,
            patient_scope=patient_scope,
            patient=patient,
        )

    async def _loop(self, run: _TurnRun) -> TurnState:
        while True:
            if run.iterations >= self.max_iterations:
                raise IterationLimitExceeded(
                    f"No final query after {self.max_iterations} iterations."
                )
            run.state = TurnState.AWAITING_MODEL
            run.iterations += 1
            messages = prune_history(
                run.conversation(),
                token_budget=self.history_token_budget,
                keep_recent=self.keep_recent_messages,
            )
            reply = await self.model.complete(messages, self.tool_definitions)

            if reply.tool_call is None:
                text = reply.text.strip()
                if not text:
                    return TurnState.DONE
                self._emit_text(run, text)
                run.add(assistant_message(text))
                run.text_replies += 1
                if run.text_replies >= self.max_text_replies:
                    return TurnState.DONE
                run.transient.append({"role": "system", "content": FINALIZE_NUDGE})
                continue

            run.text_replies = 0
            if reply.text.strip():
                self._emit_text(run, reply.text.strip())
            call = reply.tool_call
            run.add(assistant_message(reply.text.strip(), call))

            if call.name == FINALIZE_QUERY:
                run.state = TurnState.FINALIZE_REQUESTED
                if await self._finalize(run, call):
                    return TurnState.DONE
            else:
                run.state = TurnState.TOOL_REQUESTED
                await self._run_tool(run, call)

    def _emit_text(self, run: _TurnRun, text: str) -> None:
        run.turn.append_text(text)
        run.emit(TextEvent(message_id=run.message_id, content=text))

    def _parse_arguments(self, run: _TurnRun, call: ToolCall) -> Optional[Any]:
        try:
            return parse_tool_arguments(call.name, call.arguments)
        except ToolArgumentError as exc:
            logger.info("Tool argument error tool=%s error=%s", call.name, exc)
            run.emit(
                ToolStartEvent(
                    message_id=run.message_id, tool=call.name, iteration=run.iterations
                )
            )
            run.emit(
                ToolCompleteEvent(
                    message_id=run.message_id,
                    tool=call.name,
                    iteration=run.iterations,
                    duration_ms=0,
                    error=str(exc),
                )
            )
            run.turn.record(
                ToolInvocation(run.iterations, call.name, {}, error=str(exc))
            )
            run.add(tool_message(call.id, json.dumps({"error": str(exc)})))
            return None

    async def _run_tool(self, run: _TurnRun, call: ToolCall) -> None:
        arguments = self._parse_arguments(run, call)
        if arguments is None:
            return

        run.state = TurnState.EXECUTING_TOOL
        params = arguments.model_dump(exclude_none=True)
        invocation = ToolInvocation(run.iterations, call.name, params)
        run.emit(
            ToolStartEvent(
                message_id=run.message_id,
                tool=call.name,
                params=params,
                iteration=run.iterations,
            )
        )
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.tool_timeout_seconds):
                observation = await self._dispatch(run, call.name, arguments)
        except TimeoutError:
            error = ToolExecutionError(
                call.name, f"{call.name} timed out after {self.tool_timeout_seconds:g}s"
            )
            self._tool_failed(run, call, invocation, error, started)
            return
        except ToolExecutionError as exc:
            self._tool_failed(run, call, invocation, exc, started)
            return

        run.tool_failures.pop(call.name, None)
        invocation.result = observation
        invocation.duration_ms = int((time.perf_counter() - started) * 1000)
        run.turn.record(invocation)
        run.emit(
            ToolCompleteEvent(
                message_id=run.message_id,
                tool=call.name,
                iteration=run.iterations,
                duration_ms=invocation.duration_ms,
            )
        )
        run.add(tool_message(call.id, observation))

    async def _dispatch(self, run: _TurnRun, tool: str, arguments: Any) -> str:
        if tool in (SEARCH_PARAMETER_NAMES, SEARCH_ANALYTE_NAMES):
            return await self._search(tool, arguments)
        if tool == RUN_EXPLORATORY_QUERY:
            return await self._explore(run, arguments)
        raise ToolExecutionError(tool, f"No executor for tool '{tool}'")

    async def _search(self, tool: str, arguments: SearchArguments) -> str:
        search = (
            self.fuzzy.search_parameter_names
            if tool == SEARCH_PARAMETER_NAMES
            else self.fuzzy.search_analyte_names
        )
        matches = await search(arguments.term, arguments.limit, arguments.threshold)
        return json.dumps(
            {
                "term": arguments.term,
                "threshold": self.fuzzy.resolve_threshold(arguments.threshold),
                "matches_found": len(matches),
                "matches": [match.to_dict() for match in matches],
            },
            ensure_ascii=False,
        )

    async def _explore(self, run: _TurnRun, arguments: ExploratoryQueryArguments) -> str:
        validated = await self.validator.validate(
            arguments.sql, self.exploratory_row_limit, run.patient_scope
        )
        if not validated.accepted:
            self._count_findings(validated)
            return validated.to_observation()
        try:
            result = await self.datastore.fetch_rows(
                validated.sanitized_sql, timeout_ms=self.statement_timeout_ms
            )
        except DatastoreError as exc:
            raise ToolExecutionError(
                RUN_EXPLORATORY_QUERY, f"Query failed: {exc.message}"
            ) from exc
        return json.dumps(
            {
                "sql": validated.sanitized_sql,
                "row_limit": validated.applied_limit,
                **result.to_dict(),
            },
            ensure_ascii=False,
            default=str,
        )

    async def _finalize(self, run: _TurnRun, call: ToolCall) -> bool:
        """Validate and execute the final query. Returns True when the turn is done."""
        arguments: Optional[FinalizeQueryArguments] = self._parse_arguments(run, call)
        if arguments is None:
            return False

        params = arguments.model_dump(exclude_none=True)
        invocation = ToolInvocation(run.iterations, call.name, params)
        run.emit(
            ToolStartEvent(
                message_id=run.message_id,
                tool=call.name,
                params=params,
                iteration=run.iterations,
            )
        )
        run.state = TurnState.VALIDATING
        run.emit(
            StatusEvent(
                message_id=run.message_id,
                status="validating",
                message="Checking the query before running it",
            )
        )
        run.validated_query = None
        validated: Optional[ValidatedQuery] = None
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.tool_timeout_seconds):
                validated = await self.validator.validate(
                    arguments.sql, self.result_row_limit, run.patient_scope
                )
                run.validated_query = validated
                validated.raise_for_findings()
                result = await self.datastore.fetch_rows(
                    validated.sanitized_sql, timeout_ms=self.statement_timeout_ms
                )
        except ValidationRejected as exc:
            self._count_findings(validated)
            await self._audit(run, "rejected", validated, {"codes": validated.codes})
            invocation.error = str(exc)
            invocation.duration_ms = int((time.perf_counter() - started) * 1000)
            run.turn.record(invocation)
            run.emit(
                ToolCompleteEvent(
                    message_id=run.message_id,
                    tool=call.name,
                    iteration=run.iterations,
                    duration_ms=invocation.duration_ms,
                    error=str(exc),
                )
            )
            run.emit(
                StatusEvent(
                    message_id=run.message_id,
                    status="retrying",
                    message="The query needs changes; asking for a corrected version",
                )
            )
            run.add(tool_message(call.id, validated.to_observation()))
            return False
        except TimeoutError:
            error = ToolExecutionError(
                call.name, f"Final query timed out after {self.tool_timeout_seconds:g}s"
            )
            await self._audit(run, "failed", validated, {"error": error.message})
            self._tool_failed(run, call, invocation, error, started)
            return False
        except DatastoreError as exc:
            error = ToolExecutionError(call.name, f"Final query failed: {exc.message}")
            await self._audit(run, "failed", validated, {"error": exc.message})
            self._tool_failed(run, call, invocation, error, started)
            return False

        await self._audit(
            run,
            "accepted",
            validated,
            {"row_count": result.row_count, "display": arguments.display},
        )
        invocation.duration_ms = int((time.perf_counter() - started) * 1000)
        invocation.result = {"row_count": result.row_count}
        run.turn.record(invocation)
        run.emit(
            ToolCompleteEvent(
                message_id=run.message_id,
                tool=call.name,
                iteration=run.iterations,
                duration_ms=invocation.duration_ms,
            )
        )
        title = arguments.title or "Results"
        observation: dict[str, Any] = {
            "status": "executed",
            "sql": validated.sanitized_sql,
            "row_count": result.row_count,
            "columns": result.columns,
            "preview": result.rows[:5],
        }
        if arguments.display == "plot":
            plot_rows = shape_plot_rows(result.rows)
            if len(plot_rows) < result.row_count:
                logger.info(
                    "Plot dropped rows without usable t/y dropped=%d kept=%d",
                    result.row_count - len(plot_rows),
                    len(plot_rows),
                )
            observation["plotted_rows"] = len(plot_rows)
            run.emit(
                PlotResultEvent(
                    message_id=run.message_id,
                    plot_title=title,
                    rows=plot_rows,
                    columns=result.columns,
                    explanation=arguments.explanation or None,
                    sql=validated.sanitized_sql,
                )
            )
        else:
            run.emit(
                TableResultEvent(
                    message_id=run.message_id,
                    table_title=title,
                    rows=result.rows,
                    columns=result.columns,
                    explanation=arguments.explanation or None,
                    sql=validated.sanitized_sql,
                )
            )
        run.add(
            tool_message(
                call.id,
                json.dumps(observation, ensure_ascii=False, default=str),
            )
        )
        return True

    def _tool_failed(
        self,
        run: _TurnRun,
        call: ToolCall,
        invocation: ToolInvocation,
        error: ToolExecutionError,
        started: float,
    ) -> None:
        """Report a tool failure; the second consecutive failure of a tool is fatal."""
        invocation.error = error.message
        invocation.duration_ms = int((time.perf_counter() - started) * 1000)
        run.turn.record(invocation)
        run.tool_failures[call.name] += 1
        self._count(f"tool_failure:{call.name}")
        logger.warning(
            "Tool failed tool=%s attempt=%d error=%s",
            call.name,
            run.tool_failures[call.name],
            error.message,
        )
        run.emit(
            ToolCompleteEvent(
                message_id=run.message_id,
                tool=call.name,
                iteration=run.iterations,
                duration_ms=invocation.duration_ms,
                error=error.message,
            )
        )
        if run.tool_failures[call.name] >= 2:
            raise error
        run.add(
            tool_message(
                call.id,
                json.dumps(
                    {
                        "error": error.message,
                        "hint": "The tool failed. Adjust the request; a second failure ends the turn.",
                    },
                    ensure_ascii=False,
                ),
            )
        )

    async def _audit(
        self,
        run: _TurnRun,
        status: str,
        validated: Optional[ValidatedQuery],
        metadata: dict[str, Any],
    ) -> None:
        if self.audit is None:
            return
        await self.audit.record(
            AuditEntry(
                status=status,
                session_id=run.session_id,
                question=run.turn.user_text,
                sql=(validated.sanitized_sql or validated.raw_sql) if validated else None,
                metadata={
                    "message_id": run.message_id,
                    "iteration": run.iterations,
                    "applied_limit": validated.applied_limit if validated else None,
                    **metadata,
                },
            )
        )

    def _count_findings(self, validated: ValidatedQuery) -> None:
        for code in validated.codes:
            self._count(f"validation:{code}")

    def _count(self, event: str) -> None:
        self._global_counters[event] += 1
