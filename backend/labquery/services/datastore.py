"""Datastore adapter used by the agent tools.

Every call pins one pooled connection for exactly one transaction. Settings
that PostgreSQL keeps per connection (``pg_trgm.similarity_threshold``,
``statement_timeout``) are applied with ``set_config(..., true)`` so they
end with the transaction and never leak to the next borrower of the
connection.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from labquery.services.errors import DatastoreError

logger = logging.getLogger("labquery.datastore")

_SET_LOCAL = text("SELECT set_config(:name, :value, true)")


@dataclass
class QueryRows:
    """Rows returned by a read-only query, already JSON-safe."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict[str, Any]:
        return {"columns": self.columns, "rows": self.rows, "row_count": self.row_count}


class Datastore(Protocol):
    async def similarity_search(
        self,
        sql: str,
        params: dict[str, Any],
        *,
        threshold: float,
        timeout_ms: int,
    ) -> list[dict[str, Any]]:
        ...

    async def fetch_rows(
        self,
        sql: str,
        *,
        timeout_ms: int,
        params: Optional[dict[str, Any]] = None,
    ) -> QueryRows:
        ...

    async def explain(self, sql: str, *, timeout_ms: int) -> list[dict[str, Any]]:
        ...


def _engine_message(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).strip()
    return str(exc).strip() or exc.__class__.__name__


async def _set_local(conn: AsyncConnection, name: str, value: Any) -> None:
    await conn.execute(_SET_LOCAL, {"name": name, "value": str(value)})


class SQLAlchemyDatastore:
    """Datastore backed by an async SQLAlchemy engine (asyncpg driver)."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def similarity_search(
        self,
        sql: str,
        params: dict[str, Any],
        *,
        threshold: float,
        timeout_ms: int,
    ) -> list[dict[str, Any]]:
        """Run a trigram query with a transaction-local similarity threshold.

        Args:
            sql: Query using the ``%`` similarity operator and ``:name`` binds
            params: Bind values for ``sql``
            threshold: Value for ``pg_trgm.similarity_threshold``
            timeout_ms: Statement timeout for this transaction

        Returns:
            Result rows as dicts
        """
        try:
            async with self.engine.connect() as conn:
                async with conn.begin():
                    await _set_local(conn, "pg_trgm.similarity_threshold", threshold)
                    await _set_local(conn, "statement_timeout", int(timeout_ms))
                    result = await conn.execute(text(sql), params)
                    rows = [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            logger.warning("Similarity search failed: %s", _engine_message(exc))
            raise DatastoreError(_engine_message(exc)) from exc
        return jsonable_encoder(rows)

    async def fetch_rows(
        self,
        sql: str,
        *,
        timeout_ms: int,
        params: Optional[dict[str, Any]] = None,
    ) -> QueryRows:
        """Execute a query inside a read-only transaction.

        Model-written SQL is sent to the driver as-is (no bind parsing) unless
        ``params`` are given.
        """
        try:
            async with self.engine.connect() as conn:
                async with conn.begin():
                    await conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    await _set_local(conn, "statement_timeout", int(timeout_ms))
                    if params is None:
                        result = await conn.exec_driver_sql(sql)
                    else:
                        result = await conn.execute(text(sql), params)
                    columns = list(result.keys())
                    rows = [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            logger.warning("Read-only query failed: %s", _engine_message(exc))
            raise DatastoreError(_engine_message(exc)) from exc
        return QueryRows(columns=columns, rows=jsonable_encoder(rows))

    async def explain(self, sql: str, *, timeout_ms: int) -> list[dict[str, Any]]:
        """Plan ``sql`` without executing it. The transaction is always rolled back."""
        try:
            async with self.engine.connect() as conn:
                trans = await conn.begin()
                try:
                    await conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    await _set_local(conn, "statement_timeout", int(timeout_ms))
                    result = await conn.exec_driver_sql(f"EXPLAIN (FORMAT JSON) {sql}")
                    raw_plan = result.scalar()
                finally:
                    await trans.rollback()
        except SQLAlchemyError as exc:
            raise DatastoreError(_engine_message(exc)) from exc
        if isinstance(raw_plan, str):
            raw_plan = json.loads(raw_plan)
        return list(raw_plan or [])
