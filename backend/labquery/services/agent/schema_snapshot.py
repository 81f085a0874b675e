"""Schema and patient context injected into the system prompt."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional

from labquery.config import settings
from labquery.services.datastore import Datastore
from labquery.services.errors import DatastoreError
from labquery.utils.cache import CacheKeys, clear_cache, get_cached, set_cached

logger = logging.getLogger("labquery.schema")

COLUMNS_SQL = """
SELECT c.table_schema, c.table_name, c.column_name, c.data_type, c.is_nullable
FROM information_schema.columns c
WHERE c.table_schema = ANY(:schemas)
ORDER BY c.table_schema, c.table_name, c.ordinal_position
"""

FOREIGN_KEYS_SQL = """
SELECT
    tc.table_schema,
    tc.table_name,
    kcu.column_name,
    ccu.table_schema AS foreign_table_schema,
    ccu.table_name AS foreign_table_name,
    ccu.column_name AS foreign_column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
    ON tc.constraint_name = kcu.constraint_name
    AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
    ON ccu.constraint_name = tc.constraint_name
    AND ccu.table_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY'
    AND tc.table_schema = ANY(:schemas)
"""

PATIENT_SQL = """
SELECT full_name, gender, date_of_birth,
       EXTRACT(YEAR FROM AGE(CURRENT_DATE, date_of_birth))::int AS age
FROM patients
WHERE id = CAST(:patient_id AS uuid)
"""

# Audit table is never part of what the model may query.
HIDDEN_TABLES = frozenset({"sql_generation_logs", "alembic_version"})


@dataclass
class TableInfo:
    schema: str
    name: str
    columns: list[dict[str, Any]] = field(default_factory=list)
    foreign_keys: list[dict[str, str]] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass
class SchemaSnapshot:
    """Introspected tables, identified by a hash of their structure."""

    tables: list[TableInfo]
    snapshot_id: str
    fetched_at: datetime

    def to_prompt(self) -> str:
        if not self.tables:
            return "(no tables available)"
        blocks = []
        for table in self.tables:
            columns = ", ".join(
                f"{column['name']} {column['type']}{'' if column['nullable'] else ' NOT NULL'}"
                for column in table.columns
            )
            lines = [f"- {table.name}({columns})"]
            for fk in table.foreign_keys:
                lines.append(
                    f"    {table.name}.{fk['column']} -> {fk['references_table']}.{fk['references_column']}"
                )
            blocks.append("\n".join(lines))
        return "\n".join(blocks)


def build_snapshot(column_rows: list[dict[str, Any]], fk_rows: list[dict[str, Any]]) -> SchemaSnapshot:
    tables: dict[str, TableInfo] = {}
    for row in column_rows:
        if row["table_name"] in HIDDEN_TABLES:
            continue
        key = f"{row['table_schema']}.{row['table_name']}"
        table = tables.setdefault(key, TableInfo(row["table_schema"], row["table_name"]))
        table.columns.append(
            {
                "name": row["column_name"],
                "type": row["data_type"],
                "nullable": row["is_nullable"] == "YES",
            }
        )
    for row in fk_rows:
        table = tables.get(f"{row['table_schema']}.{row['table_name']}")
        if table is None:
            continue
        table.foreign_keys.append(
            {
                "column": row["column_name"],
                "references_table": row["foreign_table_name"],
                "references_column": row["foreign_column_name"],
            }
        )
    ordered = [tables[key] for key in sorted(tables)]
    digest = hashlib.sha256(
        json.dumps([asdict(table) for table in ordered], sort_keys=True).encode("utf-8")
    ).hexdigest()
    return SchemaSnapshot(tables=ordered, snapshot_id=digest, fetched_at=datetime.now(UTC))


class SchemaSnapshotService:
    """Loads the schema snapshot and patient demographics, cached with a TTL."""

    def __init__(
        self,
        datastore: Datastore,
        schemas: Optional[list[str]] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.datastore = datastore
        self.schemas = schemas or list(settings.schema_whitelist)
        self.ttl_seconds = ttl_seconds or settings.schema_cache_ttl_seconds
        self.timeout_ms = int(settings.agent_tool_timeout_seconds * 1000)

    async def get_snapshot(self) -> SchemaSnapshot:
        key = CacheKeys.schema_snapshot(self.schemas)
        cached = await get_cached(key)
        if cached is not None:
            return cached

        params = {"schemas": self.schemas}
        columns = await self.datastore.fetch_rows(
            COLUMNS_SQL, timeout_ms=self.timeout_ms, params=params
        )
        foreign_keys = await self.datastore.fetch_rows(
            FOREIGN_KEYS_SQL, timeout_ms=self.timeout_ms, params=params
        )
        snapshot = build_snapshot(columns.rows, foreign_keys.rows)
        await set_cached(key, snapshot, self.ttl_seconds)
        logger.info(
            "Schema snapshot refreshed tables=%d id=%s",
            len(snapshot.tables),
            snapshot.snapshot_id[:12],
        )
        return snapshot

    async def get_patient_context(self, patient_id: str) -> Optional[dict[str, Any]]:
        """Demographics for the prompt; None when the patient cannot be loaded."""
        key = CacheKeys.patient_context(patient_id)
        cached = await get_cached(key)
        if cached is not None:
            return cached
        try:
            result = await self.datastore.fetch_rows(
                PATIENT_SQL,
                timeout_ms=self.timeout_ms,
                params={"patient_id": patient_id},
            )
        except DatastoreError as exc:
            logger.warning("Could not load patient context for %s: %s", patient_id, exc.message)
            return None
        if not result.rows:
            return None
        context = result.rows[0]
        await set_cached(key, context, self.ttl_seconds)
        return context

    async def invalidate(self) -> None:
        """Drop the cached snapshot and patient contexts, e.g. after a migration."""
        await clear_cache(CacheKeys.schema_snapshot(self.schemas))
        await clear_cache(CacheKeys.patient_context(""))
