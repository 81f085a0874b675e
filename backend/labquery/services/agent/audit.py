"""Audit trail of finalize attempts (table ``sql_generation_logs``)."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from labquery.models import SqlGenerationLog

logger = logging.getLogger("labquery.audit")


def sha256_hex(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class AuditEntry:
    status: str
    session_id: str
    question: str
    sql: Optional[str]
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLog(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...


class DatabaseAuditLog:
    """Writes entries to the database. Failures are logged, never raised."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        try:
            async with self.session_factory() as db:
                db.add(
                    SqlGenerationLog(
                        status=entry.status,
                        session_hash=sha256_hex(entry.session_id),
                        question=entry.question,
                        generated_sql=entry.sql,
                        sql_hash=sha256_hex(entry.sql),
                        metadata_=entry.metadata,
                    )
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write SQL audit entry status=%s", entry.status)


class InMemoryAuditLog:
    """Keeps entries in a list (tests, local runs without a database)."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)
