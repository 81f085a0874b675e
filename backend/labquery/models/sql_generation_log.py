"""Audit trail of SQL produced by the agent."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from labquery.models.base import Base


class SqlGenerationLog(Base):
    """One finalize attempt, accepted or rejected."""

    __tablename__ = "sql_generation_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True, comment="accepted, rejected, failed"
    )
    session_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_sql: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sql_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SqlGenerationLog(id={self.id}, status={self.status})>"
