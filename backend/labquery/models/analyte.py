from typing import Optional

from sqlalchemy import Float, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labquery.models.base import Base


class Analyte(Base):
    """Canonical analyte (e.g. VITD25) that lab parameters map onto."""

    __tablename__ = "analytes"

    analyte_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_canonical: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    aliases: Mapped[list["AnalyteAlias"]] = relationship(
        back_populates="analyte",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Analyte(code='{self.code}', name='{self.name}')>"


class AnalyteAlias(Base):
    """Alternative (often localized) spelling of an analyte name."""

    __tablename__ = "analyte_aliases"
    __table_args__ = (
        UniqueConstraint("analyte_id", "alias", name="uq_analyte_aliases_analyte_alias"),
        Index(
            "ix_analyte_aliases_alias_trgm",
            "alias",
            postgresql_using="gin",
            postgresql_ops={"alias": "gin_trgm_ops"},
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    analyte_id: Mapped[int] = mapped_column(
        ForeignKey("analytes.analyte_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    alias: Mapped[str] = mapped_column(
        String(200), nullable=False, comment="Lower-cased alias used for matching"
    )
    alias_display: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    lang: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)

    analyte: Mapped["Analyte"] = relationship(back_populates="aliases")

    def __repr__(self) -> str:
        return f"<AnalyteAlias(alias='{self.alias}', lang={self.lang})>"
