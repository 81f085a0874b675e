import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labquery.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from labquery.models.analyte import Analyte
    from labquery.models.patient import Patient


class LabResult(Base, TimestampMixin):
    """One extracted lab measurement."""

    __tablename__ = "lab_results"
    __table_args__ = (
        Index("ix_lab_results_patient_date", "patient_id", "test_date"),
        Index(
            "ix_lab_results_parameter_name_trgm",
            "parameter_name",
            postgresql_using="gin",
            postgresql_ops={"parameter_name": "gin_trgm_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    analyte_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("analytes.analyte_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    parameter_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Name as printed on the source report"
    )
    result_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    numeric_result: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    unit: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_lower: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    reference_upper: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    is_value_out_of_range: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    test_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    patient: Mapped["Patient"] = relationship(back_populates="lab_results")
    analyte: Mapped[Optional["Analyte"]] = relationship()

    def __repr__(self) -> str:
        return f"<LabResult(id={self.id}, parameter='{self.parameter_name}')>"
