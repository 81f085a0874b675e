import uuid
from datetime import date
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Date, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labquery.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from labquery.models.lab_result import LabResult


class Patient(Base, TimestampMixin):
    """Patient whose lab results can be queried."""

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    lab_results: Mapped[list["LabResult"]] = relationship(
        back_populates="patient",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name='{self.full_name}')>"
