from labquery.models.analyte import Analyte, AnalyteAlias
from labquery.models.base import Base, TimestampMixin
from labquery.models.lab_result import LabResult
from labquery.models.patient import Patient
from labquery.models.sql_generation_log import SqlGenerationLog

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Lab data
    "Patient",
    "Analyte",
    "AnalyteAlias",
    "LabResult",
    # Audit
    "SqlGenerationLog",
]
