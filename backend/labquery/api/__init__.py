"""API routes for LabQuery."""

from labquery.api import chat, health

__all__ = ["chat", "health"]
