"""LabQuery: conversational SQL agent over lab results."""

__version__ = "0.1.0"
