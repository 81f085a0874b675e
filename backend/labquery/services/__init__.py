"""Business logic services for LabQuery.

This package intentionally avoids eager imports to prevent circular import
chains during application startup.
"""

from importlib import import_module

__all__ = [
    # Datastore
    "Datastore",
    "SQLAlchemyDatastore",
    "QueryRows",
    # Agent
    "TurnOrchestrator",
    "SqlValidator",
    "FuzzySearchService",
    # Sessions
    "SessionManager",
    "SessionReaper",
    "InMemorySessionStore",
]

_LAZY_IMPORTS = {
    "Datastore": ("labquery.services.datastore", "Datastore"),
    "SQLAlchemyDatastore": ("labquery.services.datastore", "SQLAlchemyDatastore"),
    "QueryRows": ("labquery.services.datastore", "QueryRows"),
    "TurnOrchestrator": ("labquery.services.agent", "TurnOrchestrator"),
    "SqlValidator": ("labquery.services.agent", "SqlValidator"),
    "FuzzySearchService": ("labquery.services.agent", "FuzzySearchService"),
    "SessionManager": ("labquery.services.sessions", "SessionManager"),
    "SessionReaper": ("labquery.services.sessions", "SessionReaper"),
    "InMemorySessionStore": ("labquery.services.sessions", "InMemorySessionStore"),
}


def __getattr__(name: str):
    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)
