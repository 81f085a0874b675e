"""Session lifecycle, concurrency guard and event channels."""

from importlib import import_module

__all__ = [
    "AcceptOutcome",
    "AcceptResult",
    "ChatSession",
    "EventChannel",
    "InMemorySessionStore",
    "SessionManager",
    "SessionReaper",
    "SessionStore",
]

_LAZY_IMPORTS = {
    "AcceptOutcome": ("labquery.services.sessions.manager", "AcceptOutcome"),
    "AcceptResult": ("labquery.services.sessions.manager", "AcceptResult"),
    "ChatSession": ("labquery.services.sessions.store", "ChatSession"),
    "EventChannel": ("labquery.services.sessions.channel", "EventChannel"),
    "InMemorySessionStore": ("labquery.services.sessions.store", "InMemorySessionStore"),
    "SessionManager": ("labquery.services.sessions.manager", "SessionManager"),
    "SessionReaper": ("labquery.services.sessions.reaper", "SessionReaper"),
    "SessionStore": ("labquery.services.sessions.store", "SessionStore"),
}


def __getattr__(name: str):
    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)
