"""Core modules behind the KiWA Labs site: pricing sheet engine and chat session flow."""

from . import config as _config
from .completion import CompletionClient, CompletionError, CompletionResult, parse_completion_text
from .formula import evaluate
from .grid import CellData, GridStore, SelectionRange
from .grid_controller import GridController, InteractionState
from .handoff import apply_handoff_override, detect_handoff_request
from .history import window_history
from .local_storage import LocalStorage
from .session_store import ChatSessionStore, ContactInfo, Message

reload_from_environment = _config.reload_from_environment

__all__ = [
    "CellData",
    "ChatSessionStore",
    "CompletionClient",
    "CompletionError",
    "CompletionResult",
    "ContactInfo",
    "GridController",
    "GridStore",
    "InteractionState",
    "LocalStorage",
    "Message",
    "SelectionRange",
    "apply_handoff_override",
    "detect_handoff_request",
    "evaluate",
    "parse_completion_text",
    "reload_from_environment",
    "window_history",
]


def __getattr__(name: str):
    if hasattr(_config, name):
        return getattr(_config, name)
    raise AttributeError(name)
