from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .grid import COLUMNS, GridStore
from .session_store import Message

ADMIN_LABEL = "KiWA Labs team"


def safe_component(
    factory: Callable[..., Any],
    *args: Any,
    optional_keys: Tuple[str, ...] = ("column_widths",),
    **kwargs: Any,
) -> Any:
    """Instantiate a Gradio component, dropping optional kwargs this Gradio release rejects."""

    attempt_kwargs = dict(kwargs)
    while True:
        try:
            return factory(*args, **attempt_kwargs)
        except TypeError as exc:
            message = str(exc)
            dropped = next((key for key in optional_keys if key in attempt_kwargs and f"'{key}'" in message), None)
            if dropped is None:
                raise
            attempt_kwargs.pop(dropped)


def chat_history_for_display(messages: Iterable[Message]) -> List[Dict[str, str]]:
    """Chatbot ``type="messages"`` payload; admin replies render as labelled assistant turns."""

    history: List[Dict[str, str]] = []
    for message in messages:
        if message.role == "admin":
            history.append({"role": "assistant", "content": f"**{ADMIN_LABEL}:** {message.content}"})
        else:
            history.append({"role": message.role, "content": message.content})
    return history


def grid_column_widths(store: GridStore) -> List[str]:
    return [f"{store.column_width(col)}px" for col in COLUMNS]


def selection_label(start: str, end: Optional[str] = None) -> str:
    if not end or end == start:
        return start
    return f"{start}:{end}"


def sessions_table(sessions: Iterable[Mapping[str, Any]]) -> List[List[Any]]:
    """Rows for the admin session list: id, status, contact, message count, last update."""

    rows: List[List[Any]] = []
    for session in sessions:
        contact = session.get("contactInfo") or {}
        reach = contact.get("email") or contact.get("whatsapp") or contact.get("preferredContact") or ""
        rows.append(
            [
                session.get("sessionId", ""),
                session.get("status") or "active",
                reach,
                len(session.get("messages") or []),
                session.get("lastUpdated", ""),
            ]
        )
    return rows


def session_transcript(session: Optional[Mapping[str, Any]]) -> List[Dict[str, str]]:
    if not session:
        return []
    messages = []
    for item in session.get("messages") or []:
        try:
            messages.append(Message.from_dict(item))
        except ValueError:
            continue
    return chat_history_for_display(messages)


__all__ = [
    "ADMIN_LABEL",
    "chat_history_for_display",
    "grid_column_widths",
    "safe_component",
    "selection_label",
    "session_transcript",
    "sessions_table",
]
