from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Union

HISTORY_CAP = 50
HISTORY_HEAD = 5
HISTORY_TAIL = 45
ADMIN_PREFIX = "[KiWA Labs team]"

_EXCERPT_CHARS = 60
_EXCERPT_COUNT = 3


def _field(message: Union[Mapping[str, Any], Any], name: str) -> str:
    if isinstance(message, Mapping):
        return str(message.get(name) or "")
    return str(getattr(message, name, "") or "")


def to_completion_turn(message: Union[Mapping[str, Any], Any]) -> Dict[str, str]:
    role = _field(message, "role")
    content = _field(message, "content")
    if role == "admin":
        return {"role": "assistant", "content": f"{ADMIN_PREFIX} {content}"}
    if role not in ("user", "assistant", "system"):
        role = "user"
    return {"role": role, "content": content}


def _summarise_dropped(turns: List[Dict[str, str]]) -> Dict[str, str]:
    user_turns = [t["content"] for t in turns if t["role"] == "user"]
    other = len(turns) - len(user_turns)
    excerpts = []
    for content in user_turns[:_EXCERPT_COUNT]:
        text = " ".join(content.split())
        if len(text) > _EXCERPT_CHARS:
            text = text[: _EXCERPT_CHARS - 3].rstrip() + "..."
        excerpts.append(f'"{text}"')
    note = (
        f"{len(turns)} earlier messages were omitted "
        f"({len(user_turns)} from the visitor, {other} replies)."
    )
    if excerpts:
        note += " The visitor said, among other things: " + "; ".join(excerpts) + "."
    return {"role": "system", "content": note}


def window_history(
    messages: Iterable[Union[Mapping[str, Any], Any]],
    *,
    cap: int = HISTORY_CAP,
    head: int = HISTORY_HEAD,
    tail: int = HISTORY_TAIL,
) -> List[Dict[str, str]]:
    """Convert chat messages into completion turns, collapsing the middle of long chats.

    Up to ``cap`` turns are sent verbatim.  Beyond that the first ``head`` and
    last ``tail`` turns are kept and everything between them is replaced by a
    single system note describing what was dropped.
    """

    turns = [to_completion_turn(m) for m in messages]
    if len(turns) <= cap:
        return turns
    dropped = turns[head : len(turns) - tail]
    return turns[:head] + [_summarise_dropped(dropped)] + turns[len(turns) - tail :]


__all__ = [
    "ADMIN_PREFIX",
    "HISTORY_CAP",
    "HISTORY_HEAD",
    "HISTORY_TAIL",
    "to_completion_turn",
    "window_history",
]
