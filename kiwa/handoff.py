from __future__ import annotations

from dataclasses import replace
from typing import Tuple, TypeVar

HANDOFF_KEYWORDS: Tuple[str, ...] = (
    "human",
    "admin",
    "support",
    "person",
    "agent",
    "manager",
    "expert",
    "specialist",
    "team",
    "help desk",
    "escalate",
    "talk to",
    "speak to",
    "chat with",
    "connect with",
    "contact",
    "real person",
    "human agent",
    "customer service",
    "technical support",
    "not a bot",
    "live agent",
    "representative",
)

# Phrases that show a reply is already steering the visitor to the team.
_HANDOFF_RESPONSE_MARKERS: Tuple[str, ...] = (
    "kiwa labs team",
    "our team",
    "connect you",
    "hand you over",
    "team member",
    "someone from",
    "human",
    "contact details",
)

HANDOFF_MESSAGE = (
    "Of course. I'll connect you with the KiWA Labs team. "
    "Please share how you'd like to be contacted (email, WhatsApp, or continue here in the chat) "
    "and a member of the team will pick up the conversation."
)

_ResultT = TypeVar("_ResultT")


def detect_handoff_request(text: str) -> bool:
    """Return ``True`` when the visitor is asking for a human."""

    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in HANDOFF_KEYWORDS)


def response_indicates_handoff(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _HANDOFF_RESPONSE_MARKERS)


def apply_handoff_override(user_text: str, result: _ResultT) -> _ResultT:
    """Force a hand-off on ``result`` when the keyword detector fires.

    ``result`` is any dataclass with ``response`` and ``ready_for_handoff``
    fields (normally :class:`kiwa.completion.CompletionResult`).  A ``True``
    from the completion service is always kept.
    """

    if not detect_handoff_request(user_text):
        return result
    response = getattr(result, "response", "")
    if not response_indicates_handoff(response):
        response = HANDOFF_MESSAGE
    return replace(result, response=response, ready_for_handoff=True)


__all__ = [
    "HANDOFF_KEYWORDS",
    "HANDOFF_MESSAGE",
    "apply_handoff_override",
    "detect_handoff_request",
    "response_indicates_handoff",
]
