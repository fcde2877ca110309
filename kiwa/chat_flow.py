from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import config
from .completion import CompletionError, CompletionResult
from .handoff import apply_handoff_override
from .session_store import ChatSessionStore, ContactInfo, Message


@dataclass(frozen=True)
class HandoffOutcome:
    errors: Dict[str, str] = field(default_factory=dict)
    message: Optional[Message] = None

    @property
    def ok(self) -> bool:
        return not self.errors


class ChatController:
    """One user turn at a time: optimistic append, completion call, hand-off override."""

    def __init__(
        self,
        store: ChatSessionStore,
        completion: Any,
        *,
        apology_message: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.completion = completion
        self.apology_message = apology_message or config.APOLOGY_MESSAGE
        self._logger = logger or logging.getLogger(__name__)

    def send(self, text: str) -> List[Message]:
        """Handle a visitor message and return the messages appended by this turn."""

        text = (text or "").strip()
        if not text:
            return []

        history = self.store.messages
        user_message = self.store.append_user_message(text)
        if self.store.is_waiting_for_human:
            self._logger.debug("Session %s is waiting for a human; skipping completion", self.store.session_id)
            return [user_message]

        try:
            result: CompletionResult = self.completion.complete(
                text,
                history,
                self.store.session_id,
                context_summary=self.store.context_summary or None,
            )
        except CompletionError as exc:
            self._logger.warning(
                "Completion failed for session %s (status=%s): %s", self.store.session_id, exc.status, exc
            )
            return [user_message, self.store.append_assistant_message(self.apology_message)]

        result = apply_handoff_override(text, result)
        if result.context_summary:
            self.store.set_context_summary(result.context_summary)
        reply = self.store.append_assistant_message(result.response)
        if result.ready_for_handoff:
            self.store.offer_handoff()
        return [user_message, reply]

    def submit_handoff(self, contact: ContactInfo) -> HandoffOutcome:
        errors = contact.validate()
        if errors:
            return HandoffOutcome(errors=errors)
        message = self.store.record_handoff(contact)
        self._logger.info(
            "Hand-off requested for session %s via %s", self.store.session_id, contact.preferred_contact
        )
        return HandoffOutcome(message=message)

    def clear(self) -> None:
        self.store.clear()


__all__ = ["ChatController", "HandoffOutcome"]
