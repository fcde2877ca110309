"""Client-side chat session state.

``ChatSessionStore`` owns everything the chat widget knows about the current
visitor: the durable session id, the ordered message log, hand-off status and
contact details.  The store is shared between Gradio handler threads and the
polling timer thread, so every read and write goes through one ``RLock``.

Messages arrive through two streams.  Local appends (user turns, assistant
replies, confirmations) are produced by this process; admin messages are
polled from the persistence gateway.  ``MessageLog`` keeps both streams and
exposes their id-deduplicated union in arrival order, so a poll that races an
in-flight completion can never drop or duplicate a message.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from . import config
from .local_storage import LocalStorage

SESSION_ID_KEY = "kiwa_chat_session_id"
MESSAGES_KEY = "kiwa_chat_messages"
HANDOFF_KEY = "kiwa_chat_handoff"

ROLES = ("user", "assistant", "admin")
STATUS_ACTIVE = "active"
STATUS_HANDOFF_REQUESTED = "handoff_requested"
CONTACT_METHODS = ("email", "whatsapp", "continue_chat")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_STRIP_RE = re.compile(r"[\s\-().]")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id(now: Optional[datetime] = None) -> str:
    moment = now or utcnow()
    return f"{int(moment.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    content: str
    timestamp: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        role = str(data.get("role") or "")
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        message_id = data.get("id")
        if not message_id:
            raise ValueError("Message is missing an id")
        return cls(
            id=str(message_id),
            role=role,
            content=str(data.get("content") or ""),
            timestamp=str(data.get("timestamp") or utcnow().isoformat()),
        )


@dataclass(frozen=True)
class ContactInfo:
    email: str = ""
    whatsapp: str = ""
    preferred_contact: str = "email"

    def validate(self) -> Dict[str, str]:
        """Return ``{field: error}`` for every problem; empty when valid."""

        errors: Dict[str, str] = {}
        method = self.preferred_contact
        if method not in CONTACT_METHODS:
            errors["preferred_contact"] = "Choose how you would like to be contacted."
            return errors
        if method == "email":
            email = self.email.strip()
            if not email:
                errors["email"] = "Email is required."
            elif not _EMAIL_RE.match(email):
                errors["email"] = "Enter a valid email address."
        elif method == "whatsapp":
            number = _PHONE_STRIP_RE.sub("", self.whatsapp.strip())
            if not number:
                errors["whatsapp"] = "WhatsApp number is required."
            elif not re.fullmatch(r"\+?\d{7,15}", number):
                errors["whatsapp"] = "Enter a valid WhatsApp number."
        return errors

    def to_dict(self) -> Dict[str, str]:
        payload = {"preferredContact": self.preferred_contact}
        if self.email.strip():
            payload["email"] = self.email.strip()
        if self.whatsapp.strip():
            payload["whatsapp"] = self.whatsapp.strip()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContactInfo":
        return cls(
            email=str(data.get("email") or ""),
            whatsapp=str(data.get("whatsapp") or ""),
            preferred_contact=str(data.get("preferredContact") or data.get("preferred_contact") or "email"),
        )


def confirmation_message(contact: ContactInfo) -> str:
    if contact.preferred_contact == "whatsapp":
        return (
            f"Thank you! The KiWA Labs team will reach out to you on WhatsApp at "
            f"{contact.whatsapp.strip()} shortly."
        )
    if contact.preferred_contact == "continue_chat":
        return (
            "Thank you! A member of the KiWA Labs team will join this chat shortly. "
            "Feel free to keep typing here and they will see your messages."
        )
    return f"Thank you! The KiWA Labs team will email you at {contact.email.strip()} shortly."


class MessageLog:
    """Two append-only message streams exposed as one ordered, deduplicated view."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._local: List[Message] = []
        self._remote: List[Message] = []
        self._view: List[Message] = []
        self._ids: set[str] = set()
        for message in messages:
            self.append_local(message)

    def __len__(self) -> int:
        return len(self._view)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    @property
    def messages(self) -> List[Message]:
        return list(self._view)

    @property
    def local_stream(self) -> List[Message]:
        return list(self._local)

    @property
    def remote_stream(self) -> List[Message]:
        return list(self._remote)

    def append_local(self, message: Message) -> bool:
        if message.id in self._ids:
            return False
        self._local.append(message)
        self._view.append(message)
        self._ids.add(message.id)
        return True

    def merge_remote(self, batch: Iterable[Message]) -> List[Message]:
        added: List[Message] = []
        for message in batch:
            if message.id in self._ids:
                continue
            self._remote.append(message)
            self._view.append(message)
            self._ids.add(message.id)
            added.append(message)
        return added


Saver = Callable[[Dict[str, Any], bool], Any]


class ChatSessionStore:
    """Session identity, message log and hand-off state for one browser."""

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        *,
        saver: Optional[Saver] = None,
        clock: Callable[[], datetime] = utcnow,
        welcome_message: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.storage = storage or LocalStorage()
        self._saver = saver
        self._clock = clock
        self._welcome = welcome_message or config.WELCOME_MESSAGE
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()

        self.session_id: Optional[str] = None
        self._log = MessageLog()
        self.status: Optional[str] = None
        self.contact_info: Optional[ContactInfo] = None
        self.is_waiting_for_human = False
        self.handoff_offered = False
        self.context_summary = ""
        self.last_updated: Optional[datetime] = None
        self.cleared_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _new_message(self, role: str, content: str) -> Message:
        now = self._clock()
        return Message(id=new_message_id(now), role=role, content=content, timestamp=now.isoformat())

    def _seed_log(self) -> MessageLog:
        return MessageLog([self._new_message("assistant", self._welcome)])

    def _load_messages(self) -> Optional[List[Message]]:
        """Stored messages, or ``None`` when nothing is stored.

        Raises ``ValueError`` when the stored log cannot be read.
        """

        raw = self.storage.get_item(MESSAGES_KEY)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            if not isinstance(payload, list):
                raise ValueError("expected a list of messages")
            messages = [Message.from_dict(item) for item in payload]
        except (TypeError, AttributeError) as exc:
            raise ValueError(str(exc)) from exc
        return messages or None

    def _load_handoff_state(self) -> None:
        raw = self.storage.get_item(HANDOFF_KEY)
        if not raw:
            return
        try:
            state = json.loads(raw)
            if not isinstance(state, dict):
                raise ValueError("expected an object")
            contact = state.get("contactInfo")
            self.contact_info = ContactInfo.from_dict(contact) if isinstance(contact, dict) else None
        except (ValueError, TypeError) as exc:
            self._logger.warning("Discarding corrupt stored hand-off state: %s", exc)
            return
        self.status = state.get("status") or None
        self.is_waiting_for_human = bool(state.get("waitingForHuman"))
        self.handoff_offered = bool(state.get("handoffOffered"))
        self.context_summary = str(state.get("contextSummary") or "")
        self.cleared_at = _parse_timestamp(state.get("clearedAt"))

    def _write_local(self) -> None:
        self.storage.set_item(MESSAGES_KEY, json.dumps([m.to_dict() for m in self._log.messages]))
        self.storage.set_item(
            HANDOFF_KEY,
            json.dumps(
                {
                    "status": self.status,
                    "contactInfo": self.contact_info.to_dict() if self.contact_info else None,
                    "waitingForHuman": self.is_waiting_for_human,
                    "handoffOffered": self.handoff_offered,
                    "contextSummary": self.context_summary,
                    "clearedAt": self.cleared_at.isoformat() if self.cleared_at else None,
                }
            ),
        )

    def _snapshot_locked(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "messages": [m.to_dict() for m in self._log.messages],
            "timestamp": self.last_updated.isoformat() if self.last_updated else None,
            "status": self.status,
            "contactInfo": self.contact_info.to_dict() if self.contact_info else None,
        }

    def _commit(self, *, replace: bool = False) -> None:
        self.last_updated = self._clock()
        self._write_local()
        if self._saver is not None:
            self._saver(self._snapshot_locked(), replace)

    def _predates_clear(self, message: Message) -> bool:
        sent = _parse_timestamp(message.timestamp)
        if sent is None or self.cleared_at is None or sent >= self.cleared_at:
            return False
        self._logger.debug("Dropping admin message %s sent before the chat was cleared", message.id)
        return True

    def _ensure_session(self) -> None:
        if self.session_id is None:
            self.init_session()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def init_session(self) -> str:
        with self._lock:
            session_id = self.storage.get_item(SESSION_ID_KEY)
            if not session_id:
                session_id = uuid.uuid4().hex
                self.storage.set_item(SESSION_ID_KEY, session_id)
            try:
                messages = self._load_messages()
            except ValueError as exc:
                # a reseeded log gets a new session id
                self._logger.warning("Discarding corrupt stored chat messages for %s: %s", session_id, exc)
                session_id = uuid.uuid4().hex
                self.storage.set_item(SESSION_ID_KEY, session_id)
                messages = None
            self.session_id = session_id

            if messages is None:
                self._log = self._seed_log()
                self.cleared_at = None
                self.storage.remove_item(HANDOFF_KEY)
            else:
                self._log = MessageLog(messages)
                self._load_handoff_state()
            self.last_updated = self._clock()
            self._write_local()
            return session_id

    def clear(self) -> None:
        with self._lock:
            self._ensure_session()
            self.cleared_at = self._clock()
            self._log = self._seed_log()
            self.status = None
            self.contact_info = None
            self.is_waiting_for_human = False
            self.handoff_offered = False
            self.context_summary = ""
            self._commit(replace=True)

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------
    def append_user_message(self, text: str) -> Message:
        with self._lock:
            self._ensure_session()
            message = self._new_message("user", text)
            self._log.append_local(message)
            self._commit()
            return message

    def append_assistant_message(self, text: str) -> Message:
        with self._lock:
            self._ensure_session()
            message = self._new_message("assistant", text)
            self._log.append_local(message)
            self._commit()
            return message

    def append_admin_messages(self, batch: Iterable[Union[Message, Mapping[str, Any]]]) -> List[Message]:
        incoming: List[Message] = []
        for item in batch:
            if isinstance(item, Message):
                incoming.append(item)
                continue
            try:
                incoming.append(Message.from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                self._logger.warning("Skipping malformed admin message %r: %s", item, exc)
        with self._lock:
            self._ensure_session()
            if self.cleared_at is not None:
                incoming = [m for m in incoming if not self._predates_clear(m)]
            added = self._log.merge_remote(incoming)
            if added:
                self._commit()
            return added

    # ------------------------------------------------------------------
    # Hand-off and conversation state
    # ------------------------------------------------------------------
    def record_handoff(self, contact: ContactInfo) -> Message:
        with self._lock:
            self._ensure_session()
            self.status = STATUS_HANDOFF_REQUESTED
            self.contact_info = contact
            self.handoff_offered = False
            if contact.preferred_contact == "continue_chat":
                self.is_waiting_for_human = True
            message = self._new_message("assistant", confirmation_message(contact))
            self._log.append_local(message)
            self._commit()
            return message

    def set_context_summary(self, summary: str) -> None:
        with self._lock:
            self.context_summary = summary or ""
            self._write_local()

    def offer_handoff(self) -> None:
        with self._lock:
            if self.status != STATUS_HANDOFF_REQUESTED:
                self.handoff_offered = True
                self._write_local()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def messages(self) -> List[Message]:
        with self._lock:
            return self._log.messages

    @property
    def log(self) -> MessageLog:
        return self._log

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()


__all__ = [
    "CONTACT_METHODS",
    "HANDOFF_KEY",
    "MESSAGES_KEY",
    "SESSION_ID_KEY",
    "STATUS_ACTIVE",
    "STATUS_HANDOFF_REQUESTED",
    "ChatSessionStore",
    "ContactInfo",
    "Message",
    "MessageLog",
    "confirmation_message",
    "new_message_id",
    "utcnow",
]
