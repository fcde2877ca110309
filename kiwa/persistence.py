from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from session_memory import SessionRecord, SessionRepo

from .session_store import Message, new_message_id

MessageLike = Union[Message, Mapping[str, Any]]


def _message_dict(message: MessageLike) -> Dict[str, Any]:
    if isinstance(message, Message):
        return message.to_dict()
    return dict(message)


class PersistenceGateway:
    """Request/response facade over a :class:`SessionRepo`.

    Mirrors the site's HTTP endpoints (save, sessions, poll, send-message) and
    returns the same JSON-shaped dictionaries.  Saves requested by the chat
    widget run on a single background worker so they never block a handler
    and are applied in the order they were submitted.
    """

    def __init__(
        self,
        repo: SessionRepo,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="kiwa-save")
        self._logger = logger or logging.getLogger(__name__)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.repo.close()

    def __enter__(self) -> "PersistenceGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Chat widget endpoints
    # ------------------------------------------------------------------
    def save(
        self,
        session_id: str,
        messages: Iterable[MessageLike],
        timestamp: Optional[str] = None,
        status: Optional[str] = None,
        contact_info: Optional[Mapping[str, Any]] = None,
        replace: bool = False,
    ) -> Dict[str, Any]:
        if not session_id:
            return {"success": False, "error": "Session ID is required"}
        record = SessionRecord(
            session_id=session_id,
            messages=[_message_dict(m) for m in messages],
            last_updated=timestamp or datetime.now(timezone.utc).isoformat(),
            status=status,
            contact_info=dict(contact_info) if contact_info else None,
        )
        try:
            stored = self.repo.save(record, replace=replace)
        except Exception as exc:
            self._logger.warning("Failed to save chat session %s: %s", session_id, exc)
            return {"success": False, "error": str(exc)}
        self._logger.debug("Saved chat session %s (%d messages)", session_id, len(stored.messages))
        return {"success": True}

    def save_in_background(
        self,
        session_id: str,
        messages: Iterable[MessageLike],
        timestamp: Optional[str] = None,
        status: Optional[str] = None,
        contact_info: Optional[Mapping[str, Any]] = None,
        replace: bool = False,
    ) -> Future:
        payload = [_message_dict(m) for m in messages]
        return self._executor.submit(self.save, session_id, payload, timestamp, status, contact_info, replace)

    def save_snapshot(self, snapshot: Mapping[str, Any], replace: bool = False) -> Future:
        """Saver callback for :class:`~kiwa.session_store.ChatSessionStore`."""

        return self.save_in_background(
            snapshot.get("sessionId") or "",
            snapshot.get("messages") or [],
            snapshot.get("timestamp"),
            snapshot.get("status"),
            snapshot.get("contactInfo"),
            replace,
        )

    def poll_admin_messages(self, session_id: str) -> Dict[str, List[Dict[str, Any]]]:
        if not session_id:
            return {"adminMessages": []}
        return {"adminMessages": self.repo.admin_messages(session_id)}

    # ------------------------------------------------------------------
    # Admin endpoints
    # ------------------------------------------------------------------
    def sessions(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"sessions": [record.to_dict() for record in self.repo.list_sessions()]}

    def send_admin_message(self, session_id: str, message: Union[str, MessageLike]) -> Dict[str, Any]:
        if not session_id or not message:
            return {"success": False, "error": "Session ID and message are required"}
        if isinstance(message, str):
            now = datetime.now(timezone.utc)
            payload = {"id": new_message_id(now), "role": "admin", "content": message, "timestamp": now.isoformat()}
        else:
            payload = _message_dict(message)
            payload["role"] = "admin"
        try:
            self.repo.append_message(session_id, payload)
        except Exception as exc:
            self._logger.warning("Failed to deliver admin message to %s: %s", session_id, exc)
            return {"success": False, "error": str(exc)}
        self._logger.info("Admin message %s queued for session %s", payload["id"], session_id)
        return {"success": True, "message": payload}


__all__ = ["PersistenceGateway"]
