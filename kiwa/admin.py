from __future__ import annotations

import hmac
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from . import config
from .polling import IntervalTimer


class AdminAuthError(PermissionError):
    """Raised when an admin operation is attempted without logging in."""


class AdminConsole:
    """Session list and reply box for the single shared-secret operator.

    The shared secret is a placeholder gate for a small team, not an
    authentication system.  An empty secret disables the console entirely.
    """

    def __init__(
        self,
        gateway: Any,
        secret: Optional[str] = None,
        *,
        refresh_interval: Optional[float] = None,
        timer_factory: Callable[..., IntervalTimer] = IntervalTimer,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.gateway = gateway
        self._secret = config.ADMIN_SECRET if secret is None else secret
        self.refresh_interval = refresh_interval or config.ADMIN_POLL_INTERVAL
        self._timer_factory = timer_factory
        self._timer: Optional[IntervalTimer] = None
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._sessions: List[Dict[str, Any]] = []
        self.authenticated = False

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def authenticate(self, password: str) -> bool:
        if not self.enabled:
            self._logger.warning("Admin login attempted but KIWA_ADMIN_SECRET is not set")
            return False
        ok = hmac.compare_digest((password or "").encode("utf-8"), self._secret.encode("utf-8"))
        if not ok:
            self._logger.info("Rejected admin login attempt")
        self.authenticated = ok
        return ok

    def logout(self) -> None:
        self.stop_auto_refresh()
        self.authenticated = False

    def _require_auth(self) -> None:
        if not self.authenticated:
            raise AdminAuthError("Admin login required")

    def refresh(self) -> List[Dict[str, Any]]:
        self._require_auth()
        sessions = self.gateway.sessions().get("sessions") or []
        with self._lock:
            self._sessions = list(sessions)
        return list(sessions)

    def list_sessions(self, *, refresh: bool = True) -> List[Dict[str, Any]]:
        if refresh:
            return self.refresh()
        self._require_auth()
        with self._lock:
            return list(self._sessions)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        for session in self.list_sessions(refresh=False):
            if session.get("sessionId") == session_id:
                return session
        return None

    def send_message(self, session_id: str, text: str) -> Dict[str, Any]:
        self._require_auth()
        text = (text or "").strip()
        if not session_id or not text:
            return {"success": False, "error": "Session ID and message are required"}
        result = self.gateway.send_admin_message(session_id, text)
        if result.get("success"):
            self.refresh()
        return result

    def _refresh_tick(self) -> None:
        try:
            self.refresh()
        except AdminAuthError:
            self.stop_auto_refresh()
        except Exception as exc:
            self._logger.warning("Admin session refresh failed: %s", exc)

    def start_auto_refresh(self) -> None:
        self._require_auth()
        if self._timer is not None and self._timer.running:
            return
        self._timer = self._timer_factory(self.refresh_interval, self._refresh_tick, name="kiwa-admin-refresh")
        self._timer.start()

    def stop_auto_refresh(self) -> None:
        if self._timer is not None:
            self._timer.stop()
            self._timer = None


__all__ = ["AdminAuthError", "AdminConsole"]
