"""Durable storage for chat sessions.

Two backends share the ``SessionRepo`` interface: ``FsSessionRepo`` keeps one
JSON document per session on disk and ``PgSessionRepo`` keeps one row per
session in PostgreSQL with the message log in a JSONB column.  Both merge
incoming message lists with what is already stored (union by message id), so a
browser that saves before it has polled the latest admin reply never erases
that reply.  Only an explicit ``replace=True`` save (the visitor clearing the
chat) overwrites the stored log.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace as dc_replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from kiwa import config
from kiwa.local_storage import atomic_write, quarantine_corrupt


def _sanitize_id(s: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", s) or "session"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(ts: Optional[Any]) -> datetime:
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts
    if isinstance(ts, (int, float)):
        try:
            return datetime.fromtimestamp(float(ts), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return datetime.fromtimestamp(0, tz=timezone.utc)
    if not ts:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def merge_messages(existing: Iterable[Dict[str, Any]], incoming: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Union of two message lists by ``id``; stored order first, new messages appended."""

    merged: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for message in list(existing) + list(incoming):
        message_id = str(message.get("id") or "")
        if not message_id or message_id in seen:
            continue
        seen.add(message_id)
        merged.append(dict(message))
    return merged


@dataclass
class SessionRecord:
    session_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    last_updated: str = field(default_factory=_now_iso)
    status: Optional[str] = None
    contact_info: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sessionId": self.session_id,
            "messages": [dict(m) for m in self.messages],
            "lastUpdated": self.last_updated,
        }
        if self.status:
            payload["status"] = self.status
        if self.contact_info:
            payload["contactInfo"] = dict(self.contact_info)
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        contact = data.get("contactInfo")
        return cls(
            session_id=str(data.get("sessionId") or ""),
            messages=[dict(m) for m in data.get("messages") or [] if isinstance(m, dict)],
            last_updated=str(data.get("lastUpdated") or _now_iso()),
            status=data.get("status") or None,
            contact_info=dict(contact) if isinstance(contact, dict) else None,
        )

    def admin_messages(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self.messages if m.get("role") == "admin"]


def combine_records(stored: Optional[SessionRecord], incoming: SessionRecord, *, replace: bool) -> SessionRecord:
    """Return the record to persist when ``incoming`` is saved over ``stored``."""

    if stored is None or replace:
        return dc_replace(incoming, messages=merge_messages([], incoming.messages))
    return SessionRecord(
        session_id=incoming.session_id,
        messages=merge_messages(stored.messages, incoming.messages),
        last_updated=max(incoming.last_updated, stored.last_updated, key=_parse_iso),
        status=incoming.status if incoming.status is not None else stored.status,
        contact_info=incoming.contact_info if incoming.contact_info is not None else stored.contact_info,
    )


class SessionRepo(ABC):
    @abstractmethod
    def save(self, record: SessionRecord, *, replace: bool = False) -> SessionRecord:
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> Optional[SessionRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_sessions(self) -> List[SessionRecord]:
        """All sessions, most recently updated first."""
        raise NotImplementedError

    def append_message(self, session_id: str, message: Dict[str, Any]) -> SessionRecord:
        record = SessionRecord(
            session_id=session_id,
            messages=[dict(message)],
            last_updated=str(message.get("timestamp") or _now_iso()),
        )
        return self.save(record)

    def admin_messages(self, session_id: str) -> List[Dict[str, Any]]:
        record = self.get(session_id)
        return record.admin_messages() if record else []

    def close(self) -> None:
        return None


class FsSessionRepo(SessionRepo):
    """Filesystem-backed implementation of the ``SessionRepo`` interface."""

    def __init__(self, base_dir: Optional[Path] = None, *, logger: Optional[logging.Logger] = None):
        resolved = base_dir or (config.DATA_DIR / "sessions")
        self.base_dir = Path(resolved).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def session_path(self, session_id: str) -> Path:
        return self.base_dir / f"{_sanitize_id(session_id)}.json"

    def _load(self, path: Path) -> Optional[SessionRecord]:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("expected a JSON object")
        except ValueError as exc:
            quarantine_corrupt(path, exc, self._logger, "session file")
            return None
        return SessionRecord.from_dict(raw)

    def _write(self, record: SessionRecord) -> None:
        atomic_write(
            self.session_path(record.session_id),
            json.dumps(record.to_dict(), ensure_ascii=False, indent=2),
        )

    # ------------------------------------------------------------------
    # SessionRepo interface
    # ------------------------------------------------------------------
    def save(self, record: SessionRecord, *, replace: bool = False) -> SessionRecord:
        with self._lock:
            stored = self._load(self.session_path(record.session_id))
            combined = combine_records(stored, record, replace=replace)
            self._write(combined)
        return combined

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._load(self.session_path(session_id))

    def list_sessions(self) -> List[SessionRecord]:
        with self._lock:
            try:
                files = [p for p in self.base_dir.glob("*.json") if p.is_file()]
            except OSError:
                files = []
            records = [record for record in (self._load(p) for p in files) if record is not None]
        records.sort(key=lambda r: _parse_iso(r.last_updated), reverse=True)
        return records


class PgSessionRepo(SessionRepo):
    """PostgreSQL-backed implementation of the ``SessionRepo`` interface."""

    _TABLE_NAME = "kiwa_chat_sessions"
    _COLUMNS = "session_id, messages, last_updated, status, contact_info"

    def __init__(
        self,
        dsn: Optional[str],
        *,
        schema: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.dsn = dsn
        self.schema = schema
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._store: Dict[str, SessionRecord] = {}
        self._pool = None
        self._sql = None
        self._dict_row = None

        if not dsn:
            self._logger.warning(
                "KIWA_STORAGE=pg but KIWA_PG_DSN not configured; using in-memory placeholder store."
            )
            return

        from psycopg import sql as pg_sql
        from psycopg.rows import dict_row
        from psycopg_pool import ConnectionPool

        self._pool = ConnectionPool(conninfo=dsn, min_size=1, max_size=5, kwargs={"autocommit": True})
        self._pool.wait()
        self._sql = pg_sql
        self._dict_row = dict_row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _with_connection(self):
        if self._pool is None:
            raise RuntimeError("Postgres connection pool is not initialised")
        return self._pool.connection()

    @contextmanager
    def _cursor(self, conn):
        with conn.cursor(row_factory=self._dict_row) as cur:
            yield cur

    def _prepare_connection(self, conn) -> None:
        if not self.schema or self._sql is None:
            return
        if getattr(conn, "_kiwa_schema_set", False):
            return
        conn.execute(
            self._sql.SQL("SET search_path TO {}, pg_catalog").format(self._sql.Identifier(self.schema))
        )
        setattr(conn, "_kiwa_schema_set", True)

    def _ensure_schema(self) -> None:
        with self._with_connection() as conn:
            if self.schema:
                conn.execute(
                    self._sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(self._sql.Identifier(self.schema))
                )
            self._prepare_connection(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._TABLE_NAME} (
                    session_id TEXT PRIMARY KEY,
                    messages JSONB NOT NULL DEFAULT '[]'::jsonb,
                    last_updated TIMESTAMPTZ NOT NULL,
                    status TEXT NULL,
                    contact_info JSONB NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS {self._TABLE_NAME}_last_updated_idx
                ON {self._TABLE_NAME} (last_updated DESC)
                """
            )

    def _row_to_record(self, row: Dict[str, Any]) -> SessionRecord:
        messages = row.get("messages") or []
        if isinstance(messages, str):
            messages = json.loads(messages)
        contact = row.get("contact_info")
        if isinstance(contact, str):
            contact = json.loads(contact)
        return SessionRecord(
            session_id=str(row["session_id"]),
            messages=[dict(m) for m in messages],
            last_updated=_parse_iso(row.get("last_updated")).isoformat(),
            status=row.get("status") or None,
            contact_info=dict(contact) if isinstance(contact, dict) else None,
        )

    def _select_one(self, conn, session_id: str) -> Optional[SessionRecord]:
        query = f"""
            SELECT {self._COLUMNS}
            FROM {self._TABLE_NAME}
            WHERE session_id = %(session_id)s
        """
        with self._cursor(conn) as cur:
            cur.execute(query, {"session_id": session_id})
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    # ------------------------------------------------------------------
    # SessionRepo interface
    # ------------------------------------------------------------------
    def save(self, record: SessionRecord, *, replace: bool = False) -> SessionRecord:
        if self._pool is None:
            with self._lock:
                combined = combine_records(self._store.get(record.session_id), record, replace=replace)
                self._store[record.session_id] = combined
            return combined

        query = f"""
            INSERT INTO {self._TABLE_NAME} ({self._COLUMNS})
            VALUES (
                %(session_id)s, %(messages)s::jsonb, %(last_updated)s::timestamptz,
                %(status)s, %(contact_info)s::jsonb
            )
            ON CONFLICT (session_id) DO UPDATE SET
                messages = EXCLUDED.messages,
                last_updated = EXCLUDED.last_updated,
                status = EXCLUDED.status,
                contact_info = EXCLUDED.contact_info
            RETURNING {self._COLUMNS}
        """
        with self._lock, self._with_connection() as conn:
            self._prepare_connection(conn)
            combined = combine_records(self._select_one(conn, record.session_id), record, replace=replace)
            payload = {
                "session_id": combined.session_id,
                "messages": json.dumps(combined.messages, ensure_ascii=False),
                "last_updated": _parse_iso(combined.last_updated).isoformat(),
                "status": combined.status,
                "contact_info": json.dumps(combined.contact_info) if combined.contact_info else None,
            }
            with self._cursor(conn) as cur:
                cur.execute(query, payload)
                row = cur.fetchone()
        if row is None:
            raise RuntimeError(f"Upsert of session {record.session_id} returned no row")
        return self._row_to_record(row)

    def get(self, session_id: str) -> Optional[SessionRecord]:
        if self._pool is None:
            with self._lock:
                stored = self._store.get(session_id)
            return dc_replace(stored, messages=list(stored.messages)) if stored else None
        with self._with_connection() as conn:
            self._prepare_connection(conn)
            return self._select_one(conn, session_id)

    def list_sessions(self) -> List[SessionRecord]:
        if self._pool is None:
            with self._lock:
                records = list(self._store.values())
            records.sort(key=lambda r: _parse_iso(r.last_updated), reverse=True)
            return records

        query = f"""
            SELECT {self._COLUMNS}
            FROM {self._TABLE_NAME}
            ORDER BY last_updated DESC
        """
        with self._with_connection() as conn:
            self._prepare_connection(conn)
            with self._cursor(conn) as cur:
                cur.execute(query)
                rows = cur.fetchall()
        return [self._row_to_record(row) for row in rows]

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None


def make_repo(
    *,
    storage: Optional[str] = None,
    base_dir: Optional[Path] = None,
    dsn: Optional[str] = None,
    schema: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> SessionRepo:
    mode = (storage or config.STORAGE).lower()
    log = logger or logging.getLogger(__name__)
    if mode == "pg":
        return PgSessionRepo(dsn or config.PG_DSN, schema=schema or config.PG_SCHEMA, logger=log)
    return FsSessionRepo(base_dir, logger=log)


__all__ = [
    "FsSessionRepo",
    "PgSessionRepo",
    "SessionRecord",
    "SessionRepo",
    "combine_records",
    "make_repo",
    "merge_messages",
]
