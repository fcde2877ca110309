from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional


def atomic_write(path: Path, data: str) -> None:
    """Write ``data`` to ``path`` through a temp file and ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=str(path.parent), encoding="utf-8") as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = tmp.name
    os.replace(tmp_path, path)


def quarantine_corrupt(path: Path, exc: Exception, logger: logging.Logger, what: str = "file") -> None:
    """Move an unreadable file aside as ``<name>.corrupt-<timestamp>``."""

    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    quarantined = path.with_suffix(path.suffix + f".corrupt-{ts}")
    try:
        shutil.move(str(path), str(quarantined))
        logger.warning("Quarantined corrupt %s %s: %s", what, path, exc)
    except OSError as move_exc:
        logger.error("Failed to quarantine %s: %s", path, move_exc)


class LocalStorage:
    """String key/value store that survives a page reload.

    Without a ``path`` the values only live in memory (the Gradio app mirrors
    them into the browser through ``gr.BrowserState``).  With a ``path`` every
    write is flushed to a JSON file.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        initial: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)
        self._items: Dict[str, str] = self._load()
        if initial:
            self._items.update({str(k): str(v) for k, v in initial.items() if v is not None})

    def _load(self) -> Dict[str, str]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            quarantine_corrupt(self.path, exc, self._logger, "local storage file")
            return {}
        if not isinstance(raw, dict):
            quarantine_corrupt(self.path, ValueError("expected a JSON object"), self._logger, "local storage file")
            return {}
        return {str(k): str(v) for k, v in raw.items() if v is not None}

    def _flush(self) -> None:
        if self.path is None:
            return
        atomic_write(self.path, json.dumps(self._items, ensure_ascii=False, indent=2))

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = str(value)
            self._flush()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._items.pop(key, None) is not None:
                self._flush()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._items)


__all__ = ["LocalStorage", "atomic_write", "quarantine_corrupt"]
