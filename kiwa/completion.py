"""Client for the chat-completion endpoint that powers the consultant.

The endpoint is asked to answer with a single JSON object, but models wrap
JSON in prose or break it often enough that the reply goes through an ordered
chain of parsing strategies.  The first strategy that yields a result wins and
the outcome is tagged ``Parsed``; when none does, the raw text is used as the
reply and the outcome is tagged ``Malformed``.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import requests

from . import config
from .history import window_history


class CompletionError(RuntimeError):
    """Raised when the completion endpoint cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status: Optional[int] = None, detail: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail


@dataclass(frozen=True)
class CompletionResult:
    response: str
    context_summary: str = ""
    ready_for_handoff: bool = False


@dataclass(frozen=True)
class Parsed:
    result: CompletionResult
    strategy: str


@dataclass(frozen=True)
class Malformed:
    result: CompletionResult
    raw: str


ParseOutcome = Union[Parsed, Malformed]


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
_RESPONSE_RE = re.compile(r'"response"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_SUMMARY_RE = re.compile(r'"contextSummary"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_READY_RE = re.compile(r'"readyForHandoff"\s*:\s*(true|false)', re.IGNORECASE)
_BRACES_RE = re.compile(r"[{}]")


def extract_balanced_json(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of ``text``, honouring JSON strings."""

    start = text.find("{") if text else -1
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _unescape(fragment: str) -> str:
    try:
        return json.loads(f'"{fragment}"')
    except json.JSONDecodeError:
        return fragment


def _parse_json_block(text: str) -> Optional[CompletionResult]:
    block = extract_balanced_json(text)
    if block is None:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        return None
    summary = data.get("contextSummary")
    return CompletionResult(
        response=data["response"],
        context_summary=summary if isinstance(summary, str) else "",
        ready_for_handoff=_as_bool(data.get("readyForHandoff")),
    )


def _parse_fields_by_regex(text: str) -> Optional[CompletionResult]:
    response = _RESPONSE_RE.search(text or "")
    if response is None:
        return None
    summary = _SUMMARY_RE.search(text)
    ready = _READY_RE.search(text)
    return CompletionResult(
        response=_unescape(response.group(1)),
        context_summary=_unescape(summary.group(1)) if summary else "",
        ready_for_handoff=bool(ready and ready.group(1).lower() == "true"),
    )


PARSE_STRATEGIES: Tuple[Tuple[str, Callable[[str], Optional[CompletionResult]]], ...] = (
    ("json", _parse_json_block),
    ("regex", _parse_fields_by_regex),
)


def parse_completion_text(
    text: str,
    strategies: Sequence[Tuple[str, Callable[[str], Optional[CompletionResult]]]] = PARSE_STRATEGIES,
) -> ParseOutcome:
    raw = text or ""
    for name, strategy in strategies:
        result = strategy(raw)
        if result is not None:
            return Parsed(result=result, strategy=name)
    return Malformed(result=CompletionResult(response=_BRACES_RE.sub("", raw).strip()), raw=raw)


# ----------------------------------------------------------------------
# HTTP client
# ----------------------------------------------------------------------
class CompletionClient:
    def __init__(
        self,
        url: str | None = None,
        *,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        session: Any = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url or config.COMPLETION_URL
        self.api_key = config.COMPLETION_API_KEY if api_key is None else api_key
        self.model = model or config.MODEL
        self.timeout = timeout or config.COMPLETION_TIMEOUT
        self.max_tokens = max_tokens or config.MAX_TOKENS
        self.temperature = config.TEMPERATURE if temperature is None else temperature
        self.system_prompt = system_prompt or config.SYSTEM_PROMPT
        self._logger = logger or logging.getLogger(__name__)
        if session is not None:
            self._session = session
            self._close_session = lambda: None
        else:
            self._session = requests.Session()
            self._close_session = self._session.close

    def close(self) -> None:
        self._close_session()

    def __enter__(self) -> "CompletionClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def build_messages(
        self,
        user_message: str,
        conversation_history: Iterable[Any],
        context_summary: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": self.system_prompt}]
        if context_summary:
            messages.append(
                {"role": "system", "content": f"Previous conversation context: {context_summary}"}
            )
        messages.extend(window_history(conversation_history))
        messages.append({"role": "user", "content": user_message})
        return messages

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def complete(
        self,
        user_message: str,
        conversation_history: Iterable[Any],
        session_id: Optional[str],
        context_summary: Optional[str] = None,
    ) -> CompletionResult:
        payload = {
            "model": self.model,
            "messages": self.build_messages(user_message, conversation_history, context_summary),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        t0 = time.perf_counter()
        try:
            response = self._session.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise CompletionError(
                f"Completion request failed while calling {self.url}: {exc}",
                detail=f"{exc.__class__.__name__}: {exc}",
            ) from exc

        elapsed = time.perf_counter() - t0
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            detail = (getattr(response, "text", "") or getattr(response, "reason", "") or "")[:4000]
            raise CompletionError(
                f"Completion endpoint returned HTTP {response.status_code}",
                status=response.status_code,
                detail=detail,
            ) from exc

        text = self._extract_text(response)
        outcome = parse_completion_text(text)
        if isinstance(outcome, Malformed):
            self._logger.warning(
                "Unstructured completion reply for session %s; using raw text (%d chars)",
                session_id,
                len(outcome.raw),
            )
        else:
            self._logger.debug(
                "Completion for session %s parsed via %s in %.3fs", session_id, outcome.strategy, elapsed
            )
        return outcome.result

    @staticmethod
    def _extract_text(response: Any) -> str:
        try:
            data = response.json()
        except ValueError:
            return str(getattr(response, "text", "") or "")
        if isinstance(data, dict):
            choices = data.get("choices")
            if isinstance(choices, list) and choices and isinstance(choices[0], dict):
                message = choices[0].get("message")
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    return message["content"]
        raise CompletionError(
            "Completion endpoint returned an unexpected payload",
            status=getattr(response, "status_code", None),
            detail=json.dumps(data, ensure_ascii=False)[:4000],
        )


__all__ = [
    "PARSE_STRATEGIES",
    "CompletionClient",
    "CompletionError",
    "CompletionResult",
    "Malformed",
    "ParseOutcome",
    "Parsed",
    "extract_balanced_json",
    "parse_completion_text",
]
