"""Root logger setup for localcal: JSON or console lines, secrets redacted.

Events are logged as short kebab-case messages (`connection-synced`) with the
details in `extra=`; both formatters render those extras.

Redaction:
- Email addresses: local-part masked except first/last char: a***z@example.com
- OAuth tokens logged as text ("refresh_token=...", "access token: ..."): partially masked
- Feed URLs: path and query dropped (private ICS feed URLs embed a bearer secret),
  https://p01-caldav.icloud.com/published/2/abc -> https://p01-caldav.icloud.com/***

Notes:
- Do not pass tokens or raw feed URLs in extra fields other than the keys listed in
  RedactingFilter.EXTRA_KEYS_TO_MASK.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, ClassVar

__all__ = ["ConsoleFormatter", "JsonFormatter", "RedactingFilter", "mask_secrets", "setup_logging"]


_EMAIL_RE = re.compile(r"(?P<user>[A-Za-z0-9._%+-]{1,64})@(?P<host>[A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_TOKEN_RE = re.compile(
    r"(?i)(?:(?P<prefix>access|refresh|id|auth)(?P<join>[_\- ]?)|)(?P<key>token)(?P<sep>\s*[:=]?\s*)(?P<val>[A-Za-z0-9\-_\.\/]{10,})"
)
_URL_RE = re.compile(r"(?i)\b(?P<scheme>https?|webcals?)://(?P<host>[^/\s?#]+)(?P<rest>[^\s\"']*)")

_TOKEN_EXTRAS = {"access_token", "refresh_token"}


def _mask_email(match: re.Match[str]) -> str:
    user = match.group("user")
    host = match.group("host")
    masked_user = "*" if len(user) <= 2 else f"{user[0]}***{user[-1]}"
    return f"{masked_user}@{host}"


def _mask_token_value(val: str) -> str:
    if len(val) <= 8:
        return "********"
    return f"{val[:4]}********{val[-4:]}"


def _mask_token(match: re.Match[str]) -> str:
    prefix_txt = match.group("prefix") or ""
    join_txt = match.group("join") or ""
    key_txt = match.group("key")
    full_key = f"{prefix_txt}{join_txt}{key_txt}" if prefix_txt else key_txt
    return f"{full_key}: {_mask_token_value(match.group('val'))}"


def _mask_url(match: re.Match[str]) -> str:
    rest = match.group("rest")
    if not rest or rest == "/":
        return match.group(0)
    return f"{match.group('scheme')}://{match.group('host')}/***"


def mask_secrets(text: str) -> str:
    """Mask emails, token values and URL paths in freeform text."""
    if not text:
        return text
    t = _URL_RE.sub(_mask_url, text)
    t = _EMAIL_RE.sub(_mask_email, t)
    return _TOKEN_RE.sub(_mask_token, t)


class RedactingFilter(logging.Filter):
    """Masks secrets in the message, its args and the extras that may carry them."""

    EXTRA_KEYS_TO_MASK: ClassVar[set[str]] = {
        "email",
        "url",
        "access_token",
        "refresh_token",
        "error",
    }

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(mask_secrets(a) if isinstance(a, str) else a for a in record.args)
        record._redacted = True

        for key in self.EXTRA_KEYS_TO_MASK & record.__dict__.keys():
            value = record.__dict__[key]
            if not isinstance(value, str):
                continue
            record.__dict__[key] = _mask_token_value(value) if key in _TOKEN_EXTRAS else mask_secrets(value)
        return True


_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "_redacted",
}


def _scalar(value: Any) -> Any:
    if isinstance(value, str):
        return mask_secrets(value)
    if isinstance(value, int | float | bool) or value is None:
        return value
    return f"[{type(value).__name__}]"


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    """Caller-supplied `extra=` fields, masked and flattened to JSON-safe values."""
    out: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS:
            continue
        if isinstance(value, Mapping):
            out[key] = {str(k): _scalar(v) for k, v in list(value.items())[:20]}
        else:
            out[key] = _scalar(value)
    return out


def _message(record: logging.LogRecord) -> str:
    msg = record.getMessage()
    return msg if getattr(record, "_redacted", False) else mask_secrets(msg)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, name, msg, exc and extras."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": _message(record),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        payload.update(_extras(record))
        return json.dumps(payload, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines with extras appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        line = f"{self.formatTime(record, self.datefmt)} {record.levelname} {record.name}: {_message(record)}"
        pairs = " ".join(f"{k}={v}" for k, v in _extras(record).items())
        if pairs:
            line = f"{line} {pairs}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", json: bool = False) -> None:
    """Install a single stdout handler on the root logger.

    LOCALCAL_FORCE_JSON_LOGS=1 forces JSON regardless of `json`.
    """
    if os.getenv("LOCALCAL_FORCE_JSON_LOGS", "").lower() in {"1", "true", "yes"}:
        json = True

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.addFilter(RedactingFilter())
    handler.setFormatter(JsonFormatter() if json else ConsoleFormatter())
    root.addHandler(handler)

    for noisy in ("httpx", "httpcore", "googleapiclient", "google"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
