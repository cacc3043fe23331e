"""Typed settings for localcal and the layered loader that builds them.

Sources, lowest precedence first:

1. YAML file (``--config`` or ``LOCALCAL_CONFIG``)
2. environment variables ``LOCALCAL__<section>__<key>``
3. overrides passed by the CLI

Environment example::

  LOCALCAL__state__db_path=/data/localcal.sqlite
  LOCALCAL__sync__window_days=90
  LOCALCAL__sync__max_workers=4
  LOCALCAL__google__client_id=1234.apps.googleusercontent.com
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

__all__ = [
    "AppConfig",
    "GoogleConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "StateConfig",
    "SyncConfig",
    "load_config",
    "merge_dicts",
    "read_env_config",
]

ENV_PREFIX = "LOCALCAL__"
CONFIG_PATH_ENV = "LOCALCAL_CONFIG"

_CONFIG_DIRS = (
    Path.home(),
    Path("/data"),
    Path("/etc/localcal"),
    Path("/opt/localcal"),
    Path("/tmp"),
    Path("/var/tmp"),
)


def _google_client_json(credentials_file: str | None) -> dict[str, Any] | None:
    """Google OAuth client JSON from GOOGLE_CREDENTIALS_JSON, GOOGLE_CREDENTIALS_FILE or config."""
    inline = os.getenv("GOOGLE_CREDENTIALS_JSON")
    if inline:
        try:
            return json.loads(inline)
        except json.JSONDecodeError as exc:
            raise ConfigError("GOOGLE_CREDENTIALS_JSON is not valid JSON") from exc

    location = os.getenv("GOOGLE_CREDENTIALS_FILE") or credentials_file
    if not location:
        return None
    path = Path(location)
    if not path.is_file():
        raise ConfigError(f"Google credentials file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Google credentials file is not valid JSON: {path}") from exc


class GoogleConfig(BaseModel):
    """App-level OAuth client; refresh tokens live on each connection."""

    credentials_file: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    token_uri: str = "https://oauth2.googleapis.com/token"
    default_calendar_id: str = "primary"

    def client_config(self) -> dict[str, str | None]:
        explicit = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "token_uri": self.token_uri,
        }
        if self.client_id and self.client_secret:
            return explicit

        payload = _google_client_json(self.credentials_file)
        if not payload:
            return explicit
        # Console downloads wrap the client in "installed" or "web"
        client = payload.get("installed") or payload.get("web") or payload
        return {
            "client_id": self.client_id or client.get("client_id"),
            "client_secret": self.client_secret or client.get("client_secret"),
            "token_uri": client.get("token_uri") or self.token_uri,
        }


class SyncConfig(BaseModel):
    window_days: int = Field(90, ge=1, le=730)
    # --due selects connections not synced within this many minutes
    interval_minutes: int = Field(30, ge=5, le=1440)
    max_workers: int = Field(4, ge=1, le=16)
    request_timeout_sec: float = Field(30.0, gt=0, le=300)
    # 1 leaves retrying to the next scheduled run
    http_attempts: int = Field(1, ge=1, le=5)
    backoff_initial_sec: float = Field(1.0, gt=0, le=60)
    dry_run: bool = False


class StateConfig(BaseModel):
    db_path: str = "/data/localcal.sqlite"


class LoggingConfig(BaseModel):
    # "json" would shadow BaseModel.json, hence the alias
    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    as_json: bool = Field(True, alias="json")

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = (value or "INFO").upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"unsupported logging.level {value!r}")
        return level


class RuntimeConfig(BaseModel):
    lock_path: str = "/tmp/localcal.lock"


class AppConfig(BaseModel):
    google: GoogleConfig = Field(default_factory=GoogleConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


_TRUTHY = frozenset({"1", "true", "yes", "on", "y", "t"})
_FALSY = frozenset({"0", "false", "no", "off", "n", "f"})
_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?\d+\.\d*")


def _coerce_env(raw: str) -> Any:
    """Turn an environment string into bool, int, float, list or str."""
    text = raw.strip()
    folded = text.lower()
    if folded in _TRUTHY:
        return True
    if folded in _FALSY:
        return False
    if _INT_RE.fullmatch(text):
        return int(text)
    if _FLOAT_RE.fullmatch(text):
        return float(text)
    if "," in text:
        return [item.strip() for item in text.split(",") if item.strip()]
    return text


def merge_dicts(base: MutableMapping[str, Any], override: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively fold `override` into `base` in place; non-mapping values replace."""
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merge_dicts(current, value)
        else:
            base[key] = value
    return base


def _read_yaml(path: Path) -> dict[str, Any]:
    resolved = path.resolve()
    roots = (*_CONFIG_DIRS, Path.cwd())
    if not any(resolved.is_relative_to(root.resolve()) for root in roots):
        raise ConfigError(f"Config file {resolved} is outside allowed directories")
    if not resolved.exists():
        return {}
    try:
        data = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {resolved} is not valid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {resolved} must contain a mapping")
    return data


def read_env_config(prefix: str = ENV_PREFIX, delimiter: str = "__") -> dict[str, Any]:
    """Nested settings from ``<prefix><section><delimiter><key>`` variables."""
    tree: dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(prefix):
            continue
        *sections, leaf = name[len(prefix):].split(delimiter)
        node = tree
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = _coerce_env(raw)
    return tree


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Merge file, environment and CLI settings and validate them.

    Raises ConfigError for unreadable or invalid settings.
    """
    merged: dict[str, Any] = {}
    location = file_path or os.getenv(CONFIG_PATH_ENV)
    if location:
        merge_dicts(merged, _read_yaml(Path(location)))
    merge_dicts(merged, read_env_config())
    merge_dicts(merged, cli_overrides or {})

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
