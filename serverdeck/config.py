"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ConfigError,
    LogTailConfig,
    PollingConfig,
    RealtimeConfig,
    ServerDeckConfig,
    SessionConfig,
    StorageConfig,
)

CONFIG_FILENAMES = [
    "serverdeck.yaml",
    "serverdeck.yml",
    "serverdeck.json",
]

STORAGE_BACKENDS = ("filesystem", "sqlite")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> ServerDeckConfig:
    """Build a ServerDeckConfig from a raw dict."""
    session_raw = raw.get("session", {})
    session = SessionConfig(
        refresh_buffer_seconds=session_raw.get("refresh_buffer_seconds", 60.0),
        refresh_path=session_raw.get("refresh_path", "/auth/refresh"),
        logout_path=session_raw.get("logout_path", "/auth/logout"),
        login_url=session_raw.get("login_url", "/api/v1/auth/google"),
    )

    realtime_raw = raw.get("realtime", {})
    realtime = RealtimeConfig(
        ws_path=realtime_raw.get("ws_path", raw.get("ws_path", "/ws")),
        reconnect_delay=realtime_raw.get("reconnect_delay", 3.0),
        token_query_param=realtime_raw.get("token_query_param", "token"),
    )

    tail_raw = raw.get("log_tail", {})
    log_tail = LogTailConfig(
        bootstrap_lines=tail_raw.get("bootstrap_lines", 100),
        poll_lines=tail_raw.get("poll_lines", 200),
        max_entries=tail_raw.get("max_entries", 500),
        poll_interval=tail_raw.get("poll_interval", 3.0),
        gap_detection=tail_raw.get("gap_detection", True),
        anchor_lines=tail_raw.get("anchor_lines", 3),
    )

    polling_raw = raw.get("polling", {})
    polling = PollingConfig(
        detail_interval=polling_raw.get("detail_interval", 3.0),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        backend=storage_raw.get("backend", "filesystem"),
        root=storage_raw.get("root", ".serverdeck"),
    )

    return ServerDeckConfig(
        version=str(raw.get("version", "0.1")),
        base_url=raw.get("base_url", "http://127.0.0.1:3001"),
        api_prefix=raw.get("api_prefix", "/api/v1"),
        request_timeout=raw.get("request_timeout", 30.0),
        session=session,
        realtime=realtime,
        log_tail=log_tail,
        polling=polling,
        storage=storage,
    )


def validate_config(config: ServerDeckConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.base_url.startswith(("http://", "https://")):
        errors.append(f"base_url must start with http:// or https:// (got {config.base_url!r})")

    if config.request_timeout <= 0:
        errors.append("request_timeout must be > 0")

    if config.session.refresh_buffer_seconds < 0:
        errors.append("session.refresh_buffer_seconds must be >= 0")

    if config.realtime.reconnect_delay <= 0:
        errors.append("realtime.reconnect_delay must be > 0")

    tail = config.log_tail
    if tail.bootstrap_lines < 1:
        errors.append("log_tail.bootstrap_lines must be >= 1")
    if tail.poll_lines <= tail.bootstrap_lines:
        errors.append(
            f"log_tail.poll_lines ({tail.poll_lines}) must be > "
            f"log_tail.bootstrap_lines ({tail.bootstrap_lines})"
        )
    if tail.max_entries < tail.poll_lines:
        errors.append(
            f"log_tail.max_entries ({tail.max_entries}) must be >= "
            f"log_tail.poll_lines ({tail.poll_lines})"
        )
    if tail.poll_interval <= 0:
        errors.append("log_tail.poll_interval must be > 0")
    if tail.anchor_lines < 1:
        errors.append("log_tail.anchor_lines must be >= 1")

    if config.polling.detail_interval <= 0:
        errors.append("polling.detail_interval must be > 0")

    if config.storage.backend not in STORAGE_BACKENDS:
        errors.append(
            f"storage.backend must be one of {', '.join(STORAGE_BACKENDS)} "
            f"(got {config.storage.backend!r})"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> ServerDeckConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    return _build_config(raw)
