"""Decode push-channel messages into typed ``ServerEvent`` variants."""

from __future__ import annotations

import json
from typing import Any, Callable

from ..types import (
    MalformedEventError,
    MetricsEvent,
    ServerAddedEvent,
    ServerChangedEvent,
    ServerEntity,
    ServerEvent,
    ServerRemovedEvent,
    SnapshotEvent,
)


def _server_payload(msg: dict) -> dict:
    server = msg.get("server")
    if not isinstance(server, dict) or not server.get("name"):
        raise MalformedEventError(f"{msg.get('type')!r} event without a named server")
    return server


def _snapshot(msg: dict) -> SnapshotEvent:
    servers = msg.get("servers")
    if not isinstance(servers, list):
        raise MalformedEventError(f"{msg['type']!r} event without a servers list")
    return SnapshotEvent(
        type=msg["type"],
        servers=[ServerEntity.from_payload(s) for s in servers],
        timestamp=msg.get("timestamp"),
    )


def _added(msg: dict) -> ServerAddedEvent:
    server = _server_payload(msg)
    return ServerAddedEvent(
        type=msg["type"],
        server=ServerEntity.from_payload(server),
        fields=dict(server),
        timestamp=msg.get("timestamp"),
    )


def _removed(msg: dict) -> ServerRemovedEvent:
    return ServerRemovedEvent(
        name=str(_server_payload(msg)["name"]),
        timestamp=msg.get("timestamp"),
    )


def _changed(msg: dict) -> ServerChangedEvent:
    server = _server_payload(msg)
    return ServerChangedEvent(
        type=msg["type"],
        name=str(server["name"]),
        fields=dict(server),
        timestamp=msg.get("timestamp"),
    )


def _metrics(msg: dict) -> MetricsEvent:
    metrics = msg.get("metrics")
    if not isinstance(metrics, dict):
        raise MalformedEventError("metrics_update event without a metrics object")
    return MetricsEvent(metrics=metrics, timestamp=msg.get("timestamp"))


EVENT_PARSERS: dict[str, Callable[[dict], ServerEvent]] = {
    "initial": _snapshot,
    "status_update": _snapshot,
    "created": _added,
    "added": _added,
    "deleted": _removed,
    "metrics_update": _metrics,
    "started": _changed,
    "stopped": _changed,
    "updated": _changed,
    "scaled": _changed,
    "modified": _changed,
    "auto_stop_configured": _changed,
    "auto_start_configured": _changed,
}


def parse_message(raw: str | bytes | dict[str, Any]) -> ServerEvent:
    """Parse one push message. Raises ``MalformedEventError`` on bad input."""
    if isinstance(raw, (str, bytes)):
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEventError(f"invalid JSON: {e}") from e
    else:
        msg = raw

    if not isinstance(msg, dict):
        raise MalformedEventError(f"expected a JSON object, got {type(msg).__name__}")

    event_type = msg.get("type")
    parser = EVENT_PARSERS.get(event_type) if isinstance(event_type, str) else None
    if parser is None:
        raise MalformedEventError(f"unknown event type {event_type!r}")
    return parser(msg)
