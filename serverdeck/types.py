"""All dataclasses, enums, errors and type aliases for serverdeck."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ServerDeckError(Exception):
    """Base class for every error raised by serverdeck."""


class ConfigError(ServerDeckError):
    pass


class AuthenticationRequired(ServerDeckError):
    """The session cannot be recovered; the user has to sign in again."""

    def __init__(self, message: str = "Authentication required", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(ServerDeckError):
    """The request never produced an HTTP response (DNS, refused, timeout)."""

    def __init__(self, message: str, url: str = ""):
        super().__init__(message)
        self.url = url


class ApiError(ServerDeckError):
    def __init__(self, message: str, status_code: int, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class MalformedEventError(ServerDeckError):
    """A push message could not be decoded into a known event."""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@dataclass
class Credential:
    """Access/refresh token pair and the absolute expiry (epoch seconds)."""
    access_token: str
    refresh_token: str
    expires_at: float

    def is_fresh(self, now: float, buffer_seconds: float = 0.0) -> bool:
        return now < self.expires_at - buffer_seconds

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> Credential:
        return cls(
            access_token=str(raw["access_token"]),
            refresh_token=str(raw["refresh_token"]),
            expires_at=float(raw["expires_at"]),
        )

    @classmethod
    def from_token_response(cls, data: dict, now: float) -> Credential:
        """Build from a ``{accessToken, refreshToken, expiresIn}`` response body."""
        return cls(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            expires_at=now + float(data["expiresIn"]),
        )


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------

# wire name -> attribute name
SERVER_FIELDS: dict[str, str] = {
    "name": "name",
    "namespace": "namespace",
    "phase": "phase",
    "version": "version",
    "status": "status",
    "externalIP": "external_ip",
    "port": "port",
    "playerCount": "player_count",
    "maxPlayers": "max_players",
    "metrics": "metrics",
    "message": "message",
}


@dataclass
class ServerEntity:
    """One managed server as mirrored from the backend.

    Wire fields without a dedicated attribute are kept in ``extra`` so a
    merge never drops data the backend sent earlier.
    """
    name: str
    namespace: str = ""
    phase: str = ""
    version: str = ""
    status: str | None = None
    external_ip: str | None = None
    port: int | None = None
    player_count: int | None = None
    max_players: int | None = None
    metrics: dict | None = None
    message: str | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: dict) -> ServerEntity:
        if not isinstance(raw, dict) or not raw.get("name"):
            raise MalformedEventError(f"server payload without a name: {raw!r}")
        entity = cls(name=str(raw["name"]))
        return entity.merged(raw)

    def merged(self, partial: dict) -> ServerEntity:
        """Return a copy with the fields present in *partial* applied.

        ``name`` is the key and is never changed by a merge.
        """
        changes: dict[str, Any] = {}
        extra = dict(self.extra)
        for key, value in partial.items():
            if key == "name":
                continue
            attr = SERVER_FIELDS.get(key)
            if attr is None:
                extra[key] = value
            else:
                changes[attr] = value
        return replace(self, extra=extra, **changes)

    def with_metrics(self, metrics: dict) -> ServerEntity:
        return replace(self, metrics=metrics)

    def to_dict(self) -> dict:
        d: dict[str, Any] = dict(self.extra)
        for wire, attr in SERVER_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                d[wire] = value
        return d

    @property
    def address(self) -> str | None:
        if self.external_ip and self.port:
            return f"{self.external_ip}:{self.port}"
        return None


# ---------------------------------------------------------------------------
# Push events (tagged union)
# ---------------------------------------------------------------------------

SnapshotType = Literal["initial", "status_update"]
AddedType = Literal["created", "added"]
ChangedType = Literal[
    "started", "stopped", "updated", "scaled", "modified",
    "auto_stop_configured", "auto_start_configured",
]


@dataclass
class SnapshotEvent:
    """Authoritative full list of servers; replaces the collection."""
    type: SnapshotType
    servers: list[ServerEntity]
    timestamp: str | None = None


@dataclass
class ServerAddedEvent:
    """New server. ``fields`` is the raw payload, used when the key already exists."""
    type: AddedType
    server: ServerEntity
    fields: dict = field(default_factory=dict)
    timestamp: str | None = None


@dataclass
class ServerRemovedEvent:
    name: str
    type: Literal["deleted"] = "deleted"
    timestamp: str | None = None


@dataclass
class ServerChangedEvent:
    """Partial update for one server; ``fields`` holds only what changed."""
    type: ChangedType
    name: str
    fields: dict
    timestamp: str | None = None


@dataclass
class MetricsEvent:
    metrics: dict[str, dict]
    type: Literal["metrics_update"] = "metrics_update"
    timestamp: str | None = None


ServerEvent = Union[
    SnapshotEvent,
    ServerAddedEvent,
    ServerRemovedEvent,
    ServerChangedEvent,
    MetricsEvent,
]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Log tail
# ---------------------------------------------------------------------------

class EntryKind(str, Enum):
    LOG = "log"
    COMMAND = "command"
    RESULT = "result"
    ERROR = "error"


class LogLevel(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"


@dataclass
class LogEntry:
    kind: EntryKind
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    level: LogLevel | None = None  # only set for kind == LOG


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@dataclass
class ApiRequest:
    """A logical outbound call. Rebuilt into an ``httpx.Request`` per attempt."""
    method: str
    path: str
    params: dict | None = None
    json: Any = None
    headers: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class SessionConfig:
    refresh_buffer_seconds: float = 60.0
    refresh_path: str = "/auth/refresh"
    logout_path: str = "/auth/logout"
    login_url: str = "/api/v1/auth/google"


@dataclass
class RealtimeConfig:
    ws_path: str = "/ws"
    reconnect_delay: float = 3.0
    token_query_param: str = "token"


@dataclass
class LogTailConfig:
    bootstrap_lines: int = 100
    poll_lines: int = 200
    max_entries: int = 500
    poll_interval: float = 3.0
    gap_detection: bool = True
    anchor_lines: int = 3


@dataclass
class PollingConfig:
    detail_interval: float = 3.0


@dataclass
class StorageConfig:
    backend: str = "filesystem"  # "filesystem" or "sqlite"
    root: str = ".serverdeck"


@dataclass
class ServerDeckConfig:
    version: str = "0.1"
    base_url: str = "http://127.0.0.1:3001"
    api_prefix: str = "/api/v1"
    request_timeout: float = 30.0
    session: SessionConfig = field(default_factory=SessionConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    log_tail: LogTailConfig = field(default_factory=LogTailConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @property
    def api_base(self) -> str:
        return self.base_url.rstrip("/") + self.api_prefix

    @property
    def ws_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return base + self.realtime.ws_path
