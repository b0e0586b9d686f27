"""serverdeck: session, realtime sync and log tail core for a game-server dashboard."""

from .api import ServerApi
from .config import load_config
from .dashboard import DashboardSession, ServerDetailView
from .types import (
    ApiError,
    AuthenticationRequired,
    ConnectionState,
    Credential,
    LogEntry,
    ServerDeckConfig,
    ServerDeckError,
    ServerEntity,
    ServerEvent,
)

__version__ = "0.1.0"

__all__ = [
    "DashboardSession",
    "ServerDetailView",
    "ServerApi",
    "load_config",
    "ApiError",
    "AuthenticationRequired",
    "ConnectionState",
    "Credential",
    "LogEntry",
    "ServerDeckConfig",
    "ServerDeckError",
    "ServerEntity",
    "ServerEvent",
]
