"""DashboardSession: wires store, session, gateway, channel and views together."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

import httpx

from .api import ServerApi
from .config import load_config
from .core.collection import ServerCollection
from .core.gateway import AuthLostHook, RequestGateway
from .core.log_tail import LogTailController
from .core.realtime import Connector, RealtimeChannel
from .core.scheduler import PeriodicTask
from .core.session import SessionManager
from .core.store import CredentialStore
from .storage import open_credential_store
from .types import ServerDeckConfig, ServerDeckError, ServerEntity, SnapshotEvent

logger = logging.getLogger(__name__)


class ServerDetailView:
    """Everything one server's detail screen keeps fresh while it is mounted.

    Server, metrics and pod status are refreshed on a fixed interval; the
    console log tail polls only while the console is visible. Refresh
    failures are logged and retried on the next tick. Detail state stays
    on the view; the shared collection is left to the push channel.
    """

    def __init__(
        self,
        name: str,
        api: ServerApi,
        config: ServerDeckConfig,
    ) -> None:
        self.name = name
        self._api = api
        self.server: ServerEntity | None = None
        self.metrics: dict | None = None
        self.pod_status: dict | None = None
        self.error: str | None = None
        self._closed = False
        self.log_tail = LogTailController(
            fetch_lines=lambda lines: api.get_logs(name, lines),
            config=config.log_tail,
            run_command=lambda command: api.execute_command(name, command),
            name=name,
        )
        self._detail_task = PeriodicTask(
            self.refresh_detail, config.polling.detail_interval, name=f"detail:{name}",
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Initial load: server detail and the bootstrap log window together."""
        server, metrics, pod, seeded = await asyncio.gather(
            self._api.get_server(self.name),
            self._api.get_metrics(self.name),
            self._api.get_pod_status(self.name),
            self.log_tail.bootstrap(),
            return_exceptions=True,
        )
        if self._closed:
            return
        if isinstance(server, BaseException):
            self.error = str(server)
            logger.warning("Failed to load server %s: %s", self.name, server)
        else:
            self.server = server
            self.error = None
        self.metrics = None if isinstance(metrics, BaseException) else metrics
        self.pod_status = None if isinstance(pod, BaseException) else pod
        if isinstance(seeded, BaseException):
            logger.warning("Failed to load logs for %s: %s", self.name, seeded)
        self._detail_task.start()

    def set_console_visible(self, visible: bool) -> None:
        self.log_tail.set_active(visible)

    async def refresh_detail(self) -> None:
        try:
            server, metrics, pod = await asyncio.gather(
                self._api.get_server(self.name),
                self._api.get_metrics(self.name),
                self._api.get_pod_status(self.name),
            )
        except ServerDeckError as e:
            logger.debug("Detail refresh for %s failed: %s", self.name, e)
            return
        if self._closed:
            return
        self.server = server
        self.metrics = metrics
        self.pod_status = pod

    def set_phase(self, phase: str) -> None:
        if self.server is not None:
            self.server = self.server.merged({"phase": phase})

    def close(self) -> None:
        self._closed = True
        self._detail_task.stop()
        self.log_tail.close()


class DashboardSession:
    """Composition root for one signed-in dashboard.

    Usage:
        async with DashboardSession(config_path="serverdeck.yaml") as dash:
            dash.collection.subscribe(render)
            view = await dash.watch_server("survival")
            view.set_console_visible(True)
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: ServerDeckConfig | None = None,
        store: CredentialStore | None = None,
        client: httpx.AsyncClient | None = None,
        connector: Connector | None = None,
        on_auth_lost: AuthLostHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or load_config(config_path)
        self._store = store or open_credential_store(self.config.storage)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout, connect=10.0),
        )
        self.session = SessionManager(
            store=self._store,
            client=self._client,
            config=self.config.session,
            api_base=self.config.api_base,
            clock=clock,
        )
        self.gateway = RequestGateway(
            client=self._client,
            session=self.session,
            api_base=self.config.api_base,
            on_auth_lost=on_auth_lost,
        )
        self.api = ServerApi(self.gateway)
        self.collection = ServerCollection()
        self.channel = RealtimeChannel(
            url=self.config.ws_url,
            collection=self.collection,
            session=self.session,
            connector=connector,
            reconnect_delay=self.config.realtime.reconnect_delay,
            token_query_param=self.config.realtime.token_query_param,
        )
        self._views: dict[str, ServerDetailView] = {}

    async def __aenter__(self) -> DashboardSession:
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self.channel.connected

    async def open(self) -> None:
        self.channel.start()

    async def close(self) -> None:
        for view in list(self._views.values()):
            view.close()
        self._views.clear()
        await self.channel.close()
        self.session.close()
        if self._owns_client:
            await self._client.aclose()
        self._store.close()

    async def refresh_servers(self) -> list[ServerEntity]:
        """Full REST reload, applied like a ``status_update`` push."""
        servers = await self.api.list_servers()
        self.collection.apply(SnapshotEvent(type="status_update", servers=servers))
        return servers

    async def watch_server(self, name: str) -> ServerDetailView:
        view = self._views.get(name)
        if view is not None:
            return view
        view = ServerDetailView(name, self.api, self.config)
        self._views[name] = view
        await view.open()
        return view

    def unwatch_server(self, name: str) -> None:
        view = self._views.pop(name, None)
        if view is not None:
            view.close()

    async def start_server(self, name: str) -> None:
        await self.api.start_server(name)
        self._set_phase(name, "Starting")

    async def stop_server(self, name: str) -> None:
        await self.api.stop_server(name)
        self._set_phase(name, "Stopping")

    def _set_phase(self, name: str, phase: str) -> None:
        self.collection.patch(name, {"phase": phase})
        view = self._views.get(name)
        if view is not None:
            view.set_phase(phase)
