"""RealtimeChannel: persistent push connection feeding the server collection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import httpx
import websockets

from ..types import ConnectionState, MalformedEventError, TransportError
from .collection import ServerCollection
from .events import parse_message
from .session import SessionManager

logger = logging.getLogger(__name__)

# Close code the backend uses when the socket token is rejected.
CLOSE_INVALID_TOKEN = 4001


class PushConnection(Protocol):
    close_code: int | None

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[PushConnection]]


async def websocket_connector(url: str) -> PushConnection:
    return await websockets.connect(url, open_timeout=10, max_size=2**22)


class RealtimeChannel:
    """Keep one push connection open for as long as the owner is running.

    ``CONNECTING -> OPEN -> CLOSED -> (reconnect_delay) -> CONNECTING``,
    with a fixed delay and no retry limit. Each connection attempt gets a
    generation number; messages read by a connection that has since been
    superseded or stopped are discarded. At most one reconnect timer is
    pending at any time.
    """

    def __init__(
        self,
        url: str,
        collection: ServerCollection,
        session: SessionManager | None = None,
        connector: Connector | None = None,
        reconnect_delay: float = 3.0,
        token_query_param: str = "token",
    ) -> None:
        self.url = url
        self.collection = collection
        self.reconnect_delay = reconnect_delay
        self._session = session
        self._connector = connector or websocket_connector
        self._token_param = token_query_param
        self._state = ConnectionState.CLOSED
        self._running = False
        self._generation = 0
        self._reader: asyncio.Task | None = None
        self._connection: PushConnection | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._listeners: list[Callable[[ConnectionState], Any]] = []
        self.connect_attempts = 0
        self.dropped_messages = 0

    # -- state --

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def running(self) -> bool:
        return self._running

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def on_state_change(self, callback: Callable[[ConnectionState], Any]) -> None:
        self._listeners.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    # -- lifecycle --

    def start(self) -> None:
        """Begin connecting. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        self._connect()

    async def close(self) -> None:
        """Close the socket, cancel any pending reconnect, stop for good."""
        self._running = False
        self._generation += 1
        self._cancel_reconnect()

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.debug("Error closing push connection: %s", e)

        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.CLOSED)

    def _connect(self) -> None:
        self._reconnect_handle = None
        if not self._running:
            return
        self._generation += 1
        self._set_state(ConnectionState.CONNECTING)
        self._reader = asyncio.get_running_loop().create_task(
            self._run(self._generation), name=f"realtime-{self._generation}",
        )

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _schedule_reconnect(self) -> None:
        if not self._running or self._state is not ConnectionState.CLOSED:
            return
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._connect)
        logger.info("Realtime channel closed, reconnecting in %.1fs", self.reconnect_delay)

    # -- connection --

    async def _socket_url(self) -> str:
        if self._session is None:
            return self.url
        token = await self._session.get_valid_access_token()
        if not token:
            return self.url
        return str(httpx.URL(self.url).copy_merge_params({self._token_param: token}))

    async def _run(self, generation: int) -> None:
        self.connect_attempts += 1
        connection: PushConnection | None = None
        try:
            url = await self._socket_url()
            connection = await self._connector(url)
            if not self._is_current(generation):
                await connection.close()
                return
            self._connection = connection
            self._set_state(ConnectionState.OPEN)
            logger.info("Realtime channel connected")

            async for raw in connection:
                if not self._is_current(generation):
                    logger.debug("Discarding message from superseded connection")
                    break
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Realtime connection lost: %s", e)

        if not self._is_current(generation):
            return

        self._connection = None
        self._set_state(ConnectionState.CLOSED)
        close_code = getattr(connection, "close_code", None)
        if close_code == CLOSE_INVALID_TOKEN and self._session is not None:
            logger.info("Push channel rejected the token, refreshing before reconnect")
            try:
                await self._session.refresh()
            except TransportError as e:
                logger.warning("Token refresh before reconnect failed: %s", e)
        if self._is_current(generation):
            self._schedule_reconnect()

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            event = parse_message(raw)
        except MalformedEventError as e:
            self.dropped_messages += 1
            logger.warning("Dropping malformed push message: %s", e)
            return
        self.collection.apply(event)
