"""Shared fixtures for serverdeck tests."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from serverdeck.config import load_config
from serverdeck.core.session import SessionManager
from serverdeck.core.store import CredentialStore
from serverdeck.types import Credential, ServerDeckConfig, SessionConfig

BASE_URL = "http://deck.test"
API_BASE = BASE_URL + "/api/v1"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryStore(CredentialStore):
    """In-memory credential store that counts writes."""

    def __init__(self, credential: Credential | None = None) -> None:
        self.credential = credential
        self.saves = 0
        self.clears = 0

    def save(self, credential: Credential) -> None:
        self.saves += 1
        self.credential = credential

    def load(self) -> Credential | None:
        return self.credential

    def clear(self) -> None:
        self.clears += 1
        self.credential = None


class FakeBackend:
    """httpx.MockTransport handler standing in for the dashboard API.

    Bearer tokens in ``valid_tokens`` are accepted; anything else gets a
    401. ``/auth/refresh`` issues ``access-N``/``refresh-N`` pairs and can
    be held open with ``refresh_gate`` or made unreachable with
    ``refresh_offline``.
    """

    def __init__(self) -> None:
        self.valid_tokens: set[str] = {"access-1"}
        self.refresh_status = 200
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_requests = 0
        self.issued = 1
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}
        self.offline = False
        self.refresh_offline = False

    def route(self, method: str, path: str, status: int = 200, json=None, handler=None) -> None:
        if handler is None:
            body = json

            def handler(request, _status=status, _body=body):
                return httpx.Response(_status, json=_body)
        self.routes[(method, path)] = handler

    def hits(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == "/api/v1" + path
        ]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path.removeprefix("/api/v1")
        if path == "/auth/refresh":
            return await self._refresh(request)

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.valid_tokens:
            return httpx.Response(401, json={"error": "Unauthorized"})
        if path == "/auth/logout":
            return httpx.Response(200, json={"success": True})

        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"error": f"no route {request.method} {path}"})
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_requests += 1
        if self.refresh_offline:
            raise httpx.ConnectError("connection refused", request=request)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json={"error": "Invalid refresh token"})
        body = json.loads(request.content)
        assert body["refreshToken"].startswith("refresh-")
        self.issued += 1
        token = f"access-{self.issued}"
        self.valid_tokens.add(token)
        return httpx.Response(200, json={
            "accessToken": token,
            "refreshToken": f"refresh-{self.issued}",
            "expiresIn": 3600,
        })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fresh_credential(clock) -> Credential:
    return Credential(access_token="access-1", refresh_token="refresh-1", expires_at=clock.now + 3600)


@pytest.fixture
def store(fresh_credential) -> MemoryStore:
    return MemoryStore(fresh_credential)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as c:
        yield c


@pytest.fixture
def session(store, client, clock) -> SessionManager:
    return SessionManager(
        store=store,
        client=client,
        config=SessionConfig(refresh_buffer_seconds=60),
        api_base=API_BASE,
        clock=clock,
    )


@pytest.fixture
def sample_config(tmp_path) -> ServerDeckConfig:
    return load_config(config_dict={
        "base_url": BASE_URL,
        "realtime": {"reconnect_delay": 0.02},
        "log_tail": {
            "bootstrap_lines": 5,
            "poll_lines": 10,
            "max_entries": 20,
            "poll_interval": 0.01,
        },
        "polling": {"detail_interval": 0.01},
        "storage": {"backend": "filesystem", "root": str(tmp_path / "store")},
    })


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll *predicate* until true or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeConnection:
    """In-memory push connection: ``push`` messages, ``drop`` to end it."""

    def __init__(self) -> None:
        self.close_code: int | None = None
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, message) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._queue.put_nowait(message)

    def drop(self, code: int = 1006) -> None:
        self.close_code = code
        self._queue.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self) -> None:
        self.urls: list[str] = []
        self.connections: list[FakeConnection] = []
        self.failures = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
