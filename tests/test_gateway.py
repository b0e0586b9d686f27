"""Tests for RequestGateway: headers, 401 recovery, retry-once, auth loss."""

import asyncio
import json

import pytest

from serverdeck.core.gateway import Exchange, GatewayPhase, RequestGateway
from serverdeck.types import ApiRequest, AuthenticationRequired, TransportError
from tests.conftest import API_BASE


@pytest.fixture
def lost():
    return []


@pytest.fixture
def gateway(client, session, lost):
    return RequestGateway(client, session, api_base=API_BASE, on_auth_lost=lost.append)


class TestHeaders:
    async def test_bearer_and_content_type(self, gateway, backend):
        backend.route("GET", "/servers", json={"servers": []})
        response = await gateway.request("GET", "/servers")
        assert response.status_code == 200
        sent = backend.hits("GET", "/servers")[0]
        assert sent.headers["Authorization"] == "Bearer access-1"
        assert sent.headers["Content-Type"] == "application/json"

    async def test_no_authorization_without_session(self, gateway, session, backend):
        session.clear()
        backend.route("GET", "/health", json={"ok": True})
        with pytest.raises(AuthenticationRequired):
            await gateway.request("GET", "/health")
        assert "Authorization" not in backend.hits("GET", "/health")[0].headers

    async def test_params_and_body_forwarded(self, gateway, backend):
        backend.route("POST", "/servers/a/console", json={"result": "ok"})
        await gateway.send(ApiRequest("POST", "/servers/a/console", params={"x": "1"}, json={"command": "list"}))
        sent = backend.hits("POST", "/servers/a/console")[0]
        assert sent.url.params["x"] == "1"
        assert json.loads(sent.content) == {"command": "list"}


class TestPassThrough:
    @pytest.mark.parametrize("status", [200, 204, 400, 403, 404, 500, 503])
    async def test_non_401_returned_untouched(self, gateway, backend, status):
        backend.route("GET", "/servers", status=status, json={"error": "x"} if status != 204 else None)
        response = await gateway.request("GET", "/servers")
        assert response.status_code == status
        assert backend.refresh_requests == 0
        assert len(backend.hits("GET", "/servers")) == 1

    async def test_transport_error(self, gateway, backend):
        backend.offline = True
        with pytest.raises(TransportError) as exc:
            await gateway.request("GET", "/servers")
        assert exc.value.url == API_BASE + "/servers"


class TestUnauthorizedRecovery:
    async def test_refresh_and_retry_once(self, gateway, backend, session):
        backend.valid_tokens = set()  # access-1 revoked server-side
        backend.route("GET", "/servers", json={"servers": []})
        exchange = Exchange(request=ApiRequest("GET", "/servers"))
        await gateway.run(exchange)

        assert exchange.response.status_code == 200
        assert exchange.attempts == 2
        assert exchange.history == [
            GatewayPhase.SENDING, GatewayPhase.UNAUTHORIZED, GatewayPhase.REFRESHING,
            GatewayPhase.RETRYING, GatewayPhase.DONE,
        ]
        hits = backend.hits("GET", "/servers")
        assert [h.headers["Authorization"] for h in hits] == ["Bearer access-1", "Bearer access-2"]
        assert session.credential.access_token == "access-2"

    async def test_second_401_is_final(self, gateway, backend, session, lost):
        backend.route("GET", "/servers", status=401, json={"error": "nope"})
        with pytest.raises(AuthenticationRequired) as exc:
            await gateway.request("GET", "/servers")
        assert exc.value.status_code == 401
        assert len(backend.hits("GET", "/servers")) == 2
        assert backend.refresh_requests == 1
        assert session.credential is None
        assert lost == ["/api/v1/auth/google"]

    async def test_rejected_refresh_signs_out(self, gateway, backend, session, store, lost):
        backend.valid_tokens = set()
        backend.refresh_status = 401
        backend.route("GET", "/servers", json={"servers": []})
        with pytest.raises(AuthenticationRequired):
            await gateway.request("GET", "/servers")
        assert len(backend.hits("GET", "/servers")) == 1
        assert store.credential is None
        assert len(lost) == 1

    async def test_async_auth_lost_hook_awaited(self, client, session, backend):
        called = asyncio.Event()

        async def hook(url):
            called.set()

        gw = RequestGateway(client, session, api_base=API_BASE, on_auth_lost=hook)
        backend.route("GET", "/servers", status=401)
        with pytest.raises(AuthenticationRequired):
            await gw.request("GET", "/servers")
        assert called.is_set()

    async def test_concurrent_401s_share_one_refresh(self, gateway, backend):
        backend.valid_tokens = set()
        backend.route("GET", "/servers", json={"servers": []})
        responses = await asyncio.gather(*(gateway.request("GET", "/servers") for _ in range(5)))
        assert [r.status_code for r in responses] == [200] * 5
        assert backend.refresh_requests == 1


class TestRefreshUnreachable:
    async def test_expiring_token_refresh_offline(self, gateway, backend, session, store, clock, lost):
        backend.refresh_offline = True
        backend.route("GET", "/servers", json={"servers": []})
        clock.advance(3600 - 30)
        with pytest.raises(TransportError) as exc:
            await gateway.request("GET", "/servers")
        assert exc.value.url == API_BASE + "/auth/refresh"
        assert backend.refresh_requests == 1
        assert backend.hits("GET", "/servers") == []
        assert session.credential.access_token == "access-1"
        assert store.clears == 0
        assert lost == []

        backend.refresh_offline = False
        response = await gateway.request("GET", "/servers")
        assert response.status_code == 200
        assert backend.hits("GET", "/servers")[0].headers["Authorization"] == "Bearer access-2"

    async def test_401_then_refresh_offline(self, gateway, backend, session, store, lost):
        backend.valid_tokens = set()
        backend.refresh_offline = True
        backend.route("GET", "/servers", json={"servers": []})
        with pytest.raises(TransportError):
            await gateway.request("GET", "/servers")
        assert len(backend.hits("GET", "/servers")) == 1
        assert backend.refresh_requests == 1
        assert session.credential.access_token == "access-1"
        assert store.clears == 0
        assert lost == []

    async def test_expiring_token_refresh_rejected(self, gateway, backend, store, clock, lost):
        backend.refresh_status = 401
        backend.route("GET", "/servers", json={"servers": []})
        clock.advance(3600 - 30)
        exchange = Exchange(request=ApiRequest("GET", "/servers"))
        with pytest.raises(AuthenticationRequired) as exc:
            await gateway.run(exchange)
        assert exc.value.status_code is None
        assert exchange.history == [GatewayPhase.SENDING, GatewayPhase.FAILED]
        assert backend.hits("GET", "/servers") == []
        assert backend.refresh_requests == 1
        assert store.credential is None
        assert lost == ["/api/v1/auth/google"]


class TestExchange:
    def test_illegal_transition_rejected(self):
        exchange = Exchange(request=ApiRequest("GET", "/x"))
        exchange.advance(GatewayPhase.UNAUTHORIZED)
        exchange.advance(GatewayPhase.REFRESHING)
        exchange.advance(GatewayPhase.RETRYING)
        with pytest.raises(RuntimeError):
            exchange.advance(GatewayPhase.UNAUTHORIZED)

    async def test_send_requires_a_response(self, gateway, monkeypatch):
        async def unfinished(exchange):
            return exchange

        monkeypatch.setattr(gateway, "run", unfinished)
        with pytest.raises(RuntimeError, match="without a response"):
            await gateway.request("GET", "/servers")
