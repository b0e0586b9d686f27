"""RequestGateway: the single chokepoint for authenticated REST calls.

Each logical request runs through a small state machine::

    SENDING ──2xx/4xx/5xx──▶ DONE
       │   └──refresh token rejected before sending──▶ FAILED
       401
       ▼
    UNAUTHORIZED ─▶ REFRESHING ──ok──▶ RETRYING ──non-401──▶ DONE
                        │                  │
                      failed              401
                        ▼                  ▼
                      FAILED ◀─────────────┘

RETRYING has no edge back to UNAUTHORIZED, so a request is reissued at
most once. A refresh that cannot reach the backend raises
TransportError from whichever phase asked for it and never reaches FAILED.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from ..types import ApiRequest, AuthenticationRequired, TransportError
from .session import SessionManager

logger = logging.getLogger(__name__)


class GatewayPhase(str, Enum):
    SENDING = "sending"
    UNAUTHORIZED = "unauthorized"
    REFRESHING = "refreshing"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[GatewayPhase, frozenset[GatewayPhase]] = {
    GatewayPhase.SENDING: frozenset({GatewayPhase.DONE, GatewayPhase.UNAUTHORIZED, GatewayPhase.FAILED}),
    GatewayPhase.UNAUTHORIZED: frozenset({GatewayPhase.REFRESHING}),
    GatewayPhase.REFRESHING: frozenset({GatewayPhase.RETRYING, GatewayPhase.FAILED}),
    GatewayPhase.RETRYING: frozenset({GatewayPhase.DONE, GatewayPhase.FAILED}),
    GatewayPhase.DONE: frozenset(),
    GatewayPhase.FAILED: frozenset(),
}

TERMINAL_PHASES = frozenset({GatewayPhase.DONE, GatewayPhase.FAILED})


@dataclass
class Exchange:
    """Progress of one logical request through the gateway."""
    request: ApiRequest
    phase: GatewayPhase = GatewayPhase.SENDING
    history: list[GatewayPhase] = field(default_factory=lambda: [GatewayPhase.SENDING])
    attempts: int = 0
    token: str | None = None  # token used for the latest attempt
    response: httpx.Response | None = None

    def advance(self, phase: GatewayPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"illegal gateway transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(phase)


AuthLostHook = Callable[[str], Any]


class RequestGateway:
    """Attach credentials, issue the call, recover from a 401 once.

    Responses other than 401 are returned untouched; business errors are
    for the caller to interpret. When the session cannot be recovered the
    credential is cleared, ``on_auth_lost(login_url)`` is called (the
    hook is where a UI navigates to its sign-in surface) and
    ``AuthenticationRequired`` is raised.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        session: SessionManager,
        api_base: str = "",
        on_auth_lost: AuthLostHook | None = None,
    ) -> None:
        self._client = client
        self.session = session
        self._api_base = api_base.rstrip("/")
        self._on_auth_lost = on_auth_lost

    async def send(self, request: ApiRequest) -> httpx.Response:
        exchange = Exchange(request=request)
        await self.run(exchange)
        if exchange.response is None:
            raise RuntimeError(
                f"{request.method} {request.path} finished {exchange.phase.value} without a response"
            )
        return exchange.response

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.send(ApiRequest(method=method, path=path, **kwargs))

    async def run(self, exchange: Exchange) -> Exchange:
        """Drive *exchange* to DONE or FAILED."""
        while exchange.phase not in TERMINAL_PHASES:
            phase = exchange.phase
            if phase in (GatewayPhase.SENDING, GatewayPhase.RETRYING):
                response = await self._issue(exchange)
                if response is None:
                    continue
                if response.status_code != 401:
                    exchange.advance(GatewayPhase.DONE)
                elif phase is GatewayPhase.RETRYING:
                    logger.warning(
                        "%s %s still unauthorized after token refresh",
                        exchange.request.method, exchange.request.path,
                    )
                    exchange.advance(GatewayPhase.FAILED)
                else:
                    exchange.advance(GatewayPhase.UNAUTHORIZED)
            elif phase is GatewayPhase.UNAUTHORIZED:
                exchange.advance(GatewayPhase.REFRESHING)
            elif phase is GatewayPhase.REFRESHING:
                refreshed = await self.session.refresh(stale_token=exchange.token)
                exchange.advance(GatewayPhase.RETRYING if refreshed else GatewayPhase.FAILED)

        if exchange.phase is GatewayPhase.FAILED:
            await self._auth_lost()
            status = exchange.response.status_code if exchange.response is not None else None
            raise AuthenticationRequired(
                f"{exchange.request.method} {exchange.request.path}: session expired",
                status_code=status,
            )
        return exchange

    async def _issue(self, exchange: Exchange) -> httpx.Response | None:
        request = exchange.request
        had_session = self.session.is_authenticated
        token = await self.session.get_valid_access_token()
        if token is None and had_session:
            # refresh token rejected while renewing ahead of expiry
            exchange.advance(GatewayPhase.FAILED)
            return None
        headers = {"Content-Type": "application/json", **request.headers}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = self._api_base + request.path

        exchange.token = token
        exchange.attempts += 1
        try:
            response = await self._client.request(
                request.method,
                url,
                params=request.params,
                json=request.json,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e}", url=url) from e

        exchange.response = response
        logger.debug(
            "%s %s -> %d (attempt %d)",
            request.method, request.path, response.status_code, exchange.attempts,
        )
        return response

    async def _auth_lost(self) -> None:
        logger.warning("Session could not be recovered, redirecting to login")
        self.session.clear()
        if self._on_auth_lost is not None:
            result = self._on_auth_lost(self.session.config.login_url)
            if inspect.isawaitable(result):
                await result

