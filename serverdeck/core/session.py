"""SessionManager: valid access tokens on demand with single-flight refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from ..types import Credential, SessionConfig, TransportError
from .store import CredentialStore

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the credential lifecycle for one client session.

    At most one refresh call is outstanding at any time: callers that ask
    for a refresh while one is pending await the same result. The pending
    refresh is shielded, so a caller being cancelled never aborts the
    exchange other callers are waiting on.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: httpx.AsyncClient,
        config: SessionConfig | None = None,
        api_base: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or SessionConfig()
        self._store = store
        self._client = client
        self._api_base = api_base.rstrip("/")
        self._clock = clock
        self._credential: Credential | None = store.load()
        self._inflight: asyncio.Task[bool] | None = None
        self._listeners: list[Callable[[bool], None]] = []
        self._closed = False
        self.refresh_calls = 0  # network refresh attempts, for diagnostics

    # -- state --

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None

    @property
    def refresh_in_flight(self) -> bool:
        return self._inflight is not None

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        """Register *callback(authenticated)*, called when the session changes."""
        self._listeners.append(callback)

    def _notify(self) -> None:
        if self._closed:
            return
        authenticated = self.is_authenticated
        for callback in list(self._listeners):
            callback(authenticated)

    # -- login / logout --

    def login(self, access_token: str, refresh_token: str, expires_in: float) -> Credential:
        """Store a freshly issued token pair (e.g. from the OAuth callback)."""
        credential = Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + expires_in,
        )
        self._persist(credential)
        logger.info("Session started, token expires in %ds", int(expires_in))
        return credential

    async def logout(self) -> None:
        """Tell the backend (best effort) and drop the local credential."""
        credential = self._credential
        if credential is not None:
            try:
                await self._client.post(
                    self._api_base + self.config.logout_path,
                    headers={"Authorization": f"Bearer {credential.access_token}"},
                )
            except httpx.HTTPError as e:
                logger.info("Logout request failed, clearing locally: %s", e)
        self.clear()

    def clear(self) -> None:
        if self._credential is not None:
            logger.info("Clearing session credential")
        self._credential = None
        self._store.clear()
        self._notify()

    def close(self) -> None:
        """Stop notifying listeners. A pending refresh still completes."""
        self._closed = True
        self._listeners.clear()

    def _persist(self, credential: Credential) -> None:
        self._store.save(credential)
        self._credential = credential
        self._notify()

    # -- tokens --

    async def get_valid_access_token(self) -> str | None:
        """Return a token good for at least ``refresh_buffer_seconds``.

        Refreshes (or joins a pending refresh) when the stored token is
        inside the buffer window. None means the caller has no session,
        either because none was stored or because the refresh token was
        rejected. Raises TransportError when the refresh could not reach
        the backend; the credential is kept for the next attempt.
        """
        credential = self._credential
        if credential is None:
            return None
        if credential.is_fresh(self._clock(), self.config.refresh_buffer_seconds):
            return credential.access_token
        if not await self.refresh():
            return None
        return self._credential.access_token if self._credential else None

    async def refresh(self, stale_token: str | None = None) -> bool:
        """Exchange the refresh token for a new credential (single-flight).

        If *stale_token* is given and the session already holds a different
        access token, another caller refreshed in the meantime and no
        network call is made. A refresh that never reached the backend
        raises TransportError to every waiter instead of returning False.
        """
        if (
            stale_token is not None
            and self._credential is not None
            and self._credential.access_token != stale_token
            and self._inflight is None
        ):
            return True
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> bool:
        try:
            return await self._exchange_refresh_token()
        finally:
            self._inflight = None

    async def _exchange_refresh_token(self) -> bool:
        credential = self._credential
        if credential is None:
            return False

        self.refresh_calls += 1
        url = self._api_base + self.config.refresh_path
        try:
            response = await self._client.post(
                url,
                json={"refreshToken": credential.refresh_token},
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("Token refresh failed, keeping credential: %s", e)
            raise TransportError(f"Token refresh failed: {e}", url=url) from e

        if not response.is_success:
            logger.warning(
                "Refresh token rejected (HTTP %d), session is unrecoverable",
                response.status_code,
            )
            self.clear()
            return False

        try:
            new_credential = Credential.from_token_response(response.json(), self._clock())
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed refresh response: %s", e)
            self.clear()
            return False

        self._persist(new_credential)
        logger.debug("Token refreshed, new expiry %.0f", new_credential.expires_at)
        return True
