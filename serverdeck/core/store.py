"""CredentialStore abstract base class: durable token persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..types import Credential


class CredentialStore(ABC):
    """Pluggable durable storage for the session credential.

    A credential is always written and read as one record: a reader never
    sees a new access token paired with an old expiry.
    """

    @abstractmethod
    def save(self, credential: Credential) -> None:
        """Persist all three fields atomically, replacing any previous record."""

    @abstractmethod
    def load(self) -> Credential | None:
        """Return the stored credential, or None if absent or unreadable."""

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored credential. No-op if nothing is stored."""

    def close(self) -> None:
        pass
