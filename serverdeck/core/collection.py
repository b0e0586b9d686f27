"""ServerCollection: canonical in-memory mirror of the backend's servers."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Callable, Iterator, Mapping, get_args

from ..types import (
    MetricsEvent,
    ServerAddedEvent,
    ServerChangedEvent,
    ServerEntity,
    ServerEvent,
    ServerRemovedEvent,
    SnapshotEvent,
)

logger = logging.getLogger(__name__)

Servers = dict[str, ServerEntity]


# Reducers are pure: they never mutate their input and return the input
# object itself when the event changes nothing.

def _replace_all(servers: Servers, event: SnapshotEvent) -> Servers:
    return {s.name: s for s in event.servers}


def _insert(servers: Servers, event: ServerAddedEvent) -> Servers:
    name = event.server.name
    existing = servers.get(name)
    out = dict(servers)
    if existing is None:
        out[name] = event.server
    else:
        out[name] = existing.merged(event.fields or event.server.to_dict())
    return out


def _remove(servers: Servers, event: ServerRemovedEvent) -> Servers:
    if event.name not in servers:
        return servers
    out = dict(servers)
    del out[event.name]
    return out


def _merge(servers: Servers, event: ServerChangedEvent) -> Servers:
    existing = servers.get(event.name)
    if existing is None:
        return servers
    out = dict(servers)
    out[event.name] = existing.merged(event.fields)
    return out


def _merge_metrics(servers: Servers, event: MetricsEvent) -> Servers:
    known = [name for name in event.metrics if name in servers]
    if not known:
        return servers
    out = dict(servers)
    for name in known:
        out[name] = out[name].with_metrics(event.metrics[name])
    return out


REDUCERS: dict[type, Callable[[Servers, ServerEvent], Servers]] = {
    SnapshotEvent: _replace_all,
    ServerAddedEvent: _insert,
    ServerRemovedEvent: _remove,
    ServerChangedEvent: _merge,
    MetricsEvent: _merge_metrics,
}

_unhandled = set(get_args(ServerEvent)) - set(REDUCERS)
if _unhandled:
    raise TypeError(f"no reducer for event variants: {sorted(c.__name__ for c in _unhandled)}")


def reduce_servers(servers: Servers, event: ServerEvent) -> Servers:
    return REDUCERS[type(event)](servers, event)


Listener = Callable[[ServerEvent | None], None]


class ServerCollection:
    """Canonical server collection, keyed by name.

    Every event swaps in a new dict, so a reader holding ``servers`` keeps
    a consistent snapshot while later events are applied. Listeners get
    the applied event, or None for a local ``patch``.
    """

    def __init__(self) -> None:
        self._servers: Servers = {}
        self._listeners: list[Listener] = []
        self.version = 0

    @property
    def servers(self) -> Mapping[str, ServerEntity]:
        return MappingProxyType(self._servers)

    def snapshot(self) -> list[ServerEntity]:
        return list(self._servers.values())

    def get(self, name: str) -> ServerEntity | None:
        return self._servers.get(name)

    def __len__(self) -> int:
        return len(self._servers)

    def __contains__(self, name: object) -> bool:
        return name in self._servers

    def __iter__(self) -> Iterator[ServerEntity]:
        return iter(list(self._servers.values()))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply(self, event: ServerEvent) -> bool:
        """Apply a push event. Returns True if the collection changed."""
        updated = reduce_servers(self._servers, event)
        if updated is self._servers:
            logger.debug("Event %s changed nothing", event.type)
            return False
        self._commit(updated, event)
        return True

    def patch(self, name: str, fields: dict) -> bool:
        """Locally merge wire-named *fields* into an existing server.

        Used for optimistic updates after a REST action; the next push
        event for the server overrides it.
        """
        existing = self._servers.get(name)
        if existing is None:
            return False
        updated = dict(self._servers)
        updated[name] = existing.merged(fields)
        self._commit(updated, None)
        return True

    def clear(self) -> None:
        self._servers = {}
        self.version += 1

    def _commit(self, updated: Servers, event: ServerEvent | None) -> None:
        self._servers = updated
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Server collection listener failed")
