"""Tests for ServerCollection and its reducers."""

from typing import get_args

from serverdeck.core.collection import REDUCERS, ServerCollection, reduce_servers
from serverdeck.core.events import parse_message
from serverdeck.types import ServerEntity, ServerEvent, SnapshotEvent


def _apply(collection, **msg):
    return collection.apply(parse_message(msg))


def _seed(collection, *names):
    _apply(collection, type="initial", servers=[{"name": n, "phase": "Running"} for n in names])


class TestSnapshots:
    def test_initial_replaces_everything(self):
        c = ServerCollection()
        _seed(c, "old")
        _apply(c, type="initial", servers=[{"name": "a"}, {"name": "b"}])
        assert sorted(s.name for s in c) == ["a", "b"]
        assert "old" not in c

    def test_status_update_replaces_everything(self):
        c = ServerCollection()
        _seed(c, "a", "b")
        _apply(c, type="status_update", servers=[{"name": "b", "phase": "Stopped"}])
        assert len(c) == 1
        assert c.get("b").phase == "Stopped"

    def test_empty_snapshot_clears(self):
        c = ServerCollection()
        _seed(c, "a")
        _apply(c, type="initial", servers=[])
        assert len(c) == 0


class TestAddRemove:
    def test_created_then_deleted(self):
        c = ServerCollection()
        for i in range(5):
            _apply(c, type="created", server={"name": f"s{i}"})
        _apply(c, type="deleted", server={"name": "s2"})
        assert sorted(s.name for s in c) == ["s0", "s1", "s3", "s4"]

    def test_added_existing_merges(self):
        c = ServerCollection()
        _apply(c, type="initial", servers=[{"name": "a", "phase": "Running", "version": "1.20"}])
        _apply(c, type="added", server={"name": "a", "playerCount": 3})
        server = c.get("a")
        assert server.phase == "Running"
        assert server.version == "1.20"
        assert server.player_count == 3
        assert len(c) == 1

    def test_delete_unknown_is_noop(self):
        c = ServerCollection()
        _seed(c, "a")
        version = c.version
        assert _apply(c, type="deleted", server={"name": "ghost"}) is False
        assert c.version == version


class TestPartialUpdates:
    def test_changed_merges_only_given_fields(self):
        c = ServerCollection()
        _apply(c, type="initial", servers=[{"name": "a", "phase": "Running", "version": "1.20", "port": 25565}])
        _apply(c, type="stopped", server={"name": "a", "phase": "Stopped"})
        server = c.get("a")
        assert server.phase == "Stopped"
        assert server.version == "1.20"
        assert server.port == 25565

    def test_changed_unknown_server_is_noop(self):
        c = ServerCollection()
        _seed(c, "a")
        assert _apply(c, type="started", server={"name": "ghost", "phase": "Running"}) is False
        assert "ghost" not in c

    def test_unknown_fields_kept(self):
        c = ServerCollection()
        _seed(c, "a")
        _apply(c, type="auto_stop_configured", server={"name": "a", "autoStop": {"enabled": True}})
        assert c.get("a").extra["autoStop"] == {"enabled": True}
        assert c.get("a").to_dict()["autoStop"] == {"enabled": True}

    def test_metrics_for_known_servers_only(self):
        c = ServerCollection()
        _seed(c, "a", "b")
        _apply(c, type="metrics_update", metrics={"a": {"cpu": 12}, "ghost": {"cpu": 99}})
        assert c.get("a").metrics == {"cpu": 12}
        assert c.get("b").metrics is None
        assert "ghost" not in c

    def test_metrics_for_unknown_only_is_noop(self):
        c = ServerCollection()
        _seed(c, "a")
        before = c.servers
        assert _apply(c, type="metrics_update", metrics={"ghost": {"cpu": 1}}) is False
        assert c.servers == before


class TestSnapshotIsolation:
    def test_reader_snapshot_unaffected_by_later_events(self):
        c = ServerCollection()
        _seed(c, "a")
        held = c.servers
        _apply(c, type="created", server={"name": "b"})
        assert list(held) == ["a"]
        assert sorted(c.servers) == ["a", "b"]

    def test_reducers_are_pure(self):
        servers = {"a": ServerEntity(name="a", phase="Running")}
        out = reduce_servers(servers, parse_message({"type": "stopped", "server": {"name": "a", "phase": "Stopped"}}))
        assert servers["a"].phase == "Running"
        assert out["a"].phase == "Stopped"

    def test_every_event_variant_has_reducer(self):
        assert set(get_args(ServerEvent)) == set(REDUCERS)


class TestListeners:
    def test_notified_with_event(self):
        c = ServerCollection()
        seen = []
        c.subscribe(seen.append)
        event = SnapshotEvent(type="initial", servers=[ServerEntity(name="a")])
        c.apply(event)
        assert seen == [event]

    def test_unsubscribe(self):
        c = ServerCollection()
        seen = []
        unsubscribe = c.subscribe(seen.append)
        unsubscribe()
        _seed(c, "a")
        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        c = ServerCollection()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        c.subscribe(broken)
        c.subscribe(seen.append)
        _seed(c, "a")
        assert len(seen) == 1

    def test_patch_is_local_and_notifies_none(self):
        c = ServerCollection()
        _seed(c, "a")
        seen = []
        c.subscribe(seen.append)
        assert c.patch("a", {"phase": "Stopping"}) is True
        assert c.get("a").phase == "Stopping"
        assert seen == [None]
        assert c.patch("ghost", {"phase": "Stopping"}) is False
