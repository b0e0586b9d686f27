"""Tests for the serverdeck CLI entry point."""

import sys

import pytest
import yaml

from serverdeck.cli.main import main
from serverdeck.storage import FilesystemCredentialStore


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "serverdeck.yaml"
    path.write_text(yaml.dump({
        "base_url": "http://deck.test",
        "storage": {"backend": "filesystem", "root": str(tmp_path / "store")},
    }))
    return path


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["serverdeck", *argv])
    main()


class TestConfigValidate:
    def test_valid(self, monkeypatch, capsys, config_file):
        _run(monkeypatch, "-c", str(config_file), "config", "validate")
        out = capsys.readouterr().out
        assert "Config is valid." in out
        assert "http://deck.test/api/v1" in out

    def test_invalid(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("base_url: ftp://nope\n")
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "-c", str(path), "config", "validate")
        assert exc.value.code == 1
        assert "base_url" in capsys.readouterr().out


class TestSessionCommands:
    def test_login_with_tokens(self, monkeypatch, capsys, config_file, tmp_path):
        _run(
            monkeypatch, "-c", str(config_file), "login",
            "--access-token", "a1", "--refresh-token", "r1", "--expires-in", "600",
        )
        assert "Signed in." in capsys.readouterr().out
        stored = FilesystemCredentialStore(tmp_path / "store").load()
        assert stored.access_token == "a1"
        assert stored.refresh_token == "r1"

    def test_status_signed_out(self, monkeypatch, capsys, config_file):
        _run(monkeypatch, "-c", str(config_file), "status")
        out = capsys.readouterr().out
        assert "signed out" in out
        assert "ws://deck.test/ws" in out

    def test_servers_requires_login(self, monkeypatch, capsys, config_file):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "-c", str(config_file), "servers")
        assert exc.value.code == 1
        assert "Not signed in" in capsys.readouterr().err


class TestUsage:
    def test_no_command(self, monkeypatch):
        with pytest.raises(SystemExit):
            _run(monkeypatch)

    def test_bad_level(self, monkeypatch, config_file):
        with pytest.raises(SystemExit):
            _run(monkeypatch, "-c", str(config_file), "logs", "survival", "--level", "loud")
