"""SQLiteCredentialStore: single-row table, written in one transaction."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from ..core.store import CredentialStore
from ..types import Credential

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS credential (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class SQLiteCredentialStore(CredentialStore):
    """SQLite-backed credential storage using stdlib sqlite3."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def save(self, credential: Credential) -> None:
        conn = self._get_conn()
        with conn:
            conn.execute(
                """INSERT INTO credential (id, access_token, refresh_token, expires_at)
                   VALUES (1, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       access_token = excluded.access_token,
                       refresh_token = excluded.refresh_token,
                       expires_at = excluded.expires_at""",
                (credential.access_token, credential.refresh_token, credential.expires_at),
            )

    def load(self) -> Credential | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT access_token, refresh_token, expires_at FROM credential WHERE id = 1"
        ).fetchone()
        if row is None:
            return None
        return Credential(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
        )

    def clear(self) -> None:
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM credential")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
