"""FilesystemCredentialStore: one JSON document, replaced atomically."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from ..core.store import CredentialStore
from ..types import Credential

logger = logging.getLogger(__name__)

CREDENTIAL_FILENAME = "credentials.json"


class FilesystemCredentialStore(CredentialStore):
    """Stores the credential as ``<root>/credentials.json``.

    Writes go to a temp file in the same directory followed by
    ``os.replace``, so readers only ever see the old or the new record.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.path = self.root / CREDENTIAL_FILENAME
        self._ensure_root()

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def save(self, credential: Credential) -> None:
        data = json.dumps(credential.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".credentials-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self) -> Credential | None:
        if not self.path.is_file():
            return None
        try:
            return Credential.from_dict(json.loads(self.path.read_text()))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
