from pathlib import Path

from ..core.store import CredentialStore
from ..types import StorageConfig
from .filesystem import FilesystemCredentialStore
from .sqlite import SQLiteCredentialStore


def open_credential_store(config: StorageConfig) -> CredentialStore:
    """Build the credential store selected by ``storage.backend``."""
    if config.backend == "sqlite":
        return SQLiteCredentialStore(db_path=Path(config.root) / "credentials.db")
    return FilesystemCredentialStore(root=config.root)


__all__ = ["FilesystemCredentialStore", "SQLiteCredentialStore", "open_credential_store"]
