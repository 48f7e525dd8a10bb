"""Storage modules."""

from typing import Optional

from .base import SessionStore, StoredBlob, content_version
from .memory import MemorySessionStore
from .sqlite import SqliteSessionStore
from .github import GitHubSessionStore
from .encryption import CredentialCipher
from .credentials import CredentialStore, credential_path, config_path, NUMBERS_KEY

from ..config import SessionConfig, StoreBackend


def create_store(config: SessionConfig) -> SessionStore:
    """Build the session store selected by ``config.store_backend``."""
    if config.store_backend == StoreBackend.MEMORY:
        return MemorySessionStore()
    if config.store_backend == StoreBackend.SQLITE:
        return SqliteSessionStore(config.storage_path)
    if config.store_backend == StoreBackend.GITHUB:
        if not config.github_token:
            raise ValueError("GitHub store requires github_token")
        return GitHubSessionStore(
            token=config.github_token,
            owner=config.github_owner,
            repo=config.github_repo,
            branch=config.github_branch,
            api_url=config.github_api_url,
        )
    raise ValueError(f"Unknown store backend: {config.store_backend}")


def create_credential_store(
    config: SessionConfig, store: Optional[SessionStore] = None
) -> CredentialStore:
    """Credential store over ``store`` (or the configured backend)."""
    cipher = (
        CredentialCipher(config.credential_passphrase)
        if config.credential_passphrase
        else None
    )
    return CredentialStore(
        store if store is not None else create_store(config),
        cipher=cipher,
        cache_ttl=config.cache_ttl_seconds,
    )


__all__ = [
    "SessionStore",
    "StoredBlob",
    "content_version",
    "MemorySessionStore",
    "SqliteSessionStore",
    "GitHubSessionStore",
    "CredentialCipher",
    "CredentialStore",
    "credential_path",
    "config_path",
    "NUMBERS_KEY",
    "create_store",
    "create_credential_store",
]
