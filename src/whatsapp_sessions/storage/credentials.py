"""Credential and per-session config layout on top of a SessionStore."""

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from ..async_utils import KeyedLock, exponential_backoff, retry
from ..cache import TTLCache
from ..exceptions import (
    BlobNotFoundError,
    CredentialInvalidError,
    RetryExhaustedError,
    StorageError,
    VersionConflictError,
)
from ..models import UserConfig, normalize_identity_key
from .base import SessionStore, StoredBlob
from .encryption import CredentialCipher

logger = logging.getLogger(__name__)

SESSION_DIR = "session"
NUMBERS_KEY = "numbers.json"
ENVELOPE_VERSION = 1

# creds_<key>.json is canonical; creds_<key>_<ms>.json and empire_<key>_<ms>.json
# are older layouts that may still be lying around.
_CREDENTIAL_NAME = re.compile(rf"^{SESSION_DIR}/(?:creds|empire)_(\d+)(?:_(\d+))?\.json$")
_CONFIG_NAME = re.compile(rf"^{SESSION_DIR}/config_(\d+)\.json$")


def credential_path(key: str) -> str:
    return f"{SESSION_DIR}/creds_{key}.json"


def config_path(key: str) -> str:
    return f"{SESSION_DIR}/config_{key}.json"


class CredentialStore:
    """
    Stores session credentials, per-session configs and the known-numbers list.

    Credentials are wrapped in an envelope carrying ``written_at`` (epoch ms).
    That timestamp decides which duplicate is the most recent; blobs without an
    envelope fall back to the timestamp embedded in their name, and a bare
    canonical blob counts as the oldest.
    """

    def __init__(
        self,
        store: SessionStore,
        cipher: Optional[CredentialCipher] = None,
        cache_ttl: float = 300.0,
        write_attempts: int = 3,
        write_base_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.write_attempts = write_attempts
        self.write_base_delay = write_base_delay
        self._locks = KeyedLock()
        self._numbers_lock = asyncio.Lock()
        self._config_cache: TTLCache[UserConfig] = TTLCache(ttl=cache_ttl)

    async def _read(self, path: str, description: str) -> StoredBlob:
        """Read a blob, retrying transient store failures."""

        async def attempt() -> StoredBlob:
            return await self.store.get(path)

        try:
            return await retry(
                attempt,
                self.write_attempts,
                exponential_backoff(self.write_base_delay),
                retry_on=(StorageError,),
                give_up_on=(BlobNotFoundError,),
                description=description,
            )
        except RetryExhaustedError as e:
            raise StorageError(str(e)) from e.last_error

    async def _write(self, path: str, data: bytes, description: str) -> str:
        """Conditional write against the current version, retried on conflicts."""

        async def attempt() -> str:
            try:
                current = await self.store.get(path)
                version: Optional[str] = current.version
            except BlobNotFoundError:
                version = None
            return await self.store.put(path, data, if_version=version)

        try:
            return await retry(
                attempt,
                self.write_attempts,
                exponential_backoff(self.write_base_delay),
                retry_on=(StorageError,),
                description=description,
            )
        except RetryExhaustedError as e:
            raise StorageError(str(e)) from e.last_error

    # ===== Credentials =====

    async def _credential_names(self, key: str) -> List[str]:
        names = await self.store.list(f"{SESSION_DIR}/")
        result = []
        for name in names:
            match = _CREDENTIAL_NAME.match(name)
            if match and match.group(1) == key:
                result.append(name)
        return result

    @staticmethod
    def _recency(name: str, data: bytes) -> int:
        try:
            payload = json.loads(data)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("written_at"), int):
            return payload["written_at"]

        match = _CREDENTIAL_NAME.match(name)
        if match and match.group(2):
            return int(match.group(2))
        return 0

    def _envelope(self, key: str, credential: Any, written_at: Optional[int] = None) -> bytes:
        if self.cipher is not None and not CredentialCipher.is_encrypted(credential):
            credential = self.cipher.encrypt(credential)
        envelope = {
            "version": ENVELOPE_VERSION,
            "key": key,
            "written_at": written_at if written_at is not None else int(time.time() * 1000),
            "credential": credential,
        }
        return json.dumps(envelope).encode()

    async def cleanup_duplicates(self, identity: str) -> List[str]:
        """
        Keep only the most recent credential blob for a key.

        The survivor is promoted to the canonical name when it is not already
        there. Running this again once a single blob remains does nothing.

        Returns:
            Names of the deleted blobs
        """
        key = normalize_identity_key(identity)
        canonical = credential_path(key)

        async with self._locks.hold(key):
            names = await self._credential_names(key)
            if not names or names == [canonical]:
                return []

            candidates: List[Tuple[int, bool, StoredBlob]] = []
            for name in names:
                try:
                    blob = await self.store.get(name)
                except BlobNotFoundError:
                    continue
                candidates.append((self._recency(name, blob.data), name == canonical, blob))

            if not candidates:
                return []

            # Newest first; on equal timestamps the canonical blob wins
            candidates.sort(key=lambda c: (c[0], c[1]), reverse=True)
            newest_at, newest_is_canonical, newest = candidates[0]

            if not newest_is_canonical:
                try:
                    payload = json.loads(newest.data)
                except ValueError:
                    payload = None
                if isinstance(payload, dict) and "written_at" in payload:
                    data = newest.data
                else:
                    data = self._envelope(key, payload, written_at=newest_at)
                await self.store.put(canonical, data)
                logger.info(f"Promoted {newest.key} to {canonical}")

            deleted = []
            for _, is_canonical, blob in candidates:
                if is_canonical:
                    continue
                try:
                    await self.store.delete(blob.key, if_version=blob.version)
                except VersionConflictError:
                    logger.warning(f"{blob.key} changed during cleanup, left in place")
                    continue
                deleted.append(blob.key)
                logger.info(f"Deleted duplicate session file: {blob.key}")

            return deleted

    async def load_credential(self, identity: str) -> Optional[Dict[str, Any]]:
        """
        Load the stored credential for a key.

        Returns:
            Credential dict, or None when nothing is stored

        Raises:
            CredentialInvalidError: If the stored blob is unreadable
            StorageError: If the store stays unavailable
        """
        key = normalize_identity_key(identity)
        try:
            blob = await self._read(credential_path(key), description=f"load credential {key}")
        except BlobNotFoundError:
            return None

        try:
            payload = json.loads(blob.data)
        except ValueError as e:
            raise CredentialInvalidError(f"Stored credential for {key} is not JSON") from e

        if isinstance(payload, dict) and "credential" in payload and "written_at" in payload:
            credential = payload["credential"]
        else:
            credential = payload

        if CredentialCipher.is_encrypted(credential):
            if self.cipher is None:
                raise CredentialInvalidError(
                    f"Stored credential for {key} is encrypted and no passphrase is configured"
                )
            credential = self.cipher.decrypt(credential)

        if not isinstance(credential, dict):
            raise CredentialInvalidError(f"Stored credential for {key} is malformed")
        return credential

    async def save_credential(self, identity: str, credential: Dict[str, Any]) -> str:
        """
        Persist a credential, replacing the previous one.

        Writes for the same key are serialized.
        """
        key = normalize_identity_key(identity)
        async with self._locks.hold(key):
            data = self._envelope(key, credential)
            version = await self._write(
                credential_path(key), data, description=f"save credential {key}"
            )
            logger.debug(f"Saved credential for {key}")
            return version

    async def delete_credential(self, identity: str) -> None:
        """Delete the canonical credential blob only."""
        key = normalize_identity_key(identity)
        async with self._locks.hold(key):
            await self.store.delete(credential_path(key))
            logger.info(f"Deleted stored credential for {key}")

    async def delete_session(self, identity: str) -> List[str]:
        """
        Delete every blob belonging to a key and forget the number.

        Returns:
            Names of the deleted blobs
        """
        key = normalize_identity_key(identity)
        deleted = []
        async with self._locks.hold(key):
            for name in await self.store.list(f"{SESSION_DIR}/"):
                match = _CREDENTIAL_NAME.match(name) or _CONFIG_NAME.match(name)
                if match and match.group(1) == key:
                    await self.store.delete(name)
                    deleted.append(name)

        self._config_cache.invalidate(key)
        await self.forget_number(key)
        logger.info(f"Deleted session data for {key} ({len(deleted)} blob(s))")
        return deleted

    async def list_identity_keys(self) -> List[str]:
        """Keys that have at least one stored credential blob."""
        keys = set()
        for name in await self.store.list(f"{SESSION_DIR}/"):
            match = _CREDENTIAL_NAME.match(name)
            if match:
                keys.add(match.group(1))
        return sorted(keys)

    # ===== Per-session config =====

    async def has_user_config(self, identity: str) -> bool:
        key = normalize_identity_key(identity)
        return await self.store.exists(config_path(key))

    async def load_user_config(self, identity: str) -> UserConfig:
        """Per-session config (cached); defaults when none is stored."""
        key = normalize_identity_key(identity)

        async def fetch() -> UserConfig:
            try:
                blob = await self.store.get(config_path(key))
            except BlobNotFoundError:
                logger.debug(f"No configuration found for {key}, using defaults")
                return UserConfig()
            try:
                return UserConfig.model_validate(json.loads(blob.data))
            except ValueError as e:
                logger.warning(f"Invalid configuration for {key}, using defaults: {e}")
                return UserConfig()

        return await self._config_cache.get_or_compute(key, fetch)

    async def save_user_config(self, identity: str, config: UserConfig) -> None:
        key = normalize_identity_key(identity)
        data = json.dumps(config.model_dump(by_alias=True), indent=2).encode()
        await self._write(config_path(key), data, description=f"save config {key}")
        self._config_cache.set(key, config)
        logger.info(f"Updated config for {key}")

    # ===== Known numbers =====

    async def known_numbers(self) -> List[str]:
        try:
            blob = await self.store.get(NUMBERS_KEY)
        except BlobNotFoundError:
            return []
        try:
            numbers = json.loads(blob.data)
        except ValueError:
            logger.warning(f"{NUMBERS_KEY} is not valid JSON, ignoring it")
            return []
        return [str(n) for n in numbers] if isinstance(numbers, list) else []

    async def _update_numbers(self, key: str, add: bool) -> None:
        async with self._numbers_lock:
            numbers = await self.known_numbers()
            if add == (key in numbers):
                return
            if add:
                numbers.append(key)
            else:
                numbers = [n for n in numbers if n != key]
            await self._write(
                NUMBERS_KEY, json.dumps(numbers, indent=2).encode(), description="update numbers"
            )

    async def remember_number(self, identity: str) -> None:
        await self._update_numbers(normalize_identity_key(identity), add=True)

    async def forget_number(self, identity: str) -> None:
        await self._update_numbers(normalize_identity_key(identity), add=False)
