"""Passphrase-based encryption of credential blobs at rest."""

import base64
import json
import logging
import secrets
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id

from ..exceptions import CredentialInvalidError

logger = logging.getLogger(__name__)

ENVELOPE_FORMAT = "aesgcm-argon2id"


class CredentialCipher:
    """
    Encrypts credential envelopes with AES-256-GCM.

    The key is derived from a passphrase with Argon2id. Each cipher instance
    uses one salt for everything it writes, so the expensive derivation runs
    once per process; blobs written under other salts are still readable.
    """

    def __init__(
        self,
        passphrase: str,
        memory_cost: int = 65536,
        iterations: int = 3,
        lanes: int = 4,
    ) -> None:
        """
        Initialize cipher.

        Args:
            passphrase: Secret the key is derived from
            memory_cost: Argon2id memory cost in KiB
            iterations: Argon2id iterations
            lanes: Argon2id parallelism
        """
        if not passphrase:
            raise ValueError("Passphrase must not be empty")

        self._passphrase = passphrase.encode()
        self._memory_cost = memory_cost
        self._iterations = iterations
        self._lanes = lanes
        self.salt = secrets.token_bytes(16)
        self._keys: Dict[bytes, bytes] = {}

    def _derive_key(self, salt: bytes) -> bytes:
        """Derive (and memoize) the 32-byte key for ``salt``."""
        key = self._keys.get(salt)
        if key is None:
            kdf = Argon2id(
                salt=salt,
                length=32,
                lanes=self._lanes,
                memory_cost=self._memory_cost,
                iterations=self._iterations,
            )
            key = kdf.derive(self._passphrase)
            self._keys[salt] = key
        return key

    def encrypt(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt a JSON-serializable payload into a storable dict."""
        nonce = secrets.token_bytes(12)
        plaintext = json.dumps(payload).encode()
        ciphertext = AESGCM(self._derive_key(self.salt)).encrypt(nonce, plaintext, None)

        return {
            "format": ENVELOPE_FORMAT,
            "salt": base64.b64encode(self.salt).decode(),
            "nonce": base64.b64encode(nonce).decode(),
            "ciphertext": base64.b64encode(ciphertext).decode(),
        }

    def decrypt(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        """
        Decrypt a dict produced by ``encrypt``.

        Raises:
            CredentialInvalidError: If the blob is malformed or the passphrase is wrong
        """
        try:
            salt = base64.b64decode(stored["salt"])
            nonce = base64.b64decode(stored["nonce"])
            ciphertext = base64.b64decode(stored["ciphertext"])
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, None)
            return json.loads(plaintext.decode())
        except (KeyError, ValueError, InvalidTag) as e:
            logger.error(f"Failed to decrypt credential: {type(e).__name__}")
            raise CredentialInvalidError("Credential could not be decrypted") from e

    @staticmethod
    def is_encrypted(stored: Optional[Dict[str, Any]]) -> bool:
        return isinstance(stored, dict) and stored.get("format") == ENVELOPE_FORMAT
