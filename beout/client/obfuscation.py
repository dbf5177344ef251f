"""Obfuscation for credentials that have to live in plain local storage.

NaCl SecretBox (XSalsa20-Poly1305) with a random per-device key kept in the
same local store. This stops casual reading of the file, nothing more: the
OS keyring is the only layer that actually protects the token.
"""

import base64
import logging

import nacl.exceptions
import nacl.secret
import nacl.utils

from beout.client.storage import KeyValueStore

logger = logging.getLogger(__name__)

DEVICE_KEY_NAME = "beout_device_key"


class LocalObfuscator:
    def __init__(self, store: KeyValueStore, key_name: str = DEVICE_KEY_NAME) -> None:
        self._store = store
        self._key_name = key_name
        self._box: nacl.secret.SecretBox | None = None

    def _get_box(self) -> nacl.secret.SecretBox:
        if self._box is None:
            key_b64 = self._store.get(self._key_name)
            if key_b64:
                key = base64.b64decode(key_b64)
            else:
                key = nacl.utils.random(nacl.secret.SecretBox.KEY_SIZE)
                self._store.set(self._key_name, base64.b64encode(key).decode("ascii"))
            self._box = nacl.secret.SecretBox(key)
        return self._box

    def encrypt(self, plaintext: str) -> str:
        """Encrypt and return base64 text (nonce prepended)."""
        return base64.b64encode(self._get_box().encrypt(plaintext.encode("utf-8"))).decode("ascii")

    def decrypt(self, ciphertext: str) -> str | None:
        """Return the plaintext, or None if it was written under another key."""
        try:
            return self._get_box().decrypt(base64.b64decode(ciphertext)).decode("utf-8")
        except (nacl.exceptions.CryptoError, ValueError):
            logger.warning("Discarding local credential that cannot be decrypted")
            return None
