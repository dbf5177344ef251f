"""Device-local persistence of the issued session for silent re-login.

Layers, best first: OS keyring, obfuscated local storage, plain local
storage. Every layer may be missing or broken; the cache degrades to the
next one and never raises for that. ``clear()`` wipes every layer and
records when it happened, so bytes left behind by a layer whose delete
failed are ignored on the next read.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field

from beout.client.obfuscation import LocalObfuscator
from beout.client.storage import KeyringSecureStore, KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "beout_"
CREDENTIAL_KEY = f"{KEY_PREFIX}credentials"
OBFUSCATED_KEY = f"{KEY_PREFIX}credentials_enc"
REMEMBER_ME_KEY = f"{KEY_PREFIX}remember_me"
CLEARED_AT_KEY = f"{KEY_PREFIX}cleared_at"

CREDENTIAL_VERSION = "1.0"
MAX_AGE_SECONDS = 30 * 24 * 3600


@dataclass(frozen=True)
class StoredCredential:
    token: str
    user: dict = field(default_factory=dict)
    timestamp: float = 0.0
    version: str = CREDENTIAL_VERSION

    def __repr__(self) -> str:
        return f"StoredCredential(user={self.user.get('id')!r}, timestamp={self.timestamp!r})"

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "StoredCredential":
        data = json.loads(raw)
        return cls(
            token=data["token"],
            user=data.get("user") or {},
            timestamp=float(data["timestamp"]),
            version=data.get("version", CREDENTIAL_VERSION),
        )


class SecureCredentialCache:
    def __init__(
        self,
        local: KeyValueStore,
        secure: KeyringSecureStore | None = None,
        max_age_seconds: float = MAX_AGE_SECONDS,
        clock=time.time,
    ) -> None:
        self._local = local
        self._secure = secure
        self._obfuscator = LocalObfuscator(local)
        self._max_age = max_age_seconds
        self._clock = clock

    # Layer primitives. Each swallows its own backend failure.

    async def _secure_get(self) -> str | None:
        if self._secure is None:
            return None
        try:
            return await self._secure.get(CREDENTIAL_KEY)
        except Exception as e:
            logger.info("Secure storage unavailable for read: %s", e)
            return None

    async def _secure_set(self, value: str) -> bool:
        if self._secure is None:
            return False
        try:
            await self._secure.set(CREDENTIAL_KEY, value)
            return True
        except Exception as e:
            logger.info("Secure storage unavailable for write: %s", e)
            return False

    async def _secure_delete(self) -> None:
        if self._secure is None:
            return
        try:
            await self._secure.delete(CREDENTIAL_KEY)
        except Exception as e:
            logger.warning("Could not delete credential from secure storage: %s", e)

    def _local_get(self, key: str) -> str | None:
        try:
            return self._local.get(key)
        except Exception as e:
            logger.info("Local storage unavailable for read: %s", e)
            return None

    def _local_set(self, key: str, value: str) -> bool:
        try:
            self._local.set(key, value)
            return True
        except Exception as e:
            logger.info("Local storage unavailable for write: %s", e)
            return False

    def _local_delete(self, key: str) -> None:
        try:
            self._local.delete(key)
        except Exception as e:
            logger.warning("Could not delete %s from local storage: %s", key, e)

    def _obfuscated_get(self) -> str | None:
        raw = self._local_get(OBFUSCATED_KEY)
        if raw is None:
            return None
        try:
            return self._obfuscator.decrypt(raw)
        except Exception as e:
            logger.info("Obfuscated storage unavailable: %s", e)
            return None

    def _obfuscated_set(self, value: str) -> bool:
        try:
            return self._local_set(OBFUSCATED_KEY, self._obfuscator.encrypt(value))
        except Exception as e:
            logger.info("Obfuscated storage unavailable: %s", e)
            return False

    # Public API

    async def store(self, token: str, user: dict) -> StoredCredential | None:
        """Persist a session in the best layer that accepts it."""
        credential = StoredCredential(token=token, user=user, timestamp=self._clock())
        raw = credential.to_json()

        if await self._secure_set(raw):
            layer = "secure"
        elif self._obfuscated_set(raw):
            layer = "obfuscated"
        elif self._local_set(CREDENTIAL_KEY, raw):
            layer = "plain"
        else:
            logger.warning("No storage layer accepted the credential; session will not survive a restart")
            return None

        # Only one copy: older copies in every other layer go away
        if layer != "secure":
            await self._secure_delete()
        if layer != "obfuscated":
            self._local_delete(OBFUSCATED_KEY)
        if layer != "plain":
            self._local_delete(CREDENTIAL_KEY)
        logger.debug("Stored credential in %s storage", layer)
        return credential

    def _cleared_at(self) -> float | None:
        raw = self._local_get(CLEARED_AT_KEY)
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    async def get_stored(self) -> StoredCredential | None:
        """Return the newest stored session, or None if absent, stale or expired.

        A layer whose delete failed can still hold an older session; the
        newest timestamp wins, never the layer order.
        """
        cleared_at = self._cleared_at()
        newest: StoredCredential | None = None
        for raw in (await self._secure_get(), self._obfuscated_get(), self._local_get(CREDENTIAL_KEY)):
            if raw is None:
                continue
            try:
                credential = StoredCredential.from_json(raw)
            except (ValueError, KeyError, TypeError):
                logger.warning("Ignoring unreadable stored credential")
                continue
            if cleared_at is not None and credential.timestamp < cleared_at:
                continue
            if newest is None or credential.timestamp > newest.timestamp:
                newest = credential
        if newest is None:
            return None
        if self._clock() - newest.timestamp > self._max_age:
            logger.info("Stored credential is older than %d days; clearing", self._max_age // 86400)
            await self.clear()
            return None
        return newest

    async def has_stored(self) -> bool:
        return await self.get_stored() is not None

    async def clear(self) -> None:
        """Remove the credential from every layer."""
        await self._secure_delete()
        self._local_delete(OBFUSCATED_KEY)
        self._local_delete(CREDENTIAL_KEY)
        self._local_set(CLEARED_AT_KEY, repr(self._clock()))

    def set_remember_me(self, remember: bool) -> None:
        self._local_set(REMEMBER_ME_KEY, "true" if remember else "false")

    def get_remember_me(self) -> bool:
        return self._local_get(REMEMBER_ME_KEY) == "true"
