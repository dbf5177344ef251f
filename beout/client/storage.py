"""Device-local key/value backends used by the credential cache."""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from beout.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store, used for tests and for sessions without "remember me"."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileKeyValueStore:
    """A single JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def _load(self) -> dict[str, str]:
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("Local store %s is corrupted; starting empty", self._path)
            return {}

    def _save(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".beout-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class KeyringSecureStore:
    """OS credential vault via ``keyring`` (Keychain, Credential Locker, Secret Service).

    Calls are blocking, so they run in the default executor. A device with no
    usable backend raises ``StorageUnavailable`` and the cache moves on to the
    next layer.
    """

    def __init__(self, service_name: str = "beout") -> None:
        import keyring

        self._keyring = keyring
        self._service_name = service_name

    def is_available(self) -> bool:
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(self._keyring.get_keyring(), FailKeyring)

    async def _run(self, func, *args):
        from keyring.errors import KeyringError

        if not self.is_available():
            raise StorageUnavailable("No OS credential vault on this device", service=self._service_name)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, self._service_name, *args)
        except KeyringError as e:
            raise StorageUnavailable(str(e), service=self._service_name) from e

    async def get(self, key: str) -> str | None:
        return await self._run(self._keyring.get_password, key)

    async def set(self, key: str, value: str) -> None:
        await self._run(self._keyring.set_password, key, value)

    async def delete(self, key: str) -> None:
        from keyring.errors import PasswordDeleteError

        try:
            await self._run(self._keyring.delete_password, key)
        except StorageUnavailable as e:
            if not isinstance(e.__cause__, PasswordDeleteError):
                raise
