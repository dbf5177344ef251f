"""Store of in-flight login attempts, keyed by their unguessable challenge/state.

A record is created when a login starts, moves to ``completed`` or ``error``
at most once, and is handed out by exactly one poll (read-then-delete).
Records older than the TTL read as ``expired`` whatever their status, and a
deleted challenge can never be recreated.

Two backends: an in-process store guarded by an asyncio.Lock, and a Redis
store whose compare-and-set and consult-then-delete run as Lua scripts.
"""

import asyncio
import dataclasses
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Literal

import redis.asyncio as aioredis

from beout.config import Settings
from beout.exceptions import InvalidChallenge
from beout.metrics import oauth_sessions_total
from beout.schemas.auth import UserSummary
from beout.schemas.identity import LoginResult

logger = logging.getLogger(__name__)

SessionStatus = Literal["pending", "completed", "error"]
PollStatus = Literal["pending", "completed", "error", "expired"]
Flow = Literal["web", "mobile"]

# >= 128 bits of base64url entropy
_CHALLENGE_RE = re.compile(r"[A-Za-z0-9_\-]{22,256}")


@dataclass
class OAuthSessionRecord:
    challenge_key: str
    created_at: float
    status: SessionStatus = "pending"
    flow: Flow = "mobile"
    provider: str = "google"
    code_verifier: str | None = None
    client_id: str | None = None
    session_hint: str | None = None
    result: LoginResult | None = None
    error: str | None = None

    def __repr__(self) -> str:
        return (
            f"OAuthSessionRecord(status={self.status!r}, flow={self.flow!r}, "
            f"provider={self.provider!r}, created_at={self.created_at!r})"
        )

    def to_json(self) -> str:
        data = dataclasses.asdict(self)
        data["result"] = self.result.as_dict() if self.result else None
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "OAuthSessionRecord":
        data = json.loads(raw)
        result = data.pop("result", None)
        record = cls(**data)
        if result:
            record.result = LoginResult(token=result["token"], user=UserSummary.model_validate(result["user"]))
        return record


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    result: LoginResult | None = None
    error: str | None = None


def validate_challenge(challenge: str) -> None:
    if not _CHALLENGE_RE.fullmatch(challenge or ""):
        raise InvalidChallenge("Challenge must be at least 22 URL-safe characters")


class OAuthSessionStore(ABC):
    """Keyed record of login attempts awaiting a provider callback."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _is_expired(self, record: OAuthSessionRecord) -> bool:
        return self._clock() - record.created_at > self.ttl_seconds

    @abstractmethod
    async def create(
        self,
        challenge: str,
        *,
        flow: Flow = "mobile",
        provider: str = "google",
        code_verifier: str | None = None,
        client_id: str | None = None,
        session_hint: str | None = None,
    ) -> OAuthSessionRecord:
        """Open a pending record, or return the live record for this challenge."""

    @abstractmethod
    async def get(self, challenge: str) -> OAuthSessionRecord | None:
        """Return the live record, or None if unknown, deleted or expired."""

    @abstractmethod
    async def complete(self, challenge: str, result: LoginResult) -> bool:
        """Move a pending record to ``completed``. False if it was not pending."""

    @abstractmethod
    async def fail(self, challenge: str, error: str) -> bool:
        """Move a pending record to ``error``. False if it was not pending."""

    @abstractmethod
    async def poll(self, challenge: str) -> PollResult:
        """Report status; terminal records are delivered once and deleted."""

    @abstractmethod
    async def claim(self, challenge: str) -> OAuthSessionRecord | None:
        """Atomically take a live pending record out of the store (single use)."""

    @abstractmethod
    async def discard(self, challenge: str) -> None:
        """Delete a record without delivering it."""

    async def sweep(self) -> int:
        """Drop expired records; returns how many were removed."""
        return 0

    async def close(self) -> None:
        pass


class MemoryOAuthSessionStore(OAuthSessionStore):
    """Single-process store. Every operation runs under one asyncio.Lock."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl_seconds, clock)
        self._records: dict[str, OAuthSessionRecord] = {}
        # challenge -> deletion time, kept for one TTL so keys are never reused
        self._tombstones: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _delete(self, challenge: str) -> None:
        self._records.pop(challenge, None)
        self._tombstones[challenge] = self._clock()

    async def create(
        self,
        challenge: str,
        *,
        flow: Flow = "mobile",
        provider: str = "google",
        code_verifier: str | None = None,
        client_id: str | None = None,
        session_hint: str | None = None,
    ) -> OAuthSessionRecord:
        validate_challenge(challenge)
        async with self._lock:
            if challenge in self._tombstones:
                raise InvalidChallenge("Challenge has already been used")
            existing = self._records.get(challenge)
            if existing is not None:
                if not self._is_expired(existing):
                    return dataclasses.replace(existing)
                self._delete(challenge)
                raise InvalidChallenge("Challenge has already been used")
            record = OAuthSessionRecord(
                challenge_key=challenge,
                created_at=self._clock(),
                flow=flow,
                provider=provider,
                code_verifier=code_verifier,
                client_id=client_id,
                session_hint=session_hint,
            )
            self._records[challenge] = record
        oauth_sessions_total.labels(event="created").inc()
        return dataclasses.replace(record)

    async def get(self, challenge: str) -> OAuthSessionRecord | None:
        async with self._lock:
            record = self._records.get(challenge)
            if record is None:
                return None
            if self._is_expired(record):
                self._delete(challenge)
                return None
            return dataclasses.replace(record)

    async def _transition(self, challenge: str, status: SessionStatus, **fields) -> bool:
        async with self._lock:
            record = self._records.get(challenge)
            if record is None or record.status != "pending" or self._is_expired(record):
                return False
            record.status = status
            for name, value in fields.items():
                setattr(record, name, value)
        oauth_sessions_total.labels(event=status).inc()
        return True

    async def complete(self, challenge: str, result: LoginResult) -> bool:
        return await self._transition(challenge, "completed", result=result)

    async def fail(self, challenge: str, error: str) -> bool:
        return await self._transition(challenge, "error", error=error)

    async def poll(self, challenge: str) -> PollResult:
        async with self._lock:
            record = self._records.get(challenge)
            if record is None:
                return PollResult(status="expired")
            if self._is_expired(record):
                self._delete(challenge)
                return PollResult(status="expired")
            if record.status == "pending":
                return PollResult(status="pending")
            self._delete(challenge)
        oauth_sessions_total.labels(event="delivered").inc()
        return PollResult(status=record.status, result=record.result, error=record.error)

    async def claim(self, challenge: str) -> OAuthSessionRecord | None:
        async with self._lock:
            record = self._records.get(challenge)
            if record is None:
                return None
            self._delete(challenge)
            if record.status != "pending" or self._is_expired(record):
                return None
        oauth_sessions_total.labels(event="claimed").inc()
        return record

    async def discard(self, challenge: str) -> None:
        async with self._lock:
            if challenge in self._records:
                self._delete(challenge)

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, r in self._records.items() if now - r.created_at > self.ttl_seconds]
            for key in expired:
                self._delete(key)
            old_tombs = [k for k, t in self._tombstones.items() if now - t > self.ttl_seconds]
            for key in old_tombs:
                del self._tombstones[key]
        if expired:
            oauth_sessions_total.labels(event="expired").inc(len(expired))
            logger.info("Swept %d expired OAuth sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


_CREATE_LUA = """
if redis.call('EXISTS', KEYS[2]) == 1 then
  return {'used'}
end
local cur = redis.call('GET', KEYS[1])
if cur then
  return {'exists', cur}
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return {'created', ARGV[1]}
"""

_TRANSITION_LUA = """
local cur = redis.call('GET', KEYS[1])
if not cur then
  return 0
end
local rec = cjson.decode(cur)
if rec['status'] ~= 'pending' then
  return 0
end
rec['status'] = ARGV[1]
if ARGV[1] == 'completed' then
  rec['result'] = cjson.decode(ARGV[2])
else
  rec['error'] = ARGV[2]
end
redis.call('SET', KEYS[1], cjson.encode(rec), 'KEEPTTL')
return 1
"""

_POLL_LUA = """
local cur = redis.call('GET', KEYS[1])
if not cur then
  return false
end
local rec = cjson.decode(cur)
if rec['status'] ~= 'pending' then
  redis.call('DEL', KEYS[1])
  redis.call('SET', KEYS[2], '1', 'EX', ARGV[1])
end
return cur
"""


class RedisOAuthSessionStore(OAuthSessionStore):
    """Shared store for multi-worker deployments; Redis key TTLs do the sweeping."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = 600,
        prefix: str = "beout:oauth_session",
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds, clock)
        self._redis = redis_client
        self._prefix = prefix
        self._create_script = redis_client.register_script(_CREATE_LUA)
        self._transition_script = redis_client.register_script(_TRANSITION_LUA)
        self._poll_script = redis_client.register_script(_POLL_LUA)

    def _key(self, challenge: str) -> str:
        return f"{self._prefix}:{challenge}"

    def _tomb(self, challenge: str) -> str:
        return f"{self._prefix}:used:{challenge}"

    async def create(
        self,
        challenge: str,
        *,
        flow: Flow = "mobile",
        provider: str = "google",
        code_verifier: str | None = None,
        client_id: str | None = None,
        session_hint: str | None = None,
    ) -> OAuthSessionRecord:
        validate_challenge(challenge)
        record = OAuthSessionRecord(
            challenge_key=challenge,
            created_at=self._clock(),
            flow=flow,
            provider=provider,
            code_verifier=code_verifier,
            client_id=client_id,
            session_hint=session_hint,
        )
        outcome = await self._create_script(
            keys=[self._key(challenge), self._tomb(challenge)],
            args=[record.to_json(), self.ttl_seconds],
        )
        if outcome[0] == "used":
            raise InvalidChallenge("Challenge has already been used")
        if outcome[0] == "created":
            oauth_sessions_total.labels(event="created").inc()
        return OAuthSessionRecord.from_json(outcome[1])

    async def get(self, challenge: str) -> OAuthSessionRecord | None:
        raw = await self._redis.get(self._key(challenge))
        if raw is None:
            return None
        record = OAuthSessionRecord.from_json(raw)
        if self._is_expired(record):
            await self.discard(challenge)
            return None
        return record

    async def complete(self, challenge: str, result: LoginResult) -> bool:
        changed = await self._transition_script(
            keys=[self._key(challenge)],
            args=["completed", json.dumps(result.as_dict())],
        )
        if changed:
            oauth_sessions_total.labels(event="completed").inc()
        return bool(changed)

    async def fail(self, challenge: str, error: str) -> bool:
        changed = await self._transition_script(keys=[self._key(challenge)], args=["error", error])
        if changed:
            oauth_sessions_total.labels(event="error").inc()
        return bool(changed)

    async def poll(self, challenge: str) -> PollResult:
        raw = await self._poll_script(
            keys=[self._key(challenge), self._tomb(challenge)],
            args=[self.ttl_seconds],
        )
        if raw is None:
            return PollResult(status="expired")
        record = OAuthSessionRecord.from_json(raw)
        if self._is_expired(record):
            await self.discard(challenge)
            return PollResult(status="expired")
        if record.status == "pending":
            return PollResult(status="pending")
        oauth_sessions_total.labels(event="delivered").inc()
        return PollResult(status=record.status, result=record.result, error=record.error)

    async def claim(self, challenge: str) -> OAuthSessionRecord | None:
        pipe = self._redis.pipeline()
        pipe.get(self._key(challenge))
        pipe.delete(self._key(challenge))
        pipe.set(self._tomb(challenge), "1", ex=self.ttl_seconds)
        results = await pipe.execute()
        raw = results[0]
        if raw is None:
            return None
        record = OAuthSessionRecord.from_json(raw)
        if record.status != "pending" or self._is_expired(record):
            return None
        oauth_sessions_total.labels(event="claimed").inc()
        return record

    async def discard(self, challenge: str) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(self._key(challenge))
        pipe.set(self._tomb(challenge), "1", ex=self.ttl_seconds)
        await pipe.execute()

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_store(settings: Settings) -> OAuthSessionStore:
    if settings.oauth_session_backend == "redis":
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return RedisOAuthSessionStore(client, ttl_seconds=settings.oauth_session_ttl_seconds)
    return MemoryOAuthSessionStore(ttl_seconds=settings.oauth_session_ttl_seconds)


async def run_sweeper(store: OAuthSessionStore, interval_seconds: float) -> None:
    """Periodically drop expired records until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.sweep()
        except Exception:
            logger.exception("OAuth session sweep failed")
