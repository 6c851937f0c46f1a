"""
Run lease guarding against overlapping expiration runs.

A slow run may still be in progress when the next cron tick fires, and a
manual trigger can race a scheduled one. Every run acquires the lease before
fetching its first page and releases it when it finishes. Acquisition never
waits: a held lease means another run is doing the work.

``MemoryRunLease`` covers a single process. ``RedisRunLease`` covers several
scheduler processes sharing one Redis. It expires after its TTL, so a crashed
holder cannot block runs forever.
"""
from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from .constants import SchedulerDefaults
from .exceptions import RunInProgressError
from .logging import get_logger

logger = get_logger(__name__)

# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RunLease(ABC):
    """Non-blocking mutual exclusion for expiration runs."""

    def __init__(self, key: str = SchedulerDefaults.LEASE_KEY) -> None:
        self.key = key

    @abstractmethod
    async def acquire(self, owner: str) -> bool:
        """Try to take the lease for ``owner``. Returns False if held."""

    @abstractmethod
    async def release(self, owner: str) -> None:
        """Release the lease if ``owner`` still holds it."""

    @asynccontextmanager
    async def hold(self, owner: str) -> AsyncIterator[None]:
        """Hold the lease for a block, raising RunInProgressError if taken."""
        if not await self.acquire(owner):
            raise RunInProgressError(self.key)
        try:
            yield
        finally:
            await self.release(owner)


class MemoryRunLease(RunLease):
    def __init__(self, key: str = SchedulerDefaults.LEASE_KEY) -> None:
        super().__init__(key)
        self._lock = asyncio.Lock()
        self._owner: Optional[str] = None

    async def acquire(self, owner: str) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        self._owner = owner
        return True

    async def release(self, owner: str) -> None:
        if self._lock.locked() and self._owner == owner:
            self._owner = None
            self._lock.release()

    @property
    def owner(self) -> Optional[str]:
        return self._owner


class RedisRunLease(RunLease):
    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        key: str = SchedulerDefaults.LEASE_KEY,
        ttl_seconds: int = SchedulerDefaults.LEASE_TTL_SECONDS,
    ) -> None:
        super().__init__(key)
        if client is None and not redis_url:
            raise ValueError("RedisRunLease needs a redis_url or a client")
        self._redis_url = redis_url
        self._client = client
        self._ttl_ms = ttl_seconds * 1000
        # Owner id -> random token written to Redis
        self._tokens: dict[str, str] = {}

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def acquire(self, owner: str) -> bool:
        token = f"{owner}:{uuid.uuid4().hex}"
        acquired = await self._get_client().set(self.key, token, nx=True, px=self._ttl_ms)
        if acquired:
            self._tokens[owner] = token
            return True
        holder = await self._get_client().get(self.key)
        logger.debug("Run lease held elsewhere", lease_key=self.key, holder=holder)
        return False

    async def release(self, owner: str) -> None:
        token = self._tokens.pop(owner, None)
        if token is None:
            return
        try:
            await self._get_client().eval(_RELEASE_SCRIPT, 1, self.key, token)
        except Exception as e:
            # The TTL frees the lease eventually
            logger.warning("Failed to release run lease", lease_key=self.key, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
