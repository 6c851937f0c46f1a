"""Tests for the run leases."""
from __future__ import annotations

import pytest
from unittest.mock import AsyncMock

from fleet_expiry.exceptions import RunInProgressError
from fleet_expiry.lease import MemoryRunLease, RedisRunLease


class TestMemoryRunLease:

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self):
        lease = MemoryRunLease()

        assert await lease.acquire("run_a")
        assert not await lease.acquire("run_b")
        assert lease.owner == "run_a"

        await lease.release("run_a")
        assert await lease.acquire("run_b")

    @pytest.mark.asyncio
    async def test_only_owner_releases(self):
        lease = MemoryRunLease()
        await lease.acquire("run_a")

        await lease.release("run_b")

        assert lease.owner == "run_a"

    @pytest.mark.asyncio
    async def test_hold_raises_when_taken(self):
        lease = MemoryRunLease()
        await lease.acquire("run_a")

        with pytest.raises(RunInProgressError) as exc_info:
            async with lease.hold("run_b"):
                pass

        assert exc_info.value.details["lease_key"] == lease.key

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        lease = MemoryRunLease()

        with pytest.raises(RuntimeError):
            async with lease.hold("run_a"):
                raise RuntimeError("boom")

        assert lease.owner is None


class TestRedisRunLease:

    @pytest.fixture
    def client(self):
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=True)
        redis.get = AsyncMock(return_value=None)
        redis.eval = AsyncMock(return_value=1)
        return redis

    @pytest.mark.asyncio
    async def test_acquire_sets_key_with_ttl(self, client):
        lease = RedisRunLease(client=client, key="fleet:locks:test", ttl_seconds=30)

        assert await lease.acquire("run_a")

        args, kwargs = client.set.await_args
        assert args[0] == "fleet:locks:test"
        assert args[1].startswith("run_a:")
        assert kwargs == {"nx": True, "px": 30_000}

    @pytest.mark.asyncio
    async def test_acquire_fails_when_held(self, client):
        client.set.return_value = None
        client.get.return_value = "run_other:abc"
        lease = RedisRunLease(client=client)

        assert not await lease.acquire("run_a")

    @pytest.mark.asyncio
    async def test_release_compares_token(self, client):
        lease = RedisRunLease(client=client, key="fleet:locks:test")
        await lease.acquire("run_a")
        token = client.set.await_args.args[1]

        await lease.release("run_a")

        args = client.eval.await_args.args
        assert args[1:] == (1, "fleet:locks:test", token)

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self, client):
        await RedisRunLease(client=client).release("run_a")

        client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_error_is_logged_not_raised(self, client):
        client.eval.side_effect = ConnectionError("redis down")
        lease = RedisRunLease(client=client)
        await lease.acquire("run_a")

        await lease.release("run_a")

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisRunLease()
