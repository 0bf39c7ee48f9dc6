"""Tests for per-deployment operation locks."""
import asyncio

import pytest

from src.rollout.deployment.locks import DeploymentLocks


class TestDeploymentLocks:

    @pytest.mark.asyncio
    async def test_entry_dropped_after_release(self):
        locks = DeploymentLocks()

        async with locks.hold(1):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_kept_while_waiter_queued(self):
        locks = DeploymentLocks()
        order = []

        async def worker(tag):
            async with locks.hold(7):
                order.append(tag)
                await asyncio.sleep(0)
                assert len(locks) == 1

        await asyncio.gather(worker("first"), worker("second"))

        assert order == ["first", "second"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_dropped_when_body_raises(self):
        locks = DeploymentLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold(3):
                raise RuntimeError("boom")

        assert len(locks) == 0
