"""
Unit tests for the operation lock.
"""

import asyncio

import pytest

from certdeploy.core.locking import LockTimeoutError, OperationLock


class TestOperationLock:
    """Test in-process and file-level exclusion."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, operation_lock):
        await operation_lock.acquire("deploy:blog")
        assert operation_lock.locked
        assert "deploy:blog" in operation_lock.lock_file.read_text()

        operation_lock.release()
        assert not operation_lock.locked

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, operation_lock):
        with pytest.raises(RuntimeError):
            async with operation_lock.hold("cert:example.com"):
                raise RuntimeError("boom")

        assert not operation_lock.locked

    @pytest.mark.asyncio
    async def test_in_process_waiter_times_out(self, operation_lock):
        async with operation_lock.hold("cert:example.com"):
            with pytest.raises(LockTimeoutError) as exc_info:
                await operation_lock.acquire("deploy:blog", timeout=0.05)

        assert exc_info.value.holder == "cert:example.com"
        assert exc_info.value.suggestion

    @pytest.mark.asyncio
    async def test_waiter_proceeds_after_release(self, operation_lock):
        order = []

        async def second():
            async with operation_lock.hold("second"):
                order.append("second")

        async with operation_lock.hold("first"):
            task = asyncio.create_task(second())
            await asyncio.sleep(0.02)
            order.append("first")

        await asyncio.wait_for(task, timeout=2)
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_file_lock_excludes_other_holders(self, operation_lock):
        other = OperationLock(lock_file=str(operation_lock.lock_file), timeout=0.05, poll_interval=0.01)

        async with operation_lock.hold("scheduler"):
            with pytest.raises(LockTimeoutError) as exc_info:
                await other.acquire("cli")

        assert "scheduler" in exc_info.value.holder
        assert not other.locked

        async with other.hold("cli"):
            assert other.locked

    @pytest.mark.asyncio
    async def test_try_hold_when_free(self, operation_lock):
        async with operation_lock.try_hold("renewal:example.com") as held:
            assert held is True
            assert operation_lock.locked

        assert not operation_lock.locked

    @pytest.mark.asyncio
    async def test_try_hold_when_busy(self, operation_lock):
        async with operation_lock.hold("deploy:blog"):
            async with operation_lock.try_hold("renewal:example.com") as held:
                assert held is False
            assert operation_lock.locked
