"""Tests for the cross-process file lock."""

import asyncio
import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from recollect.lock import FileLock, LockTimeoutError


@pytest.fixture
def lock_path(temp_storage):
    return Path(temp_storage) / "recollect.lock"


def make_lock(path, **kwargs):
    kwargs.setdefault("max_wait_seconds", 0.2)
    kwargs.setdefault("retry_seconds", 0.01)
    return FileLock(path, **kwargs)


def write_lock(path, **info):
    path.write_text(json.dumps(info), encoding="utf-8")


class TestAcquireRelease:

    @pytest.mark.asyncio
    async def test_acquire_writes_holder_info(self, lock_path):
        lock = make_lock(lock_path)

        await lock.acquire("consolidate")

        info = json.loads(lock_path.read_text())
        assert info["pid"] == os.getpid()
        assert info["operation"] == "consolidate"
        assert lock.held

        assert lock.release() is True
        assert not lock_path.exists()
        assert lock.release() is False

    @pytest.mark.asyncio
    async def test_second_holder_times_out(self, lock_path):
        first = make_lock(lock_path)
        second = make_lock(lock_path, max_wait_seconds=0.05)
        await first.acquire("consolidate")

        with pytest.raises(LockTimeoutError):
            await second.acquire("graph_cleanup")

        first.release()
        await second.acquire("graph_cleanup")
        second.release()

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock_path):
        lock = make_lock(lock_path)

        with pytest.raises(ValueError):
            async with lock.hold("consolidate"):
                assert lock_path.exists()
                raise ValueError("boom")

        assert not lock_path.exists()
        assert not lock.held

    @pytest.mark.asyncio
    async def test_holders_are_serialized(self, lock_path):
        events = []

        async def worker(name):
            async with make_lock(lock_path, max_wait_seconds=5.0).hold(name):
                events.append(("start", name))
                await asyncio.sleep(0.05)
                events.append(("end", name))

        await asyncio.gather(worker("a"), worker("b"))

        assert events[0][0] == "start"
        assert events[1] == ("end", events[0][1])
        assert events[2][0] == "start"

    @pytest.mark.asyncio
    async def test_shared_instance_queues_callers(self, lock_path):
        lock = make_lock(lock_path, max_wait_seconds=0.01)
        events = []

        async def worker(name):
            async with lock.hold(name):
                events.append(("start", name))
                await asyncio.sleep(0.05)
                events.append(("end", name))

        await asyncio.gather(worker("a"), worker("b"))

        assert events == [("start", "a"), ("end", "a"), ("start", "b"), ("end", "b")]
        assert not lock.held
        assert not lock_path.exists()

    @pytest.mark.asyncio
    async def test_direct_acquire_while_held_raises(self, lock_path):
        lock = make_lock(lock_path)
        await lock.acquire("consolidate")
        try:
            with pytest.raises(RuntimeError):
                await lock.acquire("graph_cleanup")
        finally:
            lock.release()

    @pytest.mark.asyncio
    async def test_release_leaves_foreign_lock(self, lock_path):
        lock = make_lock(lock_path)
        await lock.acquire("consolidate")
        write_lock(lock_path, pid=os.getpid(), timestamp=time.time() + 1, operation="other")

        assert lock.release() is False
        assert lock_path.exists()


class TestStaleLocks:

    @pytest.mark.asyncio
    async def test_dead_holder_is_reclaimed(self, lock_path):
        write_lock(lock_path, pid=123456, timestamp=time.time(), operation="consolidate")
        lock = make_lock(lock_path)

        with patch("recollect.lock.is_process_alive", return_value=False):
            await lock.acquire("graph_cleanup")

        assert json.loads(lock_path.read_text())["pid"] == os.getpid()
        lock.release()

    @pytest.mark.asyncio
    async def test_old_lock_is_reclaimed(self, lock_path):
        write_lock(lock_path, pid=os.getpid(), timestamp=time.time() - 120, operation="consolidate")
        lock = make_lock(lock_path, stale_seconds=30.0)

        await lock.acquire("graph_cleanup")

        assert json.loads(lock_path.read_text())["operation"] == "graph_cleanup"
        lock.release()

    @pytest.mark.asyncio
    async def test_unreadable_lock_judged_by_age(self, lock_path):
        lock_path.write_text("{not json", encoding="utf-8")
        lock = make_lock(lock_path, max_wait_seconds=0.05)

        with pytest.raises(LockTimeoutError):
            await lock.acquire("consolidate")

        past = time.time() - 120
        os.utime(lock_path, (past, past))
        await lock.acquire("consolidate")
        lock.release()


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_and_force_release(self, lock_path):
        lock = make_lock(lock_path)
        assert lock.get_lock_status() == {"locked": False, "info": None}

        await lock.acquire("consolidate")
        status = lock.get_lock_status()
        assert status["locked"] is True
        assert status["info"]["operation"] == "consolidate"

        assert make_lock(lock_path).force_release() is True
        assert not lock_path.exists()
        assert make_lock(lock_path).force_release() is False

    def test_stale_lock_reports_unlocked(self, lock_path):
        write_lock(lock_path, pid=os.getpid(), timestamp=time.time() - 120, operation="consolidate")
        status = make_lock(lock_path).get_lock_status()
        assert status["locked"] is False
        assert status["info"]["operation"] == "consolidate"
