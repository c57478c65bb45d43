"""
File Lock - cross-process mutual exclusion for consolidation and cleanup.

The lock is a JSON file {pid, timestamp, operation} created with
O_CREAT | O_EXCL. A lock whose holder has died, or that has been held
longer than the stale timeout, may be reclaimed by the next caller.
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Backoff ceiling between acquisition attempts
MAX_RETRY_SECONDS = 1.0


class LockTimeoutError(RuntimeError):
    """The lock could not be acquired within the wait limit."""


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


class FileLock:
    """
    Exclusive lock file shared by every process using the same storage.

    Usage:
        lock = FileLock(settings.get_lock_path())
        async with lock.hold("consolidate"):
            ...
    """

    def __init__(
        self,
        path,
        stale_seconds: float = 30.0,
        max_wait_seconds: float = 30.0,
        retry_seconds: float = 0.1
    ):
        self.path = Path(path)
        self.stale_seconds = stale_seconds
        self.max_wait_seconds = max_wait_seconds
        self.retry_seconds = retry_seconds
        self._held: Optional[Dict[str, Any]] = None
        self._local: Optional[asyncio.Lock] = None

    @property
    def held(self) -> bool:
        return self._held is not None

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, info: Dict[str, Any]) -> bool:
        if not info:
            # Unreadable: possibly mid-write, judge by file age
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > self.stale_seconds

        pid = info.get("pid")
        if not isinstance(pid, int) or not is_process_alive(pid):
            return True

        timestamp = info.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            return True
        return time.time() - timestamp > self.stale_seconds

    def _try_create(self, operation: str) -> bool:
        info = {"pid": os.getpid(), "timestamp": time.time(), "operation": operation}
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info, f)
        self._held = info
        return True

    async def acquire(self, operation: str) -> None:
        """
        Wait for the lock, reclaiming it if stale.

        Raises:
            LockTimeoutError: not acquired within max_wait_seconds
        """
        if self._held is not None:
            raise RuntimeError(f"Lock already held by this instance ({self._held.get('operation')})")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.max_wait_seconds
        delay = self.retry_seconds

        while True:
            if self._try_create(operation):
                logger.debug(f"Lock acquired for {operation}")
                return

            existing = self._read()
            if existing is None:
                continue  # Released between our attempts
            if self._is_stale(existing):
                logger.warning(
                    f"Reclaiming stale lock held by pid {existing.get('pid')} "
                    f"({existing.get('operation', 'unknown')})"
                )
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(
                    f"Could not acquire lock for {operation} after {self.max_wait_seconds}s "
                    f"(held by pid {existing.get('pid')} for {existing.get('operation', 'unknown')})"
                )
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_RETRY_SECONDS)

    def release(self) -> bool:
        """Remove the lock file if it is still ours."""
        if self._held is None:
            return False

        ours = self._held
        self._held = None

        current = self._read()
        if (
            current
            and current.get("pid") == ours["pid"]
            and current.get("timestamp") == ours["timestamp"]
        ):
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            logger.debug(f"Lock released for {ours['operation']}")
            return True

        logger.warning(f"Lock for {ours['operation']} was reclaimed by another process")
        return False

    @asynccontextmanager
    async def hold(self, operation: str):
        """Hold the lock for the block; callers sharing this instance queue in turn."""
        if self._local is None:
            self._local = asyncio.Lock()
        async with self._local:
            await self.acquire(operation)
            try:
                yield self
            finally:
                self.release()

    def get_lock_status(self) -> Dict[str, Any]:
        """Whether a live holder has the lock, plus the holder's info if any."""
        info = self._read()
        if info is None:
            return {"locked": False, "info": None}
        if not info:
            return {"locked": not self._is_stale(info), "info": None}
        return {"locked": not self._is_stale(info), "info": info}

    def force_release(self) -> bool:
        """Delete the lock file regardless of holder (admin recovery)."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.warning(f"Lock file force-released: {self.path}")
        return True
