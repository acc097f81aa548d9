"""
Retention Scheduler for generated downloadable files.

The persisted expires_at column is the only source of truth:
- The periodic sweep deletes every row with expires_at <= now and is the
  path that survives restarts.
- Per-file one-shot timers only make deletion prompt while the process
  keeps running.
- Deletion is idempotent, so a timer and a sweep racing on the same file
  is harmless.
- Failures are logged and left for the next sweep, never retried in a loop.
"""

import asyncio
import time
from typing import Callable, Final, Protocol

import structlog

from kr1_memory.models import GeneratedFile

logger = structlog.get_logger(__name__)

# Sweep every 30 minutes
DEFAULT_SWEEP_INTERVAL_SECONDS: Final[float] = 30 * 60

Clock = Callable[[], int]


def system_clock_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class RetentionTarget(Protocol):
    """What the scheduler needs from the store."""

    async def list_expired_files(self, now_ms: int) -> list[GeneratedFile]:
        ...

    async def delete_expired_file(self, file_id: str, file_path: str) -> bool:
        ...


class RetentionScheduler:
    """
    One-shot expiry timers plus a periodic sweep.

    Timers run on the event loop outside the request path.
    """

    def __init__(
        self,
        target: RetentionTarget,
        clock: Clock = system_clock_ms,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._target = target
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[bool]] = set()
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        """Number of armed one-shot timers."""
        return len(self._timers)

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    # =========================================================================
    # One-shot timers
    # =========================================================================

    def schedule(self, file_id: str, file_path: str, expires_at_ms: int) -> None:
        """
        Arm a deletion timer for a file.

        Fires immediately when the file is already expired.
        """
        self._cancel_timer(file_id)

        delay_seconds = (expires_at_ms - self._clock()) / 1000
        if delay_seconds <= 0:
            self._spawn_delete(file_id, file_path)
            return

        loop = asyncio.get_running_loop()
        self._timers[file_id] = loop.call_later(
            delay_seconds, self._on_timer, file_id, file_path
        )
        logger.debug("File deletion scheduled", file_id=file_id, delay_seconds=delay_seconds)

    def _on_timer(self, file_id: str, file_path: str) -> None:
        self._timers.pop(file_id, None)
        self._spawn_delete(file_id, file_path)

    def _spawn_delete(self, file_id: str, file_path: str) -> None:
        task = asyncio.create_task(self._delete(file_id, file_path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self, file_id: str) -> None:
        handle = self._timers.pop(file_id, None)
        if handle is not None:
            handle.cancel()

    async def _delete(self, file_id: str, file_path: str) -> bool:
        try:
            return await self._target.delete_expired_file(file_id, file_path)
        except Exception as e:
            logger.warning(
                "Expired file deletion failed - left for next sweep",
                file_id=file_id,
                error=str(e),
            )
            return False

    # =========================================================================
    # Periodic sweep
    # =========================================================================

    async def sweep(self) -> int:
        """
        Delete every file whose expiry has passed.

        Returns:
            Number of files deleted
        """
        now_ms = self._clock()
        expired = await self._target.list_expired_files(now_ms)

        deleted = 0
        for generated in expired:
            self._cancel_timer(generated.id)
            if await self._delete(generated.id, generated.file_path):
                deleted += 1

        if expired:
            logger.info("Expired files swept", expired=len(expired), deleted=deleted)
        return deleted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Cleanup sweep failed", error=str(e))

    def start(self) -> None:
        """Start the periodic sweep (no-op if already running)."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.debug("Retention sweep started", interval_seconds=self._sweep_interval)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def cancel_pending(self) -> None:
        """Disarm all one-shot timers and abandon in-flight deletions."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for task in list(self._tasks):
            task.cancel()

    async def stop(self) -> None:
        """Cancel timers, in-flight deletions and the sweep loop."""
        self.cancel_pending()

        pending: list[asyncio.Task] = list(self._tasks)
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            pending.append(self._sweep_task)
            self._sweep_task = None

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug("Retention scheduler stopped")
