"""
🚌 DispatchQueue - accept-and-enqueue pour les notifications webhook

Le webhook répond dès que le job est en file; un pool borné de workers
exécute les handlers. Les erreurs des handlers sont loggées, jamais
propagées à l'appelant de submit().
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)


@dataclass
class DispatchJob:
    label: str
    func: Callable[..., Awaitable[Any]]
    args: Tuple[Any, ...] = ()


class DispatchQueue:
    """Queue bornée + N workers."""

    def __init__(self, maxsize: int = 1000, workers: int = 4):
        self.maxsize = maxsize
        self.worker_count = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

        self.processed = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        if self._workers:
            LOGGER.warning("⚠️ DispatchQueue already running")
            return
        self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dispatch-{i}")
            for i in range(self.worker_count)
        ]
        LOGGER.info(f"✅ DispatchQueue started ({self.worker_count} workers, maxsize={self.maxsize})")

    def submit(self, label: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """
        Met un job en file sans attendre son exécution.

        Returns:
            False si la file est pleine ou arrêtée (job abandonné, loggé)
        """
        if self._queue is None or not self._workers:
            LOGGER.error(f"❌ DispatchQueue not running, dropping job {label}")
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(DispatchJob(label, func, args))
        except asyncio.QueueFull:
            LOGGER.error(f"❌ DispatchQueue full ({self.maxsize}), dropping job {label}")
            self.dropped += 1
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if not self._workers:
            return
        LOGGER.info("🛑 Stopping DispatchQueue...")
        try:
            await asyncio.wait_for(self.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(f"⚠️ DispatchQueue drain timed out, {self.pending()} job(s) abandoned")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        LOGGER.info(f"✅ DispatchQueue stopped (processed={self.processed}, failed={self.failed}, dropped={self.dropped})")

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await job.func(*job.args)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                LOGGER.error(f"❌ Dispatch job {job.label} failed (worker {index}): {e}", exc_info=True)
            finally:
                self._queue.task_done()
