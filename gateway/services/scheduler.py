# services/scheduler.py
"""Delayed-task scheduler interface and in-process implementation.

"Run job X at time T", fired once per schedule call. The in-process
implementation keeps a priority queue of (run_at, seq, job_id) drained by
an asyncio worker loop; each due job runs in a thread executor so that
synchronous job handlers never block the event loop.

No external dependencies (Celery, cron) needed. Scheduled entries live in
memory only; pending jobs are rediscovered from the job store on start.
"""

import asyncio
import heapq
import itertools
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Set, Tuple

from gateway.core.errors import GatewayError
from gateway.core.logger import get_logger

logger = get_logger("scheduler")


class Scheduler(ABC):
    """Abstract interface for single-fire delayed execution."""

    @abstractmethod
    def schedule(self, job_id: str, delay: float = 0) -> None:
        """Run ``job_id`` once, ``delay`` seconds from now."""
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class InProcessScheduler(Scheduler):
    """Asyncio timer queue running jobs on a bounded thread pool."""

    def __init__(
        self,
        runner: Optional[Callable[[str], Any]] = None,
        concurrency: int = 4,
        clock: Callable[[], float] = time.time,
    ):
        """
        runner: callable(job_id) executed for every due entry
            (normally AsyncJobProcessor.process_job).
        """
        self._runner = runner
        self._clock = clock
        self._concurrency = max(1, concurrency)
        self._heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._mutex = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False

    def set_runner(self, runner: Callable[[str], Any]) -> None:
        self._runner = runner

    @property
    def running(self) -> bool:
        return self._running

    def pending(self) -> List[Tuple[float, str]]:
        """Scheduled (run_at, job_id) pairs, soonest first."""
        with self._mutex:
            return [(run_at, job_id) for run_at, _, job_id in sorted(self._heap)]

    def schedule(self, job_id: str, delay: float = 0) -> None:
        run_at = self._clock() + max(0.0, delay)
        with self._mutex:
            heapq.heappush(self._heap, (run_at, next(self._seq), job_id))
        logger.debug(f"Scheduled job {job_id} in {delay:.0f}s")
        self._notify()

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or self._wakeup is None or loop.is_closed():
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    async def start(self) -> None:
        if self._running:
            return
        if self._runner is None:
            raise RuntimeError("Scheduler has no runner")
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._executor = ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="job-worker")
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())
        logger.info(f"Scheduler started with {self._concurrency} workers")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Scheduler stopped")

    def _pop_due(self) -> Tuple[List[str], Optional[float]]:
        """Due job ids and seconds until the next entry (None if empty)."""
        now = self._clock()
        due = []
        with self._mutex:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])
            wait = self._heap[0][0] - now if self._heap else None
        return due, wait

    async def _worker_loop(self) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)
        while self._running:
            due, wait = self._pop_due()
            for job_id in due:
                task = asyncio.create_task(self._run(job_id, semaphore))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            if due:
                continue

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait if wait is not None else 1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    async def _run(self, job_id: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await self._loop.run_in_executor(self._executor, self._runner, job_id)
            except GatewayError as e:
                # Expected outcomes (retry scheduled, already processed, ...)
                logger.info(f"Job {job_id} run ended: {e.code}: {e.message}")
            except Exception:
                logger.exception(f"Unhandled error running job {job_id}")
