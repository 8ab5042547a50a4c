"""
Task Scheduler — the single timer queue owned by a session orchestrator.

Every timer in a session (disruption ticks, hardware-failure auto-clear,
continuous-noise lifecycle) is a task on this queue instead of a free-running
timer handle. Due tasks run one after another from one place, so timer
callbacks never interleave with each other, and teardown is a single
``cancel_all()`` that drains and discards everything still pending.

Two ways to drive it:
- ``await scheduler.start()`` runs a background loop that sleeps until the
  next task is due (production)
- ``scheduler.run_due()`` executes whatever is due right now against the
  injected clock (tests, simulations)
"""
from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from utils.clock import Clock, now_ms

logger = structlog.get_logger()


@dataclass(order=True)
class ScheduledTask:
    due_ms: float
    seq: int
    name: str = field(compare=False, default="")
    callback: Callable[[], Any] = field(compare=False, default=None)
    interval_ms: Optional[float] = field(compare=False, default=None)
    cancelled: bool = field(compare=False, default=False)
    finished: bool = field(compare=False, default=False)   # one-shot task has run

    @property
    def repeating(self) -> bool:
        return self.interval_ms is not None

    @property
    def live(self) -> bool:
        return not (self.cancelled or self.finished)

    def cancel(self) -> None:
        self.cancelled = True


class TaskScheduler:
    """Serialized timer queue with drain-on-teardown cancellation."""

    def __init__(self, clock: Clock = now_ms):
        self._clock = clock
        self._heap: list[ScheduledTask] = []
        self._seq = itertools.count()
        self._inflight: set[asyncio.Task] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self.executed = 0

    # ── Scheduling ────────────────────────────────────────

    def call_later(self, delay_ms: float, callback: Callable[[], Any], name: str = "") -> ScheduledTask:
        """Run ``callback`` once, ``delay_ms`` from now."""
        task = ScheduledTask(
            due_ms=self._clock() + max(0.0, delay_ms),
            seq=next(self._seq),
            name=name or getattr(callback, "__name__", "task"),
            callback=callback,
        )
        self._push(task)
        return task

    def call_every(self, interval_ms: float, callback: Callable[[], Any], name: str = "") -> ScheduledTask:
        """Run ``callback`` every ``interval_ms`` until cancelled."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        task = ScheduledTask(
            due_ms=self._clock() + interval_ms,
            seq=next(self._seq),
            name=name or getattr(callback, "__name__", "task"),
            callback=callback,
            interval_ms=interval_ms,
        )
        self._push(task)
        return task

    def spawn(self, awaitable: Awaitable[Any], name: str = "") -> Optional[asyncio.Task]:
        """
        Track a coroutine started from a timer callback so ``cancel_all``
        can cancel it too. Without a running event loop the coroutine is
        closed and skipped.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.debug("scheduler_spawn_skipped_no_loop", name=name)
            return None
        task = loop.create_task(awaitable, name=name or None)
        self._inflight.add(task)
        task.add_done_callback(self._on_inflight_done)
        return task

    def _on_inflight_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("scheduled_coroutine_failed", name=task.get_name(), error=str(exc))

    def _push(self, task: ScheduledTask) -> None:
        heapq.heappush(self._heap, task)
        if self._wakeup is not None:
            self._wakeup.set()

    # ── Execution ─────────────────────────────────────────

    def run_due(self) -> int:
        """Execute every task due at the current clock reading. Returns the count run."""
        ran = 0
        now = self._clock()
        while self._heap and self._heap[0].due_ms <= now:
            task = heapq.heappop(self._heap)
            if task.cancelled:
                continue
            if task.repeating:
                next_due = task.due_ms + task.interval_ms
                if next_due <= now:
                    # missed ticks collapse into one
                    next_due = now + task.interval_ms
                task.due_ms = next_due
                task.seq = next(self._seq)
                heapq.heappush(self._heap, task)
            else:
                task.finished = True
            self._execute(task)
            ran += 1
        self.executed += ran
        return ran

    def _execute(self, task: ScheduledTask) -> None:
        try:
            result = task.callback()
        except Exception as e:
            logger.error("scheduled_task_failed", name=task.name, error=str(e))
            return
        if inspect.isawaitable(result):
            self.spawn(result, name=task.name)

    def next_due_in_ms(self) -> Optional[float]:
        """Milliseconds until the next live task, or None if nothing is pending."""
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, self._heap[0].due_ms - self._clock())

    @property
    def pending(self) -> int:
        return sum(1 for t in self._heap if not t.cancelled)

    # ── Cancellation ──────────────────────────────────────

    def cancel_all(self) -> int:
        """Drain and discard every pending task and cancel in-flight coroutines."""
        drained = 0
        for task in self._heap:
            if not task.cancelled:
                task.cancel()
                drained += 1
        self._heap.clear()
        for inflight in list(self._inflight):
            inflight.cancel()
        self._inflight.clear()
        if drained:
            logger.debug("scheduler_drained", tasks=drained)
        return drained

    # ── Background loop ───────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(), name="task_scheduler")
        logger.debug("scheduler_started")

    async def stop(self) -> None:
        self._running = False
        self.cancel_all()
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._wakeup = None
        logger.debug("scheduler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self.run_due()
            wait_ms = self.next_due_in_ms()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(),
                    timeout=None if wait_ms is None else wait_ms / 1000.0,
                )
            except asyncio.TimeoutError:
                pass
