"""Bounded two-pool task scheduler.

CPU-bound work (external detectors, alignments, model scoring) and
I/O-bound work (database reads, lookup coordination) run on separate
ThreadPoolExecutors so a burst of one kind cannot starve the other.
Results always come back in submission order.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, CancelledError, Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from annot_pipeline.exceptions import FatalAnnotationError
from annot_pipeline.models import TaskResult
from annot_pipeline.utils import progress_bar

logger = logging.getLogger("annot_pipeline.scheduler")

CPU = "cpu"
IO = "io"
TASK_CLASSES = (CPU, IO)

OK = "ok"
FAILED = "failed"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"
SKIPPED = "skipped"


class _NotStarted(Exception):
    """Raised inside a worker when a queued task is skipped after an abort."""


@dataclass
class Task:
    """Unit of work handed to the scheduler."""

    name: str
    fn: Callable[..., Any]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    task_class: str = CPU
    fatal: bool = False
    metadata: dict = field(default_factory=dict)
    # None uses the task class limit, 0 runs unbounded
    timeout: Optional[float] = None


class TaskScheduler:
    """Runs batches of independent tasks on a CPU pool and an I/O pool."""

    def __init__(
        self,
        threads: int = 1,
        io_multiplier: int = 4,
        timeouts: Optional[dict[str, float]] = None,
        progress: bool = False,
        poll_interval: float = 0.5,
    ):
        if threads < 1:
            raise ValueError("At least one worker thread is required.")
        if io_multiplier < 1:
            raise ValueError("io_multiplier must be at least 1.")
        self.threads = threads
        self.io_workers = threads * io_multiplier
        self._pools: dict[str, ThreadPoolExecutor] = {
            CPU: ThreadPoolExecutor(max_workers=threads, thread_name_prefix="annot-cpu"),
            IO: ThreadPoolExecutor(max_workers=self.io_workers, thread_name_prefix="annot-io"),
        }
        timeouts = timeouts or {}
        self._timeouts = {cls: (float(timeouts[cls]) if timeouts.get(cls) else None) for cls in TASK_CLASSES}
        self._progress = progress
        self._poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: dict) -> "TaskScheduler":
        pipeline = config.get("pipeline", {})
        return cls(
            threads=int(pipeline.get("threads") or 1),
            io_multiplier=int(pipeline.get("io_multiplier", 4)),
            timeouts=pipeline.get("timeouts", {}),
            progress=bool(pipeline.get("progress", False)),
        )

    def executor(self, task_class: str) -> Executor:
        """The pool backing a task class, for work nested inside a task."""
        return self._pools[task_class]

    def submit(self, task_class: str, fn: Callable[..., Any], *args, **kwargs) -> Future:
        return self._pools[task_class].submit(fn, *args, **kwargs)

    def timeout_for(self, task_class: str) -> Optional[float]:
        return self._timeouts.get(task_class)

    def _limit(self, task: Task) -> Optional[float]:
        if task.timeout is None:
            return self._timeouts.get(task.task_class)
        return float(task.timeout) or None

    def schedule(self, tasks: Iterable[Task], desc: str = "") -> list[TaskResult]:
        """Run *tasks* concurrently and collect results by submission index.

        A failing task only fails its own slot. A task marked fatal, or one
        raising a FatalAnnotationError, cancels every task that has not
        started yet; running tasks are left to finish, then the error is
        re-raised.

        Args:
            tasks: Mutually independent tasks.
            desc: Label for the progress bar and log messages.

        Returns:
            One TaskResult per task, in submission order.
        """
        tasks = list(tasks)
        results = [TaskResult(index=i, name=t.name, task_class=t.task_class) for i, t in enumerate(tasks)]
        if not tasks:
            return results

        for task in tasks:
            if task.task_class not in self._pools:
                raise ValueError(f"Unknown task class '{task.task_class}' for task {task.name}")

        abort = threading.Event()
        started: dict[int, float] = {}
        futures: dict[Future, int] = {}
        for index, task in enumerate(tasks):
            future = self._pools[task.task_class].submit(self._run, index, task, abort, started)
            futures[future] = index

        pending = set(futures)
        fatal: Optional[tuple[int, BaseException]] = None

        with progress_bar(desc=desc or "tasks", total=len(tasks), enabled=self._progress) as bar:
            while pending:
                done, pending = wait(pending, timeout=self._wait_timeout(pending, futures, tasks, started),
                                     return_when=FIRST_COMPLETED)
                for future in done:
                    index = futures[future]
                    self._collect(future, tasks[index], results[index], started)
                    bar.update(1)
                    slot = results[index]
                    if fatal is None and slot.status == FAILED and (
                        tasks[index].fatal or isinstance(slot.error, FatalAnnotationError)
                    ):
                        fatal = (index, slot.error)
                        abort.set()
                        cancelled = sum(1 for f in pending if f.cancel())
                        logger.error(
                            f"Fatal failure in task {slot.name}: {slot.error}; "
                            f"cancelled {cancelled} queued tasks"
                        )

                now = time.monotonic()
                for future in list(pending):
                    index = futures[future]
                    limit = self._limit(tasks[index])
                    if limit is None or index not in started or future.done():
                        continue
                    elapsed = now - started[index]
                    if elapsed > limit:
                        pending.discard(future)
                        slot = results[index]
                        slot.status = TIMED_OUT
                        slot.duration = elapsed
                        slot.error = TimeoutError(f"{slot.name} exceeded {limit:g}s")
                        bar.update(1)
                        logger.warning(f"Task {slot.name} timed out after {elapsed:.1f}s")

        if fatal is not None:
            raise fatal[1]

        counts = tasks_summary(results)
        logger.debug(f"Batch {desc or 'tasks'} finished: {counts}")
        return results

    def _wait_timeout(self, pending, futures, tasks, started) -> Optional[float]:
        """How long the collector may block before re-checking deadlines."""
        limits = {futures[f]: self._limit(tasks[futures[f]]) for f in pending}
        if not any(limits.values()):
            return None
        now = time.monotonic()
        remaining = [
            started[index] + limit - now
            for index, limit in limits.items()
            if limit and index in started
        ]
        if not remaining:
            return self._poll_interval
        return max(0.0, min(min(remaining), self._poll_interval))

    @staticmethod
    def _run(index: int, task: Task, abort: threading.Event, started: dict[int, float]) -> tuple[Any, float]:
        if abort.is_set():
            raise _NotStarted(task.name)
        t0 = time.monotonic()
        started[index] = t0
        value = task.fn(*task.args, **task.kwargs)
        return value, time.monotonic() - t0

    @staticmethod
    def _collect(future: Future, task: Task, slot: TaskResult, started: dict[int, float]):
        try:
            slot.value, slot.duration = future.result()
            slot.status = OK
        except (CancelledError, _NotStarted):
            slot.status = CANCELLED
        except Exception as e:
            slot.status = FAILED
            slot.error = e
            if slot.index in started:
                slot.duration = time.monotonic() - started[slot.index]
            logger.warning(f"Task {task.name} failed: {e}")
        logger.debug(f"Task {task.name} [{task.task_class}] {slot.status} in {slot.duration:.3f}s")

    def shutdown(self):
        """Release both pools. Queued work is dropped, running work is not interrupted."""
        for pool in self._pools.values():
            pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def tasks_summary(results: list[TaskResult]) -> dict[str, int]:
    """Count task results per status."""
    counts: dict[str, int] = {}
    for result in results:
        counts[result.status] = counts.get(result.status, 0) + 1
    return counts
