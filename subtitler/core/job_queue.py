"""
Task queue and worker pool.

Stages are dispatched as tasks onto a time-ordered queue and executed by a
pool of daemon worker threads. Each stage kind carries a RetryPolicy
(tries, backoff ladder, hard timeout); after the last failed attempt the
stage's ``failed`` hook is called so the job (or chunk) is marked Failed.

An attempt that runs past its timeout cannot be killed; it is abandoned and
its task's ``cancelled`` event is set. Handlers call ``raise_if_cancelled``
before writing state so an abandoned attempt stops at its next checkpoint.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from subtitler.core.config import QueueSettings, RetryPolicy
from subtitler.core.constants import Stage
from subtitler.core.error_codes import StageTimeout, is_retryable_exception

logger = logging.getLogger(__name__)

_attempt = threading.local()


class AttemptCancelled(Exception):
    """The current attempt was abandoned after its timeout."""


def attempt_cancelled() -> bool:
    """True when called from an attempt thread whose task has timed out."""
    task = getattr(_attempt, 'task', None)
    return task is not None and task.cancelled.is_set()


def raise_if_cancelled():
    if attempt_cancelled():
        raise AttemptCancelled(f"{_attempt.task.describe()} was abandoned")


@dataclass
class Task:
    stage: Stage
    args: tuple = ()
    attempt: int = 1
    cancelled: threading.Event = field(default_factory=threading.Event, compare=False, repr=False)

    def describe(self) -> str:
        return f"{self.stage.value}{list(self.args)}"


@dataclass(order=True)
class _Scheduled:
    run_at: float
    order: int
    task: Task = field(compare=False)


@dataclass
class _StageHandler:
    run: Callable[..., None]
    failed: Optional[Callable[..., None]]
    policy: RetryPolicy


class TaskQueue:
    """
    Runs registered stage handlers on worker threads.

        queue = TaskQueue(settings.queue)
        queue.register(Stage.START, orchestrator.start, orchestrator.start_failed)
        queue.start()
        queue.dispatch(Stage.START, job_id)
        queue.join()
    """

    def __init__(self, settings: QueueSettings, clock=time.monotonic):
        self.settings = settings
        self._clock = clock
        self._handlers: dict[Stage, _StageHandler] = {}
        self._heap: list[_Scheduled] = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._active = 0
        self._workers: list[threading.Thread] = []
        self._stop_event = threading.Event()

    # ── Registration ──────────────────────────────────────────────────

    def policy_for(self, stage: Stage) -> RetryPolicy:
        return {
            Stage.START: self.settings.start,
            Stage.PROCESS_CHUNK: self.settings.process_chunk,
            Stage.TRANSLATE: self.settings.translate,
            Stage.FINALIZE: self.settings.finalize,
        }[stage]

    def register(self, stage: Stage, run: Callable[..., None],
                 failed: Callable[..., None] | None = None,
                 policy: RetryPolicy | None = None):
        """
        ``run(*args)`` executes one attempt; ``failed(*args, error)`` is
        called once retries are exhausted or the error is not retryable.
        """
        self._handlers[stage] = _StageHandler(run, failed, policy or self.policy_for(stage))

    # ── Dispatch ──────────────────────────────────────────────────────

    def dispatch(self, stage: Stage, *args, delay: float = 0.0):
        if stage not in self._handlers:
            raise KeyError(f"No handler registered for stage {stage.value}")
        self._schedule(Task(stage, tuple(args)), delay)

    def _schedule(self, task: Task, delay: float):
        with self._cond:
            heapq.heappush(self._heap,
                           _Scheduled(self._clock() + max(0.0, delay), next(self._counter), task))
            self._cond.notify_all()
        logger.debug("Scheduled %s (attempt %d) in %.1fs", task.describe(), task.attempt, delay)

    # ── Worker pool ───────────────────────────────────────────────────

    def start(self):
        """Start the worker threads."""
        if self._workers:
            return
        self._stop_event.clear()
        for index in range(max(1, self.settings.workers)):
            worker = threading.Thread(target=self._worker_loop, name=f"subtitler-worker-{index}",
                                      daemon=True)
            worker.start()
            self._workers.append(worker)

    def stop(self):
        """Stop pulling new tasks; running attempts finish on their own."""
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        for worker in self._workers:
            worker.join(timeout=1)
        self._workers = []

    def pending(self) -> int:
        with self._cond:
            return len(self._heap) + self._active

    def join(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued, scheduled or running."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._heap or self._active:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining if remaining is not None else 0.5)
        return True

    def _next_task(self) -> Task | None:
        with self._cond:
            while not self._stop_event.is_set():
                if self._heap:
                    wait = self._heap[0].run_at - self._clock()
                    if wait <= 0:
                        self._active += 1
                        return heapq.heappop(self._heap).task
                    self._cond.wait(timeout=wait)
                else:
                    self._cond.wait(timeout=0.5)
        return None

    def _worker_loop(self):
        while True:
            task = self._next_task()
            if task is None:
                return
            try:
                self._execute(task)
            except Exception as e:
                logger.error("Worker error on %s: %s", task.describe(), e, exc_info=True)
            finally:
                with self._cond:
                    self._active -= 1
                    self._cond.notify_all()

    # ── Attempts ──────────────────────────────────────────────────────

    def _execute(self, task: Task):
        handler = self._handlers[task.stage]
        policy = handler.policy
        try:
            self._run_attempt(handler.run, task, policy.timeout_seconds)
            return
        except Exception as e:
            error = e

        if is_retryable_exception(error) and task.attempt < policy.tries:
            delay = policy.delay_for(task.attempt)
            logger.warning("%s failed (attempt %d/%d): %s — retrying in %.0fs",
                           task.describe(), task.attempt, policy.tries, error, delay)
            self._schedule(Task(task.stage, task.args, task.attempt + 1), delay)
            return

        logger.error("%s failed permanently after %d attempt(s): %s",
                     task.describe(), task.attempt, error)
        if handler.failed:
            try:
                handler.failed(*task.args, error)
            except Exception:
                logger.error("Failure hook for %s raised", task.describe(), exc_info=True)

    def _run_attempt(self, run: Callable[..., None], task: Task, timeout: float | None):
        """
        Run one attempt on its own thread. An attempt that outlives
        ``timeout`` is abandoned and reported as StageTimeout.
        """
        outcome: dict = {}

        def target():
            _attempt.task = task
            try:
                run(*task.args)
            except Exception as e:
                outcome['error'] = e

        attempt = threading.Thread(target=target, name=f"{task.stage.value}-attempt", daemon=True)
        attempt.start()
        attempt.join(timeout if timeout and timeout > 0 else None)

        if attempt.is_alive():
            task.cancelled.set()
            raise StageTimeout(task.stage.value, timeout)
        if 'error' in outcome:
            raise outcome['error']
