"""
Fund Network SDK - Stage pipeline

After a position is funded it moves through two follow-up stages:

    sweep -> mint

Each stage is independently retriable and a later stage never undoes an
earlier one. Executors decide how the chain is driven:

  InlineExecutor      runs sweep then mint in the caller's thread, returns
                      {"sweep": outcome, "mint": outcome}
  BackgroundExecutor  queues sweep on a worker thread and returns at once;
                      each success queues the next stage

Retrying a stage that failed after broadcasting is safe: its on-chain writes
go through the outbox, which resumes the claimed transaction by receipt
lookup instead of signing a new one.
"""

import logging
import queue
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import FundError, InfrastructureError
from .retry import backoff_delay

log = logging.getLogger(__name__)

FIRST_STAGE = "sweep"
NEXT_STAGE = {"sweep": "mint", "mint": None}

# Finished outcomes kept for inspection; oldest refs are dropped first
MAX_RESULTS = 1000


def empty_outcomes() -> Dict[str, Optional[Dict]]:
    return {stage: None for stage in NEXT_STAGE}


class Pipeline:
    """Binds stage names to the sweeper/minter and hands funded positions to an executor."""

    def __init__(self, sweeper, minter, executor):
        self.sweeper = sweeper
        self.minter = minter
        self.executor = executor
        executor.bind(self.run_stage)

    def run_stage(self, stage: str, ref: str) -> Dict:
        if stage == "sweep":
            return self.sweeper.sweep(ref)
        if stage == "mint":
            return self.minter.mint(ref)
        raise ValueError(f"Unknown stage: {stage}")

    def after_funded(self, ref: str) -> Dict[str, Optional[Dict]]:
        return self.executor.submit(FIRST_STAGE, ref)


def _should_retry(error: FundError) -> bool:
    return isinstance(error, InfrastructureError) and error.retriable


class _Executor:
    def __init__(self, attempts: int = 3, backoff: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.attempts = attempts
        self.backoff = backoff
        self.sleep = sleep
        self._runner: Optional[Callable[[str, str], Dict]] = None

    def bind(self, runner: Callable[[str, str], Dict]):
        self._runner = runner

    def _run_once(self, stage: str, ref: str):
        """(outcome, retry?) for a single attempt. Stage errors become {"ok": False} outcomes."""
        try:
            return self._runner(stage, ref), False
        except FundError as e:
            return e.to_dict(), _should_retry(e)
        except Exception as e:
            log.exception(f"{ref}: {stage} stage crashed")
            return {"ok": False, "error": str(e), "kind": "internal"}, False


# =============================================================================
# INLINE
# =============================================================================

class InlineExecutor(_Executor):
    def _attempt(self, stage: str, ref: str) -> Dict:
        for attempt in range(1, self.attempts + 1):
            outcome, retry = self._run_once(stage, ref)
            if not retry or attempt == self.attempts:
                if not outcome.get("ok"):
                    log.warning(f"{ref}: {stage} failed: {outcome.get('error')}")
                return outcome
            delay = backoff_delay(attempt, self.backoff)
            log.warning(f"{ref}: {stage} failed (attempt {attempt}/{self.attempts}), "
                        f"retrying in {delay:.1f}s: {outcome.get('error')}")
            self.sleep(delay)
        return outcome

    def submit(self, stage: str, ref: str) -> Dict[str, Optional[Dict]]:
        outcomes = empty_outcomes()
        while stage:
            outcome = self._attempt(stage, ref)
            outcomes[stage] = outcome
            if not outcome.get("ok"):
                break
            stage = NEXT_STAGE[stage]
        return outcomes


# =============================================================================
# BACKGROUND
# =============================================================================

@dataclass
class StageTask:
    stage: str
    ref: str
    attempt: int = 1
    not_before: float = 0.0


class BackgroundExecutor(_Executor):
    """
    Usage:
        executor = BackgroundExecutor(attempts=3, backoff=2.0)
        pipeline = Pipeline(sweeper, minter, executor)
        executor.start()
        ...
        executor.stop()
    """

    def __init__(self, attempts: int = 3, backoff: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 max_results: int = MAX_RESULTS):
        super().__init__(attempts, backoff, sleep)
        self.clock = clock
        self.max_results = max_results
        self.results: "OrderedDict[str, Dict[str, Optional[Dict]]]" = OrderedDict()
        self._queue: "queue.Queue[StageTask]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def submit(self, stage: str, ref: str) -> Dict[str, Optional[Dict]]:
        with self._lock:
            self._remember(ref)
        self._queue.put(StageTask(stage, ref))
        outcomes = empty_outcomes()
        outcomes[stage] = {"ok": True, "queued": True}
        return outcomes

    def _remember(self, ref: str) -> Dict[str, Optional[Dict]]:
        outcomes = self.results.setdefault(ref, empty_outcomes())
        self.results.move_to_end(ref)
        while len(self.results) > self.max_results:
            self.results.popitem(last=False)
        return outcomes

    def pending(self) -> int:
        return self._queue.qsize()

    def process(self, task: StageTask):
        wait = task.not_before - self.clock()
        if wait > 0:
            self.sleep(wait)

        outcome, retry = self._run_once(task.stage, task.ref)
        with self._lock:
            self._remember(task.ref)[task.stage] = outcome

        if outcome.get("ok"):
            nxt = NEXT_STAGE[task.stage]
            if nxt:
                self._queue.put(StageTask(nxt, task.ref))
        elif retry and task.attempt < self.attempts:
            delay = backoff_delay(task.attempt, self.backoff)
            log.warning(f"{task.ref}: {task.stage} failed (attempt {task.attempt}/{self.attempts}), "
                        f"requeued in {delay:.1f}s: {outcome.get('error')}")
            self._queue.put(StageTask(task.stage, task.ref, task.attempt + 1, self.clock() + delay))
        else:
            log.error(f"{task.ref}: {task.stage} gave up: {outcome.get('error')}")

    def run_pending(self) -> int:
        """Drain the queue in the calling thread. Returns the number of tasks run."""
        count = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return count
            try:
                self.process(task)
                count += 1
            finally:
                self._queue.task_done()

    def _worker(self):
        log.info("Stage worker started")
        while not self._stop.is_set():
            try:
                task = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.process(task)
            finally:
                self._queue.task_done()
        log.info("Stage worker stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="fund-stage-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
