"""Dispatch loops: the shared claim/execute/resolve step and its two drivers."""

from __future__ import annotations

import logging
import math
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from ecosystem_queue.queue.continuations import ContinuationScheduler, HttpContinuationTrigger
from ecosystem_queue.queue.executors import ExecutorContext, execute_task
from ecosystem_queue.queue.governor import RateLimitGovernor
from ecosystem_queue.queue.models import (
    Completed,
    Failed,
    QueueName,
    RateLimited,
    Skipped,
    TaskOutcome,
    TaskType,
)
from ecosystem_queue.queue.repository import TaskRepository
from ecosystem_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

# Persistent drain order; chat creation is the most expensive and goes first.
DRAIN_ORDER: tuple[QueueName, ...] = (
    QueueName.CHAT_CREATION,
    QueueName.TOPIC_ACTIONS,
    QueueName.UNIFIED,
)


class CycleStatus(str, Enum):
    PROCESSED = "processed"
    IDLE = "idle"
    RATE_LIMITED = "rate_limited"
    WAITING = "waiting"


@dataclass(slots=True)
class CycleResult:
    """What one dispatch step did."""

    status: CycleStatus
    queue: QueueName
    task_id: int | None = None
    task_type: TaskType | None = None
    outcome: TaskOutcome | None = None
    wait_seconds: int | None = None


@dataclass(slots=True)
class LoopSummary:
    """Aggregate persistent-loop counters for CLI reporting."""

    cycles: int = 0
    processed: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    rate_limited: int = 0
    errors: int = 0
    recovered: int = 0


class TaskProcessor:
    """Governor check, claim, execute and resolve for a single task."""

    def __init__(
        self,
        *,
        tasks: TaskRepository,
        governor: RateLimitGovernor,
        context: ExecutorContext,
        worker_id: str,
    ) -> None:
        self.tasks = tasks
        self.governor = governor
        self.context = context
        self.worker_id = worker_id

    def process_one(self, queue: QueueName, *, force: bool = False) -> CycleResult:
        """Process at most one task of ``queue``.

        ``force`` ignores ``scheduled_at``; the governor still applies.
        """

        wait_seconds = self.governor.get_wait_seconds()
        if wait_seconds > 0:
            logger.info("Global FloodWait active: %ss left, %s idle", wait_seconds, queue.value)
            return CycleResult(
                status=CycleStatus.RATE_LIMITED,
                queue=queue,
                wait_seconds=wait_seconds,
            )

        task = self.tasks.claim_next(queue, worker_id=self.worker_id, ignore_schedule=force)
        if task is None:
            return CycleResult(status=CycleStatus.IDLE, queue=queue)

        logger.info(
            "Processing task %s (%s) from %s, attempt %s",
            task.task_id,
            task.task_type.value,
            queue.value,
            task.attempt,
        )
        outcome = execute_task(task, self.context)
        result = CycleResult(
            status=CycleStatus.PROCESSED,
            queue=queue,
            task_id=task.task_id,
            task_type=task.task_type,
            outcome=outcome,
        )

        match outcome:
            case RateLimited(wait_seconds=wait, error=error):
                self.governor.set_wait(wait, reason=f"task {task.task_id}: {error}")
                self.tasks.resolve(task.task_id, outcome)
                result.wait_seconds = wait
                logger.warning(
                    "FloodWait hit by task %s; rescheduled in %ss, dispatch paused",
                    task.task_id,
                    wait,
                )
            case Skipped(note=note):
                self.tasks.resolve(task.task_id, outcome)
                logger.info("Task %s skipped: %s", task.task_id, note)
            case Failed(error=error, failure_class=failure_class):
                self.tasks.resolve(task.task_id, outcome)
                logger.error(
                    "Task %s failed (%s): %s",
                    task.task_id,
                    failure_class.value,
                    error,
                )
            case Completed(note=note):
                self.tasks.resolve(task.task_id, outcome)
                logger.info("Task %s completed%s", task.task_id, f": {note}" if note else "")
        return result


class SelfChainingDispatcher:
    """Short-lived dispatch handler: one task per invocation, then chain.

    Every path that leaves work behind records a durable continuation, so the
    pipeline keeps moving even when the handler process dies after returning.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        processor: TaskProcessor,
        continuations: ContinuationScheduler,
        queue: QueueName = QueueName.UNIFIED,
        inline_wait_limit_seconds: int = 15,
        stale_processing_seconds: int = 1_800,
        trigger: HttpContinuationTrigger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.processor = processor
        self.continuations = continuations
        self.queue = queue
        self.inline_wait_limit_seconds = inline_wait_limit_seconds
        self.stale_processing_seconds = stale_processing_seconds
        self.trigger = trigger
        self._sleep = sleep

    def run_cycle(self, *, force: bool = False) -> CycleResult:
        # A handler that died after claiming leaves its task in processing.
        self.processor.tasks.recover_stale_processing(
            stale_after=timedelta(seconds=self.stale_processing_seconds),
        )
        wait_seconds = self.processor.governor.get_wait_seconds()
        if wait_seconds > 0:
            self._chain(wait_seconds)
            return CycleResult(
                status=CycleStatus.RATE_LIMITED,
                queue=self.queue,
                wait_seconds=wait_seconds,
            )

        if not force:
            next_at = self.processor.tasks.next_pending_at(self.queue)
            if next_at is None:
                return CycleResult(status=CycleStatus.IDLE, queue=self.queue)
            delay = math.ceil((next_at - utc_now()).total_seconds())
            if delay > self.inline_wait_limit_seconds:
                self._chain(delay)
                logger.info("Next %s task due in %ss, chained", self.queue.value, delay)
                return CycleResult(
                    status=CycleStatus.WAITING,
                    queue=self.queue,
                    wait_seconds=delay,
                )
            if delay > 0:
                self._sleep(delay)

        result = self.processor.process_one(self.queue, force=force)
        if result.status in (CycleStatus.PROCESSED, CycleStatus.RATE_LIMITED):
            self._chain(result.wait_seconds or 0)
        return result

    def _chain(self, delay_seconds: int) -> None:
        run_at = utc_now() + timedelta(seconds=max(0, delay_seconds))
        self.continuations.schedule(self.queue, run_at)
        if self.trigger is not None and delay_seconds <= 0:
            self.trigger.fire(self.queue)


class PersistentDispatcher:
    """Long-running loop draining the queues in a fixed order."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        processor: TaskProcessor,
        task_delays: dict[QueueName, float] | None = None,
        idle_seconds: float = 3.0,
        error_backoff_seconds: float = 5.0,
        stale_processing_seconds: int = 1_800,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.processor = processor
        self.task_delays = task_delays or {
            QueueName.CHAT_CREATION: 1.0,
            QueueName.TOPIC_ACTIONS: 0.5,
            QueueName.UNIFIED: 0.5,
        }
        self.idle_seconds = idle_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.stale_processing_seconds = stale_processing_seconds
        self._sleep = sleep or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_loop(self, *, max_cycles: int | None = None) -> LoopSummary:
        """Run until stopped by a signal or after ``max_cycles`` cycles."""

        summary = LoopSummary()
        logger.info("Persistent dispatcher %s started", self.processor.worker_id)
        with self._signal_handlers():
            while not self._stop_requested:
                if max_cycles is not None and summary.cycles >= max_cycles:
                    break
                summary.cycles += 1
                try:
                    did_work = self.run_cycle(summary)
                except Exception:
                    summary.errors += 1
                    logger.exception("Dispatch cycle failed; backing off")
                    self._sleep(self.error_backoff_seconds)
                    continue
                if not did_work:
                    self._sleep(self.idle_seconds)
        logger.info(
            "Persistent dispatcher %s stopped%s",
            self.processor.worker_id,
            f" by {self._stop_signal_name}" if self._stop_signal_name else "",
        )
        return summary

    def run_cycle(self, summary: LoopSummary) -> bool:
        """Drain every queue once; returns whether any task was processed."""

        summary.recovered += self.processor.tasks.recover_stale_processing(
            stale_after=timedelta(seconds=self.stale_processing_seconds),
        )
        wait_seconds = self.processor.governor.get_wait_seconds()
        if wait_seconds > 0:
            logger.info("Global FloodWait active: sleeping %ss", wait_seconds)
            self._sleep(wait_seconds)
            return True

        did_work = False
        for queue in DRAIN_ORDER:
            while not self._stop_requested:
                result = self.processor.process_one(queue)
                if result.status == CycleStatus.RATE_LIMITED:
                    return True
                if result.status != CycleStatus.PROCESSED:
                    break
                did_work = True
                _count_outcome(summary, result.outcome)
                if isinstance(result.outcome, RateLimited):
                    return True
                self._sleep(self.task_delays.get(queue, 0.0))
            if self._stop_requested:
                break
        return did_work

    def request_stop(self, *, signal_name: str = "request") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Stop requested (%s); finishing current task", signal_name)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _count_outcome(summary: LoopSummary, outcome: TaskOutcome | None) -> None:
    summary.processed += 1
    match outcome:
        case Completed():
            summary.completed += 1
        case Skipped():
            summary.skipped += 1
        case Failed():
            summary.failed += 1
        case RateLimited():
            summary.rate_limited += 1
