"""Task Runner - claims due tasks and dispatches them through the executor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from islandloaf.engine.executor import ToolExecutor
from islandloaf.engine.queue import Task, TaskQueue, TaskStatus
from islandloaf.errors import TaskStateError
from islandloaf.security.identity import AgentIdentity

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """What one tick did."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead: int = 0
    recovered: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "dead": self.dead,
            "recovered": self.recovered,
            "details": self.details,
        }


class TaskRunner:
    """Runs one batch of due tasks per tick(). Safe to call from timers and tests."""

    def __init__(self, queue: TaskQueue, executor: ToolExecutor, batch_size: int = 10) -> None:
        self.queue = queue
        self.executor = executor
        self.batch_size = batch_size

    def tick(self) -> RunSummary:
        """
        Process one batch.

        1. recover claimed/running tasks past the liveness timeout
        2. settle failed tasks (requeue with backoff or dead-letter)
        3. claim up to batch_size due tasks and dispatch each one
        4. settle the failures from this batch
        """
        summary = RunSummary()

        summary.recovered = len(self.queue.recover_stale())
        self._settle(summary)

        claimed = self.queue.claim_batch(self.batch_size)
        summary.claimed = len(claimed)

        for task in claimed:
            try:
                self._dispatch(task, summary)
            except TaskStateError as exc:
                # Claim was recovered out from under us; the next tick settles it.
                logger.warning("Lost claim on %s: %s", task.id, exc.message)
                summary.details.append({"task_id": task.id, "status": "lost-claim"})

        self._settle(summary)

        if summary.claimed or summary.recovered:
            logger.info(
                "Tick: claimed=%d succeeded=%d failed=%d retried=%d dead=%d recovered=%d",
                summary.claimed,
                summary.succeeded,
                summary.failed,
                summary.retried,
                summary.dead,
                summary.recovered,
            )
        return summary

    def _dispatch(self, task: Task, summary: RunSummary) -> None:
        running = self.queue.start(task)
        result = self.executor.invoke(
            AgentIdentity.for_task_runner(running.role),
            running.tool_name,
            running.payload,
            idempotency_key=running.idempotency_key,
            task_id=running.id,
        )

        error = result.error
        if error is None:
            self.queue.complete(running, {"data": result.data, "cached": result.cached})
            summary.succeeded += 1
            summary.details.append(
                {
                    "task_id": running.id,
                    "tool": running.tool_name,
                    "status": TaskStatus.SUCCESS.value,
                    "cached": result.cached,
                }
            )
            return

        self.queue.fail(running, error.kind, error.message)
        summary.failed += 1
        summary.details.append(
            {
                "task_id": running.id,
                "tool": running.tool_name,
                "status": TaskStatus.FAILED.value,
                "error_kind": error.kind.value,
                "error": error.message,
            }
        )

    def _settle(self, summary: RunSummary) -> None:
        requeued, dead = self.queue.settle_failed()
        summary.retried += len(requeued)
        summary.dead += len(dead)


class PeriodicRunner:
    """Calls TaskRunner.tick() on an interval in a background thread.

    A tick that is still running when the next one is due is not overlapped;
    the late tick is skipped.
    """

    def __init__(self, runner: TaskRunner, interval_seconds: float = 30.0) -> None:
        self.runner = runner
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._busy = threading.Lock()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="task-runner", daemon=True)
        self._thread.start()
        logger.info("Task runner started (every %.1fs)", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Task runner stopped")

    def tick_once(self) -> RunSummary | None:
        """Run a tick unless one is already in progress."""
        if not self._busy.acquire(blocking=False):
            self.skipped += 1
            logger.debug("Previous tick still running; skipping")
            return None
        try:
            summary = self.runner.tick()
            self.ticks += 1
            return summary
        finally:
            self._busy.release()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.exception("Task runner tick failed")
            self._stop.wait(self.interval_seconds)
