"""Opus Convert Service - Fan-out/join batch coordinator.

A JobBatch owns the encode jobs derived from one source file, launches them
concurrently and resolves a single aggregate BatchResult exactly once.

Resolution policy:
- First-failure-wins: the first FAILED outcome observed resolves the batch as
  FAILED, carrying that job's quality and reason.
- All-success: the batch resolves SUCCESS only when the last outstanding job
  reports SUCCESS.
- Deadline: if the batch is still pending when its timeout expires, it resolves
  FAILED with timed_out=True and outstanding jobs are cancelled.

State machine: PENDING -> RESOLVED(SUCCESS) | RESOLVED(FAILED). Both terminal.

Outcome reports are serialized by an asyncio.Lock, so two concurrent reports
can never both decide the batch. When several jobs fail at nearly the same
time, whichever report acquires the lock first supplies the reason; this is
scheduler order and is not deterministic.

Outcomes that arrive after resolution are kept in late_outcomes for
diagnostics. They never change the result or fire the resolution again. Once a
batch has failed, the output of every job that succeeded (before or after the
failure) is deleted, so a FAILED batch never leaves outputs that look valid.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from app.jobs import EncodeJobSpec, JobOutcome, Quality
from app.runner import ProcessRunner
from app.utils.atomic_io import remove_quietly

logger = logging.getLogger(__name__)

# Strong references to tasks that outlive the request that created them
_BACKGROUND_TASKS: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
    """Start a task that is kept alive until it finishes.

    The event loop only holds weak references to tasks, so fire-and-forget
    work must be anchored somewhere.
    """
    task = asyncio.create_task(coro, name=name)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    return task


class BatchStatus(StrEnum):
    """Aggregate status of a resolved batch."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchResult:
    """The one-time aggregate decision for a batch."""

    status: BatchStatus
    outputs: tuple[Path, ...] = ()
    failed_quality: Quality | None = None
    reason: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == BatchStatus.SUCCESS


class JobBatch:
    """Coordinates the concurrent encode jobs for one source file.

    Args:
        jobs: Specs to run; destinations must be distinct.
        runner: Runner used to execute each spec.
        timeout_seconds: Optional overall deadline for the batch.
        batch_id: Identifier used in log lines (random if omitted).

    Raises:
        ValueError: If jobs is empty or two jobs share a destination.
    """

    def __init__(
        self,
        jobs: Iterable[EncodeJobSpec],
        runner: ProcessRunner,
        timeout_seconds: float | None = None,
        batch_id: str | None = None,
    ):
        self.jobs: tuple[EncodeJobSpec, ...] = tuple(jobs)
        if not self.jobs:
            raise ValueError("A batch needs at least one job")
        destinations = [spec.destination_path for spec in self.jobs]
        if len(set(destinations)) != len(destinations):
            raise ValueError("Job destinations must be unique within a batch")

        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.batch_id = batch_id or uuid.uuid4().hex
        self.outcomes: dict[EncodeJobSpec, JobOutcome] = {}
        self.late_outcomes: list[JobOutcome] = []

        self._lock = asyncio.Lock()
        self._resolved_event = asyncio.Event()
        self._result: BatchResult | None = None
        self._listeners: list[Callable[[BatchResult], None]] = []
        self._tasks: list[asyncio.Task] = []
        self._started = False

    # --- Resolution state ---

    @property
    def resolved(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> BatchResult | None:
        return self._result

    def _resolved_result(self) -> BatchResult:
        if self._result is None:
            raise RuntimeError(f"Batch {self.batch_id} has not resolved")
        return self._result

    @property
    def pending_jobs(self) -> list[EncodeJobSpec]:
        """Jobs that have not reported an outcome yet."""
        return [spec for spec in self.jobs if spec not in self.outcomes]

    def add_done_callback(self, callback: Callable[[BatchResult], None]) -> None:
        """Register a listener for the resolution event.

        Each listener is called exactly once with the BatchResult. A listener
        added after resolution is called immediately.
        """
        if self._result is not None:
            callback(self._result)
        else:
            self._listeners.append(callback)

    async def wait(self) -> BatchResult:
        """Wait for the batch to resolve and return its result."""
        await self._resolved_event.wait()
        return self._resolved_result()

    # --- Execution ---

    async def run(self) -> BatchResult:
        """Launch every job concurrently and wait for the single resolution.

        Jobs still running after a FAILED resolution keep running in the
        background; their outcomes land in late_outcomes.

        Raises:
            RuntimeError: If the batch was already started.
        """
        if self._started:
            raise RuntimeError(f"Batch {self.batch_id} already started")
        self._started = True

        logger.info("Starting batch %s with %d jobs", self.batch_id, len(self.jobs))
        self._tasks = [
            spawn_background(
                self._run_job(spec), name=f"encode-{self.batch_id}-{int(spec.quality)}"
            )
            for spec in self.jobs
        ]

        try:
            await asyncio.wait_for(self._resolved_event.wait(), timeout=self.timeout_seconds)
        except TimeoutError:
            await self._resolve(
                BatchResult(
                    status=BatchStatus.FAILED,
                    reason=f"batch timed out after {self.timeout_seconds}s",
                    timed_out=True,
                )
            )
        except asyncio.CancelledError:
            self.cancel_pending()
            raise

        result = self._resolved_result()
        if result.timed_out:
            self.cancel_pending()
        return result

    def cancel_pending(self) -> int:
        """Cancel jobs that are still running.

        Returns:
            Number of tasks cancelled.
        """
        cancelled = 0
        for task in self._tasks:
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Batch %s: cancelled %d outstanding jobs", self.batch_id, cancelled)
        return cancelled

    async def wait_closed(self) -> None:
        """Wait until every job task has finished (or been cancelled)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _run_job(self, spec: EncodeJobSpec) -> None:
        try:
            outcome = await self.runner.run(spec)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Runners must not raise; convert anyway so the batch still resolves
            logger.exception("Runner raised for batch %s quality=%d", self.batch_id, spec.quality)
            outcome = JobOutcome.failed(spec, f"runner error: {e}")
        await self.report(outcome)

    # --- Outcome reporting ---

    async def report(self, outcome: JobOutcome) -> None:
        """Record one job outcome and resolve the batch if it is decisive.

        Raises:
            ValueError: If the outcome belongs to a job outside this batch.
            RuntimeError: If the job already reported an outcome.
        """
        spec = outcome.spec
        if spec not in self.jobs:
            raise ValueError(f"Outcome for unknown job: {spec.destination_path}")

        async with self._lock:
            if spec in self.outcomes:
                raise RuntimeError(f"Job already reported: {spec.destination_path}")
            self.outcomes[spec] = outcome

            if self._result is not None:
                self.late_outcomes.append(outcome)
                logger.info(
                    "Batch %s: late outcome quality=%d status=%s (already %s)",
                    self.batch_id,
                    spec.quality,
                    outcome.status,
                    self._result.status,
                )
                if outcome.ok and not self._result.ok:
                    self._discard_output(spec)
                return

            if not outcome.ok:
                self._resolve_locked(
                    BatchResult(
                        status=BatchStatus.FAILED,
                        failed_quality=spec.quality,
                        reason=outcome.reason or "encode failed",
                    )
                )
            elif len(self.outcomes) == len(self.jobs):
                self._resolve_locked(
                    BatchResult(
                        status=BatchStatus.SUCCESS,
                        outputs=tuple(s.destination_path for s in self.jobs),
                    )
                )

    async def _resolve(self, result: BatchResult) -> None:
        async with self._lock:
            if self._result is None:
                self._resolve_locked(result)

    def _resolve_locked(self, result: BatchResult) -> None:
        """Make the one-time resolution. Caller holds the lock."""
        self._result = result
        if result.ok:
            logger.info(
                "Batch %s resolved: success (%d outputs)", self.batch_id, len(result.outputs)
            )
        else:
            logger.warning(
                "Batch %s resolved: failed quality=%s reason=%s",
                self.batch_id,
                result.failed_quality,
                result.reason,
            )
            for spec, outcome in self.outcomes.items():
                if outcome.ok:
                    self._discard_output(spec)

        self._resolved_event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback(result)
            except Exception:
                logger.exception("Batch %s: resolution listener failed", self.batch_id)

    def _discard_output(self, spec: EncodeJobSpec) -> None:
        """Best-effort removal of an output that belongs to a failed batch."""
        if remove_quietly(spec.destination_path):
            logger.debug("Batch %s: removed output %s", self.batch_id, spec.destination_path)
