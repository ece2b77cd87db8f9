import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from .context import PipelineContext
from .engine import PipelineEngine
from .errors import ValidationError, describe_error
from .models import (
    BatchResult,
    BatchSummary,
    Job,
    JobSnapshot,
    JobStatus,
    RowResult,
    new_job_id,
    parse_row,
)

logger = logging.getLogger(__name__)


class BatchOrchestrator:
    """
    Fans a batch of rows out to pipeline engines.

    - At most `concurrency` jobs are non-terminal at any moment. A job is only
      created once its row is admitted, and rows are admitted in order.
    - Each admitted job runs as its own `asyncio.Task`; one row failing never
      blocks or cancels its siblings.
    - `submit_batch` returns once every row is terminal, with one result per
      row in input order.
    """

    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self._jobs: Dict[str, Job] = {}

    def get_job_status(self, job_id: str) -> Optional[JobSnapshot]:
        """Snapshot of an in-flight job; `None` once its batch has returned."""
        job = self._jobs.get(job_id)
        return job.snapshot() if job is not None else None

    def active_jobs(self) -> List[JobSnapshot]:
        return [job.snapshot() for job in self._jobs.values() if not job.is_terminal]

    async def submit_batch(
        self,
        rows: Sequence[Any],
        concurrency: Optional[int] = None,
        dry_run: bool = False,
    ) -> BatchResult:
        if concurrency is None:
            concurrency = self.context.settings.max_concurrency
        if concurrency < 1:
            logger.warning("concurrency %d is below 1; running rows one at a time", concurrency)
            concurrency = 1

        start = time.monotonic()
        batch_id = new_job_id()
        engine = PipelineEngine(self.context, dry_run=dry_run)
        slots = asyncio.Semaphore(concurrency)
        jobs: List[Job] = []
        tasks: List["asyncio.Task[JobSnapshot]"] = []

        logger.info(
            "batch %s: starting %d rows, concurrency=%d, dry_run=%s",
            batch_id,
            len(rows),
            concurrency,
            dry_run,
        )

        try:
            for index, raw in enumerate(rows):
                await slots.acquire()
                job = self._admit(raw, index, batch_id)
                jobs.append(job)
                self._jobs[job.id] = job

                if job.is_terminal:
                    # Rejected at admission; nothing to run.
                    slots.release()
                    tasks.append(_settled(job))
                    continue

                logger.info("batch %s: admitted row %d/%d (%s)", batch_id, index + 1, len(rows), job.source_ref)
                task = asyncio.ensure_future(engine.run(job))
                task.add_done_callback(lambda _t: slots.release())
                tasks.append(task)

            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            snapshots = [
                self._settle(job, outcome) for job, outcome in zip(jobs, outcomes)
            ]
        finally:
            for job in jobs:
                self._jobs.pop(job.id, None)

        results = [
            RowResult(
                id=snap.id,
                source_ref=snap.source_ref,
                status=snap.status,
                error=snap.error,
                skip_reason=snap.skip_reason,
            )
            for snap in snapshots
        ]
        summary = BatchSummary.from_results(results)
        duration_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            "batch %s: complete: %d succeeded, %d failed, %d skipped (%dms)",
            batch_id,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            duration_ms,
        )
        return BatchResult(
            batch_id=batch_id,
            results=results,
            summary=summary,
            jobs=snapshots,
            dry_run=dry_run,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _admit(raw: Any, index: int, batch_id: str) -> Job:
        try:
            row = parse_row(raw)
        except ValidationError as exc:
            ref = raw.get("id") if isinstance(raw, dict) else None
            job = Job(id=new_job_id(), source_ref=str(ref or f"row-{index + 1}"), batch_id=batch_id)
            job.fail(f"invalid row: {describe_error(exc)}")
            logger.warning("batch %s: row %d rejected: %s", batch_id, index + 1, job.error)
            return job
        return Job.from_row(row, batch_id)

    @staticmethod
    def _settle(job: Job, outcome: Any) -> JobSnapshot:
        if isinstance(outcome, BaseException):
            # Engines never raise; this only catches cancellation or bugs.
            logger.error("job %s: task ended abnormally: %r", job.id, outcome)
            if not job.is_terminal:
                job.fail(f"{job.status.value} failed: {describe_error(outcome)}")
            return job.snapshot()
        return outcome


async def _settled(job: Job) -> JobSnapshot:
    return job.snapshot()
