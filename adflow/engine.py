import logging
from dataclasses import replace
from typing import Any, Dict

from .collaborators import PublishMedia, Targeting
from .context import PipelineContext
from .errors import (
    CostGuardRejected,
    NotAnalyzable,
    PublishError,
    RecordSyncError,
    StageFailed,
    ValidationError,
    describe_error,
)
from .models import AdCopy, Job, JobSnapshot, JobStatus
from .review import ReviewConsensus

logger = logging.getLogger(__name__)


class PipelineEngine:
    """
    Drives a single job through its stages, strictly in order:

    analyzing -> writing_copy -> reviewing_copy -> publishing -> syncing_record

    Each external call goes through the context's retry policy; the review
    stage is delegated to `ReviewConsensus`. `run()` never raises: any
    failure ends as `status=failed` with a readable `error`.
    """

    def __init__(self, context: PipelineContext, dry_run: bool = False) -> None:
        self.context = context
        self.dry_run = dry_run
        self.retry = context.retry_policy()
        self.consensus = ReviewConsensus(
            compliance_reviewer=context.compliance_reviewer,
            domain_reviewer=context.domain_reviewer,
            reviser=context.reviser,
            retry_policy=self.retry,
        )

    async def run(self, job: Job) -> JobSnapshot:
        try:
            await self._drive(job)
        except Exception as exc:
            if isinstance(exc, (StageFailed, ValidationError, PublishError)):
                logger.error("job %s: %s", job.id, _failure_message(job, exc))
            else:
                logger.exception("job %s: unexpected error while %s", job.id, job.status.value)
            if not job.is_terminal:
                job.fail(_failure_message(job, exc))
        return job.snapshot()

    async def _drive(self, job: Job) -> None:
        self._advance(job, JobStatus.ANALYZING)
        try:
            await self._analyze(job)
        except (NotAnalyzable, CostGuardRejected) as exc:
            job.skip(describe_error(exc))
            logger.info("job %s: skipped (%s)", job.id, job.skip_reason)
            return

        self._advance(job, JobStatus.WRITING_COPY)
        draft = await self._write_copy(job)

        self._advance(job, JobStatus.REVIEWING_COPY)
        outcome = await self.consensus.run(job, draft)
        logger.info("job %s: copy accepted (revised=%s)", job.id, outcome.revised)

        if self.dry_run:
            self._advance(job, JobStatus.COMPLETED)
            return

        self._advance(job, JobStatus.PUBLISHING)
        await self._publish(job)

        self._advance(job, JobStatus.SYNCING_RECORD)
        await self._sync_record(job)

        self._advance(job, JobStatus.COMPLETED)

    def _advance(self, job: Job, status: JobStatus) -> None:
        previous = job.status
        job.transition(status)
        logger.info(
            "job %s (batch %s, row %s): %s -> %s",
            job.id,
            job.batch_id,
            job.source_ref,
            previous.value,
            status.value,
        )

    async def _analyze(self, job: Job) -> None:
        stage = JobStatus.ANALYZING.value
        ctx = self.context

        resolved = await self.retry.run(job, stage, ctx.asset_resolver.resolve, job.asset_link)
        key_fields = {
            "batch_id": job.batch_id,
            "source_ref": job.source_ref,
            "file_name": resolved.file_name,
            "content_type": resolved.content_type,
        }
        try:
            staged_path = await self.retry.run(job, stage, ctx.asset_store.store, resolved.stream, key_fields)
        finally:
            resolved.stream.close()
        job.staged_asset_path = staged_path

        # Without a content fingerprint the batch-scoped staged path is the key.
        cache_key = resolved.fingerprint or staged_path
        cached = ctx.analysis_cache.get(cache_key)
        if cached is not None:
            logger.info("job %s: analysis cache hit for %s", job.id, cache_key)
            job.analysis = cached
            job.analysis_cached = True
            return

        async def analyze_with_slot() -> Dict[str, Any]:
            # The slot is held per call only, never across backoff sleeps.
            async with ctx.analyzer_semaphore:
                return await ctx.media_analyzer.analyze(staged_path, resolved.size_hint)

        analysis = await self.retry.run(job, stage, analyze_with_slot)
        if not isinstance(analysis, dict):
            raise ValidationError(f"analyzer returned {type(analysis).__name__}, expected an object")
        ctx.analysis_cache.put(cache_key, analysis)
        job.analysis = analysis

    async def _write_copy(self, job: Job) -> AdCopy:
        draft = await self.retry.run(
            job,
            JobStatus.WRITING_COPY.value,
            self.context.copy_generator.draft,
            job.analysis or {},
            job.tags,
        )
        if not draft.primary_text or not draft.headline:
            raise ValidationError("copy generator returned incomplete copy")
        if not draft.description:
            draft = replace(draft, description=self.context.policy.default_description)
        job.draft_copy = draft
        return draft

    async def _publish(self, job: Job) -> None:
        media = PublishMedia(
            staged_asset_path=job.staged_asset_path or "",
            media_type=job.media_type,
            deliverable_name=job.deliverable_name or job.source_ref,
        )
        targeting = Targeting(ad_set_name=job.ad_set_name, landing_page_url=job.landing_page_url)
        job.platform_ids = await self.retry.run(
            job,
            JobStatus.PUBLISHING.value,
            self.context.ads_publisher.publish,
            job.final_copy,
            media,
            targeting,
        )

    async def _sync_record(self, job: Job) -> None:
        # Best effort: a failed sync is noted on the job but never fails it.
        try:
            ok = await self.retry.run(
                job,
                JobStatus.SYNCING_RECORD.value,
                self.context.record_sync.update,
                job.source_ref,
                job.final_copy,
            )
            if ok is False:
                raise RecordSyncError("record sync reported failure")
        except Exception as exc:
            job.sync_error = describe_error(exc)
            logger.warning("job %s: record sync failed: %s", job.id, job.sync_error)


def _failure_message(job: Job, exc: BaseException) -> str:
    if isinstance(exc, StageFailed):
        return str(exc)
    return f"{job.status.value} failed: {describe_error(exc)}"
