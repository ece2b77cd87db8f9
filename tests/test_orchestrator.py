import asyncio
import json

import pytest

from adflow.models import JobStatus
from adflow.orchestrator import BatchOrchestrator

from fakes import (
    FakeCopyGenerator,
    FakePublisher,
    FakeRecordSync,
    FakeResolver,
    make_context,
    row,
)


@pytest.mark.anyio
async def test_one_failing_row_does_not_affect_siblings():
    ctx = make_context(ads_publisher=FakePublisher(fail_for=["B"]))
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([row("A"), row("B"), row("C")], concurrency=2)

    assert [r.source_ref for r in result.results] == ["A", "B", "C"]
    assert [r.status for r in result.results] == [
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.COMPLETED,
    ]
    assert result.results[1].error == "publishing failed: ads platform rejected B"
    summary = result.summary
    assert (summary.total, summary.succeeded, summary.failed, summary.skipped) == (3, 2, 1, 0)


@pytest.mark.anyio
async def test_jobs_share_the_batch_id():
    orchestrator = BatchOrchestrator(make_context())

    result = await orchestrator.submit_batch([row("A"), row("B")])

    assert {job.batch_id for job in result.jobs} == {result.batch_id}
    assert len({job.id for job in result.jobs}) == 2


@pytest.mark.anyio
async def test_never_more_than_concurrency_jobs_in_flight():
    observed = []

    def count_active():
        observed.append(len(orchestrator.active_jobs()))

    ctx = make_context(copy_generator=FakeCopyGenerator(on_call=count_active, delay=0.02))
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([row(f"r{i}") for i in range(7)], concurrency=3)

    assert result.summary.succeeded == 7
    assert len(observed) == 7
    assert max(observed) <= 3
    assert max(observed) > 1


@pytest.mark.anyio
async def test_rows_are_admitted_in_order():
    resolver = FakeResolver()
    ctx = make_context(asset_resolver=resolver)
    orchestrator = BatchOrchestrator(ctx)
    refs = [f"r{i}" for i in range(5)]

    await orchestrator.submit_batch([row(ref) for ref in refs], concurrency=1)

    assert resolver.calls == refs


@pytest.mark.anyio
async def test_invalid_rows_fail_without_running():
    resolver = FakeResolver()
    ctx = make_context(asset_resolver=resolver)
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([{"id": "broken"}, "not a row", row("ok")])

    broken, garbage, ok = result.results
    assert broken.status == JobStatus.FAILED
    assert broken.source_ref == "broken"
    assert "asset_link" in broken.error
    assert garbage.status == JobStatus.FAILED
    assert garbage.source_ref == "row-2"
    assert ok.status == JobStatus.COMPLETED
    assert resolver.calls == ["ok"]


@pytest.mark.anyio
async def test_skipped_rows_are_counted_separately():
    ctx = make_context(asset_resolver=FakeResolver(missing=["gone"]))
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([row("gone"), row("here")])

    assert result.results[0].status == JobStatus.SKIPPED
    assert result.results[0].skip_reason
    assert (result.summary.succeeded, result.summary.failed, result.summary.skipped) == (1, 0, 1)


@pytest.mark.anyio
async def test_status_is_queryable_only_while_batch_runs():
    seen = {}
    orchestrator = None

    def peek():
        for snap in orchestrator.active_jobs():
            seen[snap.id] = orchestrator.get_job_status(snap.id)

    ctx = make_context(copy_generator=FakeCopyGenerator(on_call=peek))
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([row("A")])

    job_id = result.results[0].id
    assert seen[job_id].status == JobStatus.WRITING_COPY
    assert orchestrator.get_job_status(job_id) is None
    assert orchestrator.active_jobs() == []


@pytest.mark.anyio
async def test_snapshots_are_detached_from_live_jobs():
    orchestrator = None
    captured = []

    def peek():
        captured.extend(orchestrator.active_jobs())

    ctx = make_context(copy_generator=FakeCopyGenerator(on_call=peek))
    orchestrator = BatchOrchestrator(ctx)

    await orchestrator.submit_batch([row("A")])

    assert captured[0].status == JobStatus.WRITING_COPY


@pytest.mark.anyio
@pytest.mark.parametrize("concurrency", [0, -1])
async def test_non_positive_concurrency_runs_rows_one_at_a_time(concurrency):
    observed = []

    def count_active():
        observed.append(len(orchestrator.active_jobs()))

    ctx = make_context(copy_generator=FakeCopyGenerator(on_call=count_active, delay=0.01))
    orchestrator = BatchOrchestrator(ctx)

    result = await orchestrator.submit_batch([row("A"), row("B"), row("C")], concurrency=concurrency)

    assert result.summary.succeeded == 3
    assert observed == [1, 1, 1]


@pytest.mark.anyio
async def test_dry_run_is_applied_to_every_job():
    publisher = FakePublisher()
    sync = FakeRecordSync()
    orchestrator = BatchOrchestrator(make_context(ads_publisher=publisher, record_sync=sync))

    result = await orchestrator.submit_batch([row("A"), row("B")], dry_run=True)

    assert result.dry_run is True
    assert result.summary.succeeded == 2
    assert publisher.calls == []
    assert sync.calls == []


@pytest.mark.anyio
async def test_empty_batch():
    orchestrator = BatchOrchestrator(make_context())

    result = await orchestrator.submit_batch([])

    assert result.results == []
    assert result.summary.total == 0


@pytest.mark.anyio
async def test_concurrent_batches_are_independent():
    ctx = make_context(ads_publisher=FakePublisher(fail_for=["x2"]))
    orchestrator = BatchOrchestrator(ctx)

    first, second = await asyncio.gather(
        orchestrator.submit_batch([row("x1"), row("x2")], concurrency=1),
        orchestrator.submit_batch([row("y1"), row("y2")], concurrency=1),
    )

    assert first.batch_id != second.batch_id
    assert (first.summary.succeeded, first.summary.failed) == (1, 1)
    assert (second.summary.succeeded, second.summary.failed) == (2, 0)


@pytest.mark.anyio
async def test_result_serialises_to_json():
    result = await BatchOrchestrator(make_context()).submit_batch([row("A")])

    data = result.to_dict(include_jobs=True)
    json.dumps(data)
    assert data["summary"]["succeeded"] == 1
    assert data["jobs"][0]["source_ref"] == "A"
