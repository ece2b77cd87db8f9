import asyncio
import logging

import pytest

from adflow.errors import NonRetryableExternalError, StageFailed, TransientExternalError
from adflow.models import (
    Accuracy,
    AdCopy,
    DomainClaim,
    DomainOutcome,
    DomainVerdict,
    EvidenceStrength,
    Job,
)
from adflow.retry import RetryPolicy
from adflow.review import ReviewConsensus

from fakes import (
    APPROVED_CLAIM,
    FakeComplianceReviewer,
    FakeDomainReviewer,
    FakeReviser,
    Script,
    red_flag,
)


def _job() -> Job:
    return Job(id="j1", source_ref="r1", batch_id="b1")


def _draft(text: str = "Our test will cure fatigue. Book today.") -> AdCopy:
    return AdCopy(primary_text=text, headline="Know your body", description="See your results")


async def _no_sleep(_delay: float) -> None:
    return None


def _consensus(compliance=None, domain=None, reviser=None, max_retries: int = 3) -> ReviewConsensus:
    return ReviewConsensus(
        compliance_reviewer=compliance or FakeComplianceReviewer(),
        domain_reviewer=domain or FakeDomainReviewer(),
        reviser=reviser or FakeReviser(),
        retry_policy=RetryPolicy(max_retries=max_retries, sleep=_no_sleep),
    )


@pytest.mark.anyio
async def test_clean_reviews_accept_draft_without_reviser():
    reviser = FakeReviser()
    consensus = _consensus(reviser=reviser)
    job = _job()
    draft = _draft("100+ biomarkers. One blood draw.")

    outcome = await consensus.run(job, draft)

    assert outcome.revised is False
    assert outcome.final_copy == draft
    assert reviser.calls == []
    assert job.copy_revised is False
    assert job.final_copy == draft
    assert job.compliance_verdict is not None and job.domain_verdict is not None


@pytest.mark.anyio
async def test_red_flag_triggers_exactly_one_revision():
    compliance = FakeComplianceReviewer(verdict=red_flag("cure"))
    domain = FakeDomainReviewer()
    reviser = FakeReviser()
    consensus = _consensus(compliance, domain, reviser)
    job = _job()

    outcome = await consensus.run(job, _draft())

    assert len(reviser.calls) == 1
    assert outcome.revised is True
    assert job.copy_revised is True
    assert "cure" not in job.final_copy.primary_text
    assert APPROVED_CLAIM in job.final_copy.primary_text
    # Single pass: the revised copy is never re-reviewed.
    assert len(compliance.calls) == 1
    assert len(domain.calls) == 1
    assert job.compliance_verdict.flags[0].quoted_text == "cure"


@pytest.mark.anyio
async def test_reviser_receives_only_non_accurate_claims():
    claims = [
        DomainClaim("detects 1,000 conditions", Accuracy.OVERSTATED, EvidenceStrength.WEAK, issue="overstated"),
        DomainClaim("one blood draw", Accuracy.ACCURATE, EvidenceStrength.STRONG),
    ]
    domain = FakeDomainReviewer(verdict=DomainVerdict(DomainOutcome.YELLOW, claims))
    reviser = FakeReviser()
    consensus = _consensus(domain=domain, reviser=reviser)
    job = _job()

    await consensus.run(job, _draft("It detects 1,000 conditions with one blood draw."))

    sent = reviser.calls[0]
    assert [c.claim_text for c in sent["claims"]] == ["detects 1,000 conditions"]
    assert sent["flags"] == []
    assert job.copy_revised is True


@pytest.mark.anyio
async def test_reviser_description_falls_back_to_draft():
    consensus = _consensus(
        compliance=FakeComplianceReviewer(verdict=red_flag("cure")),
        reviser=FakeReviser(drop_description=True),
    )
    job = _job()

    outcome = await consensus.run(job, _draft())

    assert outcome.final_copy.description == "See your results"


@pytest.mark.anyio
async def test_reviewers_run_concurrently():
    compliance = FakeComplianceReviewer(delay=0.05)
    domain = FakeDomainReviewer(delay=0.05)
    consensus = _consensus(compliance, domain)
    job = _job()

    # Both reviewers must have been called before either finished sleeping.
    task = asyncio.ensure_future(consensus.run(job, _draft()))
    await asyncio.sleep(0.01)
    assert len(compliance.calls) == 1
    assert len(domain.calls) == 1
    await task


@pytest.mark.anyio
async def test_transient_reviewer_failure_is_retried():
    compliance = FakeComplianceReviewer(script=Script(TransientExternalError("429")))
    consensus = _consensus(compliance=compliance)
    job = _job()

    outcome = await consensus.run(job, _draft("100+ biomarkers."))

    assert outcome.revised is False
    assert len(compliance.calls) == 2
    assert job.retry_count == 1


@pytest.mark.anyio
async def test_reviewer_failure_cancels_sibling_and_propagates():
    compliance = FakeComplianceReviewer(script=Script(NonRetryableExternalError("403 forbidden")))
    domain = FakeDomainReviewer(delay=1.0)
    consensus = _consensus(compliance, domain)

    with pytest.raises(NonRetryableExternalError):
        await consensus.run(_job(), _draft())
    assert domain.cancelled is True


@pytest.mark.anyio
async def test_reviser_exhaustion_fails_stage_but_keeps_verdicts():
    reviser = FakeReviser(script=Script(default=TransientExternalError("503")))
    consensus = _consensus(
        compliance=FakeComplianceReviewer(verdict=red_flag("cure")),
        reviser=reviser,
        max_retries=2,
    )
    job = _job()

    with pytest.raises(StageFailed):
        await consensus.run(job, _draft())

    assert job.retry_count == 2
    assert job.compliance_verdict is not None
    assert job.copy_revised is False


class _StubbornReviser:
    def __init__(self) -> None:
        self.calls = 0

    async def revise(self, draft, flags, claims):
        self.calls += 1
        return AdCopy(primary_text=draft.primary_text + " Now!", headline=draft.headline)


@pytest.mark.anyio
async def test_surviving_flagged_text_is_logged_not_re_reviewed(caplog):
    compliance = FakeComplianceReviewer(verdict=red_flag("cure"))
    reviser = _StubbornReviser()
    consensus = _consensus(compliance=compliance, reviser=reviser)
    job = _job()

    with caplog.at_level(logging.WARNING, logger="adflow.review"):
        outcome = await consensus.run(job, _draft())

    assert outcome.revised is True
    assert "cure" in job.final_copy.primary_text
    assert reviser.calls == 1
    assert len(compliance.calls) == 1
    assert "still contains flagged text" in caplog.text
    assert "'cure'" in caplog.text


@pytest.mark.anyio
async def test_clean_revision_logs_no_warning(caplog):
    consensus = _consensus(compliance=FakeComplianceReviewer(verdict=red_flag("cure")))

    with caplog.at_level(logging.WARNING, logger="adflow.review"):
        await consensus.run(_job(), _draft())

    assert "still contains flagged text" not in caplog.text
