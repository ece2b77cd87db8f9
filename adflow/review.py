import asyncio
import logging
from dataclasses import dataclass, replace
from typing import List

from .collaborators import ComplianceReviewer, DomainReviewer, Reviser
from .errors import ValidationError
from .models import AdCopy, ComplianceVerdict, DomainClaim, DomainVerdict, Job, revision_required
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

REVIEW_STAGE = "reviewing_copy"


@dataclass
class ReviewOutcome:
    final_copy: AdCopy
    compliance: ComplianceVerdict
    domain: DomainVerdict
    revised: bool


class ReviewConsensus:
    """
    Decides whether a draft is publishable and applies at most one fix.

    Both reviewers see the same draft concurrently. If either asks for a
    change the reviser runs exactly once with every flag and every
    non-accurate claim, and its output is final: it is not sent back
    through the reviewers.
    """

    def __init__(
        self,
        compliance_reviewer: ComplianceReviewer,
        domain_reviewer: DomainReviewer,
        reviser: Reviser,
        retry_policy: RetryPolicy,
    ) -> None:
        self.compliance_reviewer = compliance_reviewer
        self.domain_reviewer = domain_reviewer
        self.reviser = reviser
        self.retry_policy = retry_policy

    async def run(self, job: Job, draft: AdCopy) -> ReviewOutcome:
        compliance, domain = await self._review_both(job, draft)

        # Kept on the job for audit even if the revision below fails.
        job.compliance_verdict = compliance
        job.domain_verdict = domain

        logger.info(
            "job %s: compliance=%s (%d flags), domain=%s (%d claims)",
            job.id,
            compliance.outcome.value,
            len(compliance.flags),
            domain.outcome.value,
            len(domain.claims),
        )

        if not revision_required(compliance, domain):
            job.final_copy = draft
            job.copy_revised = False
            return ReviewOutcome(final_copy=draft, compliance=compliance, domain=domain, revised=False)

        flagged_claims = domain.flagged_claims
        logger.info(
            "job %s: revising draft for %d flags and %d claims",
            job.id,
            len(compliance.flags),
            len(flagged_claims),
        )
        revised = await self.retry_policy.run(
            job,
            REVIEW_STAGE,
            self.reviser.revise,
            draft,
            list(compliance.flags),
            flagged_claims,
        )
        if not revised.primary_text or not revised.headline:
            raise ValidationError("reviser returned incomplete copy")
        if not revised.description:
            revised = replace(revised, description=draft.description)

        survivors = _surviving_flags(revised, compliance, flagged_claims)
        if survivors:
            # Single pass: noted for operators, the revised copy still stands.
            logger.warning(
                "job %s: revised copy still contains flagged text: %s",
                job.id,
                ", ".join(repr(text) for text in survivors),
            )

        job.final_copy = revised
        job.copy_revised = True
        return ReviewOutcome(final_copy=revised, compliance=compliance, domain=domain, revised=True)

    async def _review_both(self, job: Job, draft: AdCopy):
        compliance_task = asyncio.ensure_future(
            self.retry_policy.run(job, REVIEW_STAGE, self.compliance_reviewer.review, draft)
        )
        domain_task = asyncio.ensure_future(
            self.retry_policy.run(job, REVIEW_STAGE, self.domain_reviewer.review, draft)
        )
        try:
            return await asyncio.gather(compliance_task, domain_task)
        except BaseException:
            for task in (compliance_task, domain_task):
                task.cancel()
            # Let the cancelled sibling unwind before the error propagates.
            await asyncio.gather(compliance_task, domain_task, return_exceptions=True)
            raise


def _surviving_flags(revised: AdCopy, compliance: ComplianceVerdict, claims: List[DomainClaim]) -> List[str]:
    texts = [f.quoted_text for f in compliance.flags] + [c.claim_text for c in claims]
    body = "\n".join(filter(None, (revised.primary_text, revised.headline, revised.description))).lower()
    return [text for text in texts if text and text.lower() in body]
