import copy
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import InvalidTransition, ValidationError


class JobStatus(str, Enum):
    QUEUED = "queued"
    ANALYZING = "analyzing"
    WRITING_COPY = "writing_copy"
    REVIEWING_COPY = "reviewing_copy"
    PUBLISHING = "publishing"
    SYNCING_RECORD = "syncing_record"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED}
)

# Edges of the job state machine. `failed` is reachable from every
# non-terminal state; `skipped` only from stages that can decide to skip.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.ANALYZING, JobStatus.FAILED, JobStatus.SKIPPED}),
    JobStatus.ANALYZING: frozenset({JobStatus.WRITING_COPY, JobStatus.FAILED, JobStatus.SKIPPED}),
    JobStatus.WRITING_COPY: frozenset({JobStatus.REVIEWING_COPY, JobStatus.FAILED, JobStatus.SKIPPED}),
    # `completed` straight from review is the dry-run exit.
    JobStatus.REVIEWING_COPY: frozenset(
        {JobStatus.PUBLISHING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED}
    ),
    JobStatus.PUBLISHING: frozenset({JobStatus.SYNCING_RECORD, JobStatus.FAILED, JobStatus.SKIPPED}),
    JobStatus.SYNCING_RECORD: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.SKIPPED: frozenset(),
}


class ComplianceOutcome(str, Enum):
    PASS = "PASS"
    PASS_WITH_FIXES = "PASS_WITH_FIXES"
    FAIL = "FAIL"


class Severity(str, Enum):
    RED = "RED"
    YELLOW = "YELLOW"


class DomainOutcome(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class Accuracy(str, Enum):
    ACCURATE = "ACCURATE"
    OVERSTATED = "OVERSTATED"
    INACCURATE = "INACCURATE"


class EvidenceStrength(str, Enum):
    STRONG = "STRONG"
    MODERATE = "MODERATE"
    WEAK = "WEAK"
    NONE = "NONE"


@dataclass
class AdCopy:
    primary_text: str
    headline: str
    # Short link description shown under the headline.
    description: Optional[str] = None


@dataclass
class ComplianceFlag:
    quoted_text: str
    rule: str
    severity: Severity
    suggested_fix: str = ""


@dataclass
class ComplianceVerdict:
    outcome: ComplianceOutcome
    flags: List[ComplianceFlag] = field(default_factory=list)

    @property
    def requires_fix(self) -> bool:
        return self.outcome != ComplianceOutcome.PASS


@dataclass
class DomainClaim:
    claim_text: str
    accuracy: Accuracy
    evidence_strength: EvidenceStrength = EvidenceStrength.NONE
    issue: Optional[str] = None
    fix: Optional[str] = None


@dataclass
class DomainVerdict:
    outcome: DomainOutcome
    claims: List[DomainClaim] = field(default_factory=list)

    @property
    def flagged_claims(self) -> List[DomainClaim]:
        return [c for c in self.claims if c.accuracy != Accuracy.ACCURATE]

    @property
    def requires_fix(self) -> bool:
        return bool(self.flagged_claims)


def revision_required(compliance: ComplianceVerdict, domain: DomainVerdict) -> bool:
    return compliance.requires_fix or domain.requires_fix


@dataclass
class JobRow:
    """
    One validated input row.

    `id` is the batch-scoped source reference (e.g. the tracker page id the
    row came from); `asset_link` is what the asset resolver looks up.
    """

    id: str
    asset_link: str
    angle: str = ""
    format: str = ""
    messenger: str = ""
    media_type: str = "image"
    deliverable_name: str = ""
    landing_page_url: Optional[str] = None
    ad_set_name: Optional[str] = None


_ROW_STRING_FIELDS = (
    "id",
    "asset_link",
    "angle",
    "format",
    "messenger",
    "media_type",
    "deliverable_name",
    "landing_page_url",
    "ad_set_name",
)


def parse_row(raw: Any) -> JobRow:
    if not isinstance(raw, dict):
        raise ValidationError(f"row must be an object, got {type(raw).__name__}")

    for key in _ROW_STRING_FIELDS:
        value = raw.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"row field '{key}' must be a string")

    row_id = (raw.get("id") or "").strip()
    if not row_id:
        raise ValidationError("row is missing 'id'")
    asset_link = (raw.get("asset_link") or "").strip()
    if not asset_link:
        raise ValidationError(f"row '{row_id}' is missing 'asset_link'")

    return JobRow(
        id=row_id,
        asset_link=asset_link,
        angle=raw.get("angle") or "",
        format=raw.get("format") or "",
        messenger=raw.get("messenger") or "",
        media_type=raw.get("media_type") or "image",
        deliverable_name=raw.get("deliverable_name") or row_id,
        landing_page_url=raw.get("landing_page_url") or None,
        ad_set_name=raw.get("ad_set_name") or None,
    )


def load_rows(path: Path) -> List[Dict[str, Any]]:
    """
    Load raw rows from a JSON file: either a list of row objects or an
    object with a `rows` list. Rows are validated later, one by one, so a
    single bad row does not sink the batch.
    """
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("rows")
    if not isinstance(data, list):
        raise ValidationError(f"{path} must contain a list of rows or an object with 'rows'")
    return data


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """
    One asset's pipeline run.

    Only the engine driving the job mutates it. `status` moves strictly along
    `TRANSITIONS`; `status_history` keeps every visited status in order.
    """

    id: str
    source_ref: str
    batch_id: str
    asset_link: str = ""
    angle: str = ""
    format: str = ""
    messenger: str = ""
    media_type: str = "image"
    deliverable_name: str = ""
    landing_page_url: Optional[str] = None
    ad_set_name: Optional[str] = None

    status: JobStatus = JobStatus.QUEUED
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    sync_error: Optional[str] = None
    retry_count: int = 0

    staged_asset_path: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    analysis_cached: bool = False
    draft_copy: Optional[AdCopy] = None
    final_copy: Optional[AdCopy] = None
    compliance_verdict: Optional[ComplianceVerdict] = None
    domain_verdict: Optional[DomainVerdict] = None
    copy_revised: bool = False
    platform_ids: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    status_history: List[JobStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append(self.status)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "batch_id" and "batch_id" in self.__dict__:
            raise AttributeError("batch_id is immutable once assigned")
        super().__setattr__(name, value)

    @classmethod
    def from_row(cls, row: JobRow, batch_id: str) -> "Job":
        return cls(
            id=new_job_id(),
            source_ref=row.id,
            batch_id=batch_id,
            asset_link=row.asset_link,
            angle=row.angle,
            format=row.format,
            messenger=row.messenger,
            media_type=row.media_type,
            deliverable_name=row.deliverable_name,
            landing_page_url=row.landing_page_url,
            ad_set_name=row.ad_set_name,
        )

    @property
    def tags(self) -> Dict[str, str]:
        """Classification tags handed to the copy generator as prompt context."""
        return {
            "deliverable_name": self.deliverable_name,
            "angle": self.angle,
            "format": self.format,
            "messenger": self.messenger,
            "media_type": self.media_type,
        }

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: JobStatus) -> None:
        if new_status not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"job {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        now = utcnow()
        if self.status == JobStatus.QUEUED and self.started_at is None:
            self.started_at = now
        self.status = new_status
        self.status_history.append(new_status)
        if new_status.is_terminal:
            self.completed_at = now
            self.duration_ms = int((now - (self.started_at or self.created_at)).total_seconds() * 1000)

    def fail(self, message: str) -> None:
        self.error = message
        self.transition(JobStatus.FAILED)

    def skip(self, reason: str) -> None:
        self.skip_reason = reason
        self.transition(JobStatus.SKIPPED)

    def snapshot(self) -> "JobSnapshot":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return _jsonable(data)


# A detached deep copy of a Job; mutating it never affects the live job.
JobSnapshot = Job


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class RowResult:
    id: str
    source_ref: str
    status: JobStatus
    error: Optional[str] = None
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "source_ref": self.source_ref, "status": self.status.value}
        if self.error:
            data["error"] = self.error
        if self.skip_reason:
            data["skip_reason"] = self.skip_reason
        return data


@dataclass
class BatchSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_results(cls, results: List[RowResult]) -> "BatchSummary":
        statuses = [r.status for r in results]
        return cls(
            total=len(results),
            succeeded=statuses.count(JobStatus.COMPLETED),
            failed=statuses.count(JobStatus.FAILED),
            skipped=statuses.count(JobStatus.SKIPPED),
        )


@dataclass
class BatchResult:
    batch_id: str
    results: List[RowResult]
    summary: BatchSummary
    jobs: List[JobSnapshot] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: int = 0

    def to_dict(self, include_jobs: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "batch_id": self.batch_id,
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
            "summary": asdict(self.summary),
            "results": [r.to_dict() for r in self.results],
        }
        if include_jobs:
            data["jobs"] = [j.to_dict() for j in self.jobs]
        return data
