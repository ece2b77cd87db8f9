import asyncio
from dataclasses import dataclass, field

from .cache import AnalysisCache
from .collaborators import (
    AdsPublisher,
    AssetResolver,
    AssetStore,
    ComplianceReviewer,
    CopyGenerator,
    DomainReviewer,
    MediaAnalyzer,
    RecordSync,
    Reviser,
)
from .config import PipelineSettings, PolicyConfig
from .retry import RetryPolicy


@dataclass
class PipelineContext:
    """
    Everything a batch run shares: the collaborators, settings, policy data
    and the process-wide resources (analyzer semaphore, analysis cache).

    Build one per process and hand it to every `BatchOrchestrator`; tests
    build their own to stay isolated.
    """

    asset_resolver: AssetResolver
    asset_store: AssetStore
    media_analyzer: MediaAnalyzer
    copy_generator: CopyGenerator
    compliance_reviewer: ComplianceReviewer
    domain_reviewer: DomainReviewer
    reviser: Reviser
    ads_publisher: AdsPublisher
    record_sync: RecordSync
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    analysis_cache: AnalysisCache = field(init=False, repr=False)
    analyzer_semaphore: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.analysis_cache = AnalysisCache(
            ttl_seconds=self.settings.analysis_cache_ttl_hours * 3600,
            max_entries=self.settings.analysis_cache_size,
        )
        self.analyzer_semaphore = asyncio.Semaphore(self.settings.analyzer_concurrency)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.settings.max_retries,
            backoff_seconds=self.settings.backoff_seconds,
            max_backoff_seconds=self.settings.max_backoff_seconds,
        )
