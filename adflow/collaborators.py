"""
Contracts for the external services the pipeline drives.

Everything here is async and may be slow or unreliable; the engine wraps
each call in a `RetryPolicy`. Concrete local implementations live in
`assets`, `analyzer`, `messaging` and `publishing`.
"""

from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional, Protocol

from .models import AdCopy, ComplianceFlag, ComplianceVerdict, DomainClaim, DomainVerdict


@dataclass
class ResolvedAsset:
    stream: BinaryIO
    content_type: str
    file_name: str
    # Seconds for video, megapixels for images. Feeds the analyzer cost guard.
    size_hint: Optional[float] = None
    # Content digest; analyses are cached by it so a re-exported file is re-analyzed.
    fingerprint: Optional[str] = None


@dataclass
class PublishMedia:
    staged_asset_path: str
    media_type: str
    deliverable_name: str


@dataclass
class Targeting:
    ad_set_name: Optional[str] = None
    landing_page_url: Optional[str] = None


class AssetResolver(Protocol):
    async def resolve(self, ref: str) -> ResolvedAsset:
        """Raise `NotAnalyzable` when the reference matches no supported source."""
        ...


class AssetStore(Protocol):
    async def store(self, stream: BinaryIO, key_fields: Dict[str, str]) -> str:
        ...


class MediaAnalyzer(Protocol):
    async def analyze(self, path: str, size_hint: Optional[float]) -> Dict[str, Any]:
        """Raise `CostGuardRejected` or `NotAnalyzable` instead of analyzing."""
        ...


class CopyGenerator(Protocol):
    async def draft(self, analysis: Dict[str, Any], tags: Dict[str, str]) -> AdCopy:
        ...


class ComplianceReviewer(Protocol):
    async def review(self, draft: AdCopy) -> ComplianceVerdict:
        ...


class DomainReviewer(Protocol):
    async def review(self, draft: AdCopy) -> DomainVerdict:
        ...


class Reviser(Protocol):
    async def revise(
        self,
        draft: AdCopy,
        flags: List[ComplianceFlag],
        claims: List[DomainClaim],
    ) -> AdCopy:
        ...


class AdsPublisher(Protocol):
    async def publish(
        self,
        final_copy: AdCopy,
        media: PublishMedia,
        targeting: Targeting,
    ) -> Dict[str, Any]:
        """Create platform objects in a paused state and return their ids."""
        ...


class RecordSync(Protocol):
    async def update(self, record_ref: str, final_copy: AdCopy) -> bool:
        """`record_ref` is the job's `source_ref`, the id of the row's record."""
        ...
