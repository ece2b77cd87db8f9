import asyncio
import base64
import io
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from PIL import Image

from .assets import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS
from .config import AnalysisPricing, PolicyConfig
from .errors import CostGuardRejected, NotAnalyzable
from .messaging import content_text, extract_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_EDGE = 1024

ANALYSIS_PROMPT = """You are a creative strategist analysing a paid social ad creative.
Describe what the creative actually shows so a copywriter can write matching copy.

Return ONLY valid JSON with this shape:
{
  "summary": "one or two sentences",
  "subjects": ["people, products or objects on screen"],
  "setting": "where it takes place",
  "on_screen_text": ["any visible text, verbatim"],
  "tone": "e.g. upbeat, clinical, testimonial",
  "hook": "what grabs attention first",
  "key_messages": ["claims or benefits the creative implies"]
}"""


def estimate_analysis_cost(
    size_hint: Optional[float],
    media_type: str,
    pricing: AnalysisPricing,
) -> float:
    """
    Rough USD cost of one analysis call.

    `size_hint` is seconds for video and megapixels for images. A missing
    hint is priced as output tokens only.
    """
    if size_hint is None:
        input_tokens = 0.0
    elif media_type == "video":
        input_tokens = size_hint * pricing.tokens_per_second
    else:
        input_tokens = size_hint * pricing.tokens_per_megapixel

    return (input_tokens / 1_000_000) * pricing.input_per_million + (
        pricing.output_tokens / 1_000_000
    ) * pricing.output_per_million


def media_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return "image"
    if suffix in VIDEO_EXTENSIONS:
        return "video"
    return "unknown"


class LLMMediaAnalyzer:
    """
    Analyzes staged creatives with a vision-capable LangChain chat model.

    Images are downscaled with Pillow and sent inline as base64 JPEG. Every
    call is cost-guarded first; over-ceiling assets raise `CostGuardRejected`
    and media this analyzer cannot read raise `NotAnalyzable`.
    """

    def __init__(
        self,
        llm: Any,
        policy: Optional[PolicyConfig] = None,
        max_edge: int = DEFAULT_MAX_EDGE,
    ) -> None:
        self.llm = llm
        self.policy = policy or PolicyConfig()
        self.max_edge = max_edge

    async def analyze(self, path: str, size_hint: Optional[float]) -> Dict[str, Any]:
        asset = Path(path)
        media_type = media_type_for(asset)

        cost = estimate_analysis_cost(size_hint, media_type, self.policy.analysis_pricing)
        ceiling = self.policy.max_analysis_cost_usd
        if cost > ceiling:
            raise CostGuardRejected(
                f"estimated analysis cost ${cost:.4f} exceeds ceiling ${ceiling:.4f} "
                f"({media_type}, size hint {size_hint})",
                estimated_cost=cost,
            )
        logger.info("estimated analysis cost $%.4f for %s", cost, asset.name)

        if media_type != "image":
            raise NotAnalyzable(f"{asset.name}: {media_type} media is not supported by this analyzer")
        if self.llm is None:
            raise RuntimeError("LLMMediaAnalyzer.llm is None. Configure a real LLM instance before use.")

        encoded = await asyncio.to_thread(self._encode_image, asset)
        message = HumanMessage(
            content=[
                {"type": "text", "text": "Analyse this ad creative."},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
            ]
        )
        raw = await self.llm.ainvoke([SystemMessage(content=ANALYSIS_PROMPT), message])
        analysis = extract_json(content_text(raw))
        analysis.setdefault("media_type", media_type)
        return analysis

    def _encode_image(self, path: Path) -> str:
        try:
            with Image.open(path) as img:
                img = img.convert("RGB")
                img.thumbnail((self.max_edge, self.max_edge), Image.LANCZOS)
                buffer = io.BytesIO()
                img.save(buffer, format="JPEG", quality=85)
        except OSError as exc:
            raise NotAnalyzable(f"unreadable image {path.name}: {exc}") from exc
        return base64.b64encode(buffer.getvalue()).decode("ascii")
