import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Tuple

from PIL import Image

from .assets import IMAGE_EXTENSIONS, slugify
from .collaborators import PublishMedia, Targeting
from .config import PolicyConfig
from .errors import PublishError, RecordSyncError
from .models import AdCopy
from .render import PLACEMENT_RATIOS, PreviewStyle, parse_color, render_ad_preview, resize_to_aspect_ratio

logger = logging.getLogger(__name__)

PAUSED = "PAUSED"
DEFAULT_AD_SET_NAME = "default"


def build_landing_urls(landing_page_url: str, policy: PolicyConfig) -> Tuple[str, str]:
    """
    Return `(landing_url, link_url)`: the bare https landing URL shown in the
    primary text, and the same URL with the policy's UTM parameters appended
    for the ad's link.
    """
    raw = (landing_page_url or policy.default_landing_url).strip()
    landing_url = raw if raw.startswith("http") else f"https://{raw}"
    if not policy.utm_params:
        return landing_url, landing_url
    separator = "&" if "?" in landing_url else "?"
    return landing_url, f"{landing_url}{separator}{policy.utm_params}"


class LocalAdsPublisher:
    """
    Publishes ads to a local directory instead of an ads platform.

    Every object is created PAUSED. Ad sets are resolved by name: concurrent
    rows sharing a name wait on the same in-flight lookup, so each ad set is
    created once per publisher.

    Layout under `output_root`:
    - ad_sets.json                      name -> ad set id
    - ads/<ad_id>/manifest.json         creative + ad objects
    - ads/<ad_id>/<placement>.png       rendered previews (image media only)
    """

    def __init__(self, output_root: Path, policy: PolicyConfig) -> None:
        self.output_root = output_root
        self.policy = policy
        self.style = PreviewStyle(
            headline_color=parse_color(policy.headline_color),
            body_color=parse_color(policy.body_color, default=(255, 255, 255)),
            font_path=policy.font_path,
            call_to_action=policy.call_to_action,
        )
        self._ad_sets: Dict[str, "asyncio.Task[Tuple[str, bool]]"] = {}
        self._registry_lock = asyncio.Lock()

    async def publish(self, final_copy: AdCopy, media: PublishMedia, targeting: Targeting) -> Dict[str, Any]:
        staged = Path(media.staged_asset_path)
        if not staged.is_file():
            raise PublishError(f"staged asset not found: {media.staged_asset_path}")

        ad_set_id, ad_set_created = await self.resolve_ad_set(targeting.ad_set_name or DEFAULT_AD_SET_NAME)

        landing_url, link_url = build_landing_urls(targeting.landing_page_url or "", self.policy)
        ad_id = uuid.uuid4().hex
        ad_dir = self.output_root / "ads" / ad_id

        previews: List[str] = []
        if staged.suffix.lower() in IMAGE_EXTENSIONS:
            previews = await asyncio.to_thread(self._render_previews, staged, final_copy, ad_dir)

        manifest = {
            "ad": {
                "id": ad_id,
                "name": media.deliverable_name,
                "ad_set_id": ad_set_id,
                "status": PAUSED,
            },
            "creative": {
                "id": f"creative-{ad_id}",
                "name": f"{media.deliverable_name} Creative",
                "primary_text": f"{final_copy.primary_text}\n\n{landing_url}",
                "headline": final_copy.headline,
                "description": final_copy.description or self.policy.default_description,
                "call_to_action": "LEARN_MORE",
                "link_url": link_url,
                "media_path": str(staged),
                "media_type": media.media_type,
                "previews": previews,
            },
        }
        manifest_path = ad_dir / "manifest.json"
        await asyncio.to_thread(_write_json, manifest_path, manifest)

        logger.info("published %s as paused ad %s in ad set %s", media.deliverable_name, ad_id, ad_set_id)
        return {
            "ad_id": ad_id,
            "creative_id": manifest["creative"]["id"],
            "ad_set_id": ad_set_id,
            "ad_set_created": ad_set_created,
            "status": PAUSED,
            "manifest": str(manifest_path),
        }

    async def resolve_ad_set(self, name: str) -> Tuple[str, bool]:
        task = self._ad_sets.get(name)
        if task is None:
            task = asyncio.ensure_future(self._find_or_create_ad_set(name))
            self._ad_sets[name] = task
        try:
            return await asyncio.shield(task)
        except Exception:
            # Forget failed lookups so a later row can try again.
            if self._ad_sets.get(name) is task:
                del self._ad_sets[name]
            raise

    async def _find_or_create_ad_set(self, name: str) -> Tuple[str, bool]:
        async with self._registry_lock:
            return await asyncio.to_thread(self._find_or_create_ad_set_sync, name)

    def _find_or_create_ad_set_sync(self, name: str) -> Tuple[str, bool]:
        registry_path = self.output_root / "ad_sets.json"
        registry: Dict[str, Any] = {}
        if registry_path.exists():
            with registry_path.open("r", encoding="utf-8") as f:
                registry = json.load(f)

        existing = registry.get(name)
        if existing:
            return existing["id"], False

        ad_set_id = f"adset-{slugify(name)}-{uuid.uuid4().hex[:8]}"
        registry[name] = {"id": ad_set_id, "name": name, "status": PAUSED}
        _write_json(registry_path, registry)
        logger.info("created paused ad set %s (%s)", ad_set_id, name)
        return ad_set_id, True

    def _render_previews(self, staged: Path, copy: AdCopy, ad_dir: Path) -> List[str]:
        ad_dir.mkdir(parents=True, exist_ok=True)
        with Image.open(staged) as src:
            base = src.convert("RGB")

        paths = []
        for placement, ratio in PLACEMENT_RATIOS.items():
            rendered = render_ad_preview(resize_to_aspect_ratio(base, ratio), copy, self.style)
            out = ad_dir / f"{placement.replace(':', 'x')}.png"
            rendered.save(out, format="PNG")
            paths.append(str(out))
        return paths


class JsonRecordSync:
    """
    Writes final copy back into the rows JSON file the batch was loaded from,
    so the next run sees which rows already have copy.
    """

    def __init__(self, rows_path: Path) -> None:
        self.rows_path = rows_path
        self._lock = asyncio.Lock()

    async def update(self, record_ref: str, final_copy: AdCopy) -> bool:
        async with self._lock:
            await asyncio.to_thread(self._update_sync, record_ref, final_copy)
        return True

    def _update_sync(self, record_ref: str, final_copy: AdCopy) -> None:
        with self.rows_path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        rows = data.get("rows") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise RecordSyncError(f"{self.rows_path} has no rows list")

        for row in rows:
            if isinstance(row, dict) and row.get("id") == record_ref:
                row["primary_text"] = final_copy.primary_text
                row["headline"] = final_copy.headline
                row["description"] = final_copy.description
                break
        else:
            raise RecordSyncError(f"no row with id '{record_ref}' in {self.rows_path}")

        _write_json(self.rows_path, data)


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
