import asyncio
import hashlib
import json
import mimetypes
import shutil
from pathlib import Path
from typing import BinaryIO, Dict, Optional

from PIL import Image

from .collaborators import ResolvedAsset
from .errors import NotAnalyzable, ValidationError

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".webm", ".mkv", ".mpeg", ".3gp", ".m4v"}
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS


def find_asset(ref: str, assets_dir: Path) -> Optional[Path]:
    """
    Try to locate the asset a row points at in the input-assets folder.

    Search heuristics (in order):
    - `ref` as a path relative to assets_dir
    - the first supported file whose slugged name equals the slugged ref
    """
    if not assets_dir.exists():
        return None

    candidate = (assets_dir / ref).resolve()
    if assets_dir.resolve() in candidate.parents and candidate.is_file():
        return candidate

    ref_slug = slugify(Path(ref).stem)
    for path in sorted(assets_dir.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            continue
        if slugify(path.stem) == ref_slug:
            return path

    return None


class LocalAssetResolver:
    """
    Resolves asset references against a local folder of pre-provided assets.

    Video durations come from an optional `<name>.json` sidecar with a
    `duration_seconds` key; image size hints are megapixels read with Pillow.
    """

    def __init__(self, assets_dir: Path) -> None:
        self.assets_dir = assets_dir

    async def resolve(self, ref: str) -> ResolvedAsset:
        path = find_asset(ref, self.assets_dir)
        if path is None:
            raise NotAnalyzable(f"no supported asset matches '{ref}' in {self.assets_dir}")

        suffix = path.suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise NotAnalyzable(f"unsupported asset type '{suffix}' for '{ref}'")

        size_hint = await asyncio.to_thread(_size_hint, path)
        fingerprint = await asyncio.to_thread(_fingerprint, path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return ResolvedAsset(
            stream=path.open("rb"),
            content_type=content_type,
            file_name=path.name,
            size_hint=size_hint,
            fingerprint=fingerprint,
        )


def _size_hint(path: Path) -> Optional[float]:
    if path.suffix.lower() in IMAGE_EXTENSIONS:
        try:
            with Image.open(path) as img:
                return round(img.width * img.height / 1_000_000, 3)
        except OSError as exc:
            raise NotAnalyzable(f"unreadable image {path.name}: {exc}") from exc

    sidecar = path.with_suffix(".json")
    if sidecar.exists():
        with sidecar.open("r", encoding="utf-8") as f:
            meta = json.load(f)
        duration = meta.get("duration_seconds")
        if duration is not None:
            return float(duration)
    return None


def _fingerprint(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class LocalAssetStore:
    """
    Stages assets under `<root>/<batch_id>/<source_ref>/<file_name>`.

    Directories are created with `exist_ok=True`, so storing into an existing
    container is a no-op for the container and a plain overwrite for the file.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def store(self, stream: BinaryIO, key_fields: Dict[str, str]) -> str:
        batch_id = key_fields.get("batch_id")
        source_ref = key_fields.get("source_ref")
        file_name = key_fields.get("file_name")
        if not batch_id or not source_ref or not file_name:
            raise ValidationError("asset store needs 'batch_id', 'source_ref' and 'file_name'")

        destination = self.root / slugify(batch_id) / slugify(source_ref) / Path(file_name).name
        await asyncio.to_thread(_copy_stream, stream, destination)
        return str(destination)


def _copy_stream(stream: BinaryIO, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    if stream.seekable():
        # A retried store must copy from the start again.
        stream.seek(0)
    with destination.open("wb") as out:
        shutil.copyfileobj(stream, out)


def slugify(text: str) -> str:
    slug = "".join(ch.lower() if ch.isalnum() else "-" for ch in text)
    while "--" in slug:
        slug = slug.replace("--", "-")
    return slug.strip("-") or "item"
