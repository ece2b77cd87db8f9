import io
import json
from pathlib import Path

import pytest
from PIL import Image

from adflow.assets import LocalAssetResolver, LocalAssetStore, find_asset, slugify
from adflow.errors import NotAnalyzable, ValidationError


@pytest.fixture
def assets_dir(tmp_path):
    root = tmp_path / "assets"
    (root / "spring").mkdir(parents=True)
    Image.new("RGB", (1000, 500), (10, 20, 30)).save(root / "spring" / "Hero Shot.png")
    (root / "promo.mp4").write_bytes(b"\x00\x00")
    (root / "promo.json").write_text(json.dumps({"duration_seconds": 42}))
    (root / "notes.txt").write_text("ignore me")
    return root


def test_slugify():
    assert slugify("Hero Shot (v2)!") == "hero-shot-v2"
    assert slugify("***") == "item"


def test_find_asset_by_relative_path_and_slug(assets_dir):
    assert find_asset("spring/Hero Shot.png", assets_dir).name == "Hero Shot.png"
    assert find_asset("hero-shot", assets_dir).name == "Hero Shot.png"
    assert find_asset("notes", assets_dir) is None
    assert find_asset("../../etc/passwd", assets_dir) is None


@pytest.mark.anyio
async def test_resolver_reports_image_megapixels(assets_dir):
    resolved = await LocalAssetResolver(assets_dir).resolve("hero shot")
    try:
        assert resolved.file_name == "Hero Shot.png"
        assert resolved.content_type == "image/png"
        assert resolved.size_hint == 0.5
    finally:
        resolved.stream.close()


@pytest.mark.anyio
async def test_resolver_reads_video_duration_sidecar(assets_dir):
    resolved = await LocalAssetResolver(assets_dir).resolve("promo")
    resolved.stream.close()
    assert resolved.size_hint == 42.0


@pytest.mark.anyio
async def test_resolver_missing_asset_is_not_analyzable(assets_dir):
    with pytest.raises(NotAnalyzable):
        await LocalAssetResolver(assets_dir).resolve("nothing-like-this")


@pytest.mark.anyio
async def test_resolver_does_not_match_partial_names(tmp_path):
    Image.new("RGB", (10, 10)).save(tmp_path / "ad-12.png")

    assert find_asset("ad-1", tmp_path) is None
    with pytest.raises(NotAnalyzable):
        await LocalAssetResolver(tmp_path).resolve("ad-1")


@pytest.mark.anyio
async def test_resolver_fingerprint_follows_content(tmp_path):
    path = tmp_path / "hero.png"
    resolver = LocalAssetResolver(tmp_path)

    Image.new("RGB", (10, 10), (255, 0, 0)).save(path)
    red = await resolver.resolve("hero")
    red.stream.close()
    Image.new("RGB", (40, 40), (0, 0, 255)).save(path)
    blue = await resolver.resolve("hero")
    blue.stream.close()

    assert red.fingerprint and blue.fingerprint
    assert red.fingerprint != blue.fingerprint


@pytest.mark.anyio
async def test_store_stages_per_batch_and_row(tmp_path):
    store = LocalAssetStore(tmp_path / "staged")
    keys = {"batch_id": "b1", "source_ref": "Row 1", "file_name": "hero.png"}

    first = await store.store(io.BytesIO(b"one"), keys)
    stream = io.BytesIO(b"two")
    stream.read()
    again = await store.store(stream, keys)
    other = await store.store(io.BytesIO(b"three"), dict(keys, batch_id="b2"))

    assert first == again
    assert Path(first) == tmp_path / "staged" / "b1" / "row-1" / "hero.png"
    # Stream is rewound before copying.
    assert Path(again).read_bytes() == b"two"
    assert Path(other).parent.parent.name == "b2"
    assert Path(first).read_bytes() == b"two"


@pytest.mark.anyio
async def test_store_requires_keys(tmp_path):
    with pytest.raises(ValidationError):
        await LocalAssetStore(tmp_path).store(io.BytesIO(b""), {"source_ref": "r1"})
