"""
Tests for the pure compositing core: decode, tile, blend, encode.

Run with: python -m pytest tests/test_core.py -v
"""

import asyncio
import base64
import io
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import numpy as np
import pytest
from PIL import Image

from socialmark.core import (
    BlendError, BlendErrorKind, CompositorConfig, DecodeError, DecodeErrorKind,
    EncodeError, EncodeErrorKind, ImageDecoder, ImageFormat, SourceImage,
    VisibleWatermarker, WatermarkSpec, WatermarkStyle, compose, compute_tiles,
    decode_bytes, download_filename, encode, save_composited,
    stride_factor_for_text, tile_bounds
)
from socialmark.core.visible import MAX_MASK_CACHE_SIZE

RED = (255, 0, 0)


def png_bytes(width: int = 64, height: int = 48, color=RED) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def solid_image(width: int = 64, height: int = 48, color=RED) -> SourceImage:
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[..., :3] = color
    pixels[..., 3] = 255
    return SourceImage(source_id="solid", pixels=pixels)


def create_test_image(directory: Path, width: int = 320, height: int = 240) -> Path:
    """Create a gradient PNG on disk."""
    xs = np.linspace(0, 255, width, dtype=np.float64)
    ys = np.linspace(0, 255, height, dtype=np.float64)
    arr = np.zeros((height, width, 3), dtype=np.uint8)
    arr[..., 0] = xs[np.newaxis, :].astype(np.uint8)
    arr[..., 1] = ys[:, np.newaxis].astype(np.uint8)
    arr[..., 2] = 128
    path = directory / "gradient.png"
    Image.fromarray(arr).save(path)
    return path


def decoded_pixels(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as image:
        return np.array(image.convert("RGBA"))


# =============================================================================
# Tile pattern generator
# =============================================================================

def test_tiles_empty_for_degenerate_inputs():
    assert compute_tiles(0, 100, "@Brand", 20, 3.0) == []
    assert compute_tiles(100, 0, "@Brand", 20, 3.0) == []
    assert compute_tiles(100, 100, "", 20, 3.0) == []
    assert compute_tiles(100, 100, "   ", 20, 3.0) == []
    assert compute_tiles(100, 100, "@Brand", 20, 0.0) == []


def test_tiles_are_deterministic_and_row_major():
    first = compute_tiles(300, 200, "@Brand", 24, 2.5)
    second = compute_tiles(300, 200, "@Brand", 24, 2.5)

    assert first == second
    keys = [(p.y, p.x) for p in first]
    assert keys == sorted(keys)
    assert all(p.rotation_degrees == -30.0 for p in first)


@pytest.mark.parametrize("width,height,font_size,factor", [
    (800, 800, 33, 5.0),
    (1, 1, 20, 2.0),
    (1080, 1920, 40, 3.3),
    (257, 61, 12, 7.1),
])
def test_tiles_cover_the_whole_image(width, height, font_size, factor):
    stride = font_size * factor
    placements = compute_tiles(width, height, "@Brand", font_size, factor)
    boxes = [tile_bounds(p, stride) for p in placements]

    xs = sorted({p.x for p in placements})
    ys = sorted({p.y for p in placements})
    assert len(placements) == len(xs) * len(ys)

    # Adjacent tiles touch, so the grid leaves no gaps
    assert all(b - a == pytest.approx(stride) for a, b in zip(xs, xs[1:]))
    assert all(b - a == pytest.approx(stride) for a, b in zip(ys, ys[1:]))

    assert min(box[0] for box in boxes) <= 0
    assert min(box[1] for box in boxes) <= 0
    assert max(box[2] for box in boxes) >= width
    assert max(box[3] for box in boxes) >= height

    # Every tile intersects the image
    for left, top, right, bottom in boxes:
        assert left < width and top < height and right > 0 and bottom > 0


def test_stride_factor_scales_with_text_width():
    assert stride_factor_for_text(100, 20) == pytest.approx(9.0)
    assert stride_factor_for_text(100, 20, ratio=1.0) == pytest.approx(5.0)
    # Narrow text never packs tighter than the font size
    assert stride_factor_for_text(5, 20) == pytest.approx(1.8)
    assert stride_factor_for_text(100, 0) == 0.0


# =============================================================================
# Decoder
# =============================================================================

def test_decode_png_bytes():
    source = decode_bytes(png_bytes(64, 48))

    assert source.size == (64, 48)
    assert source.pixels.shape == (48, 64, 4)
    assert (source.pixels == np.array([255, 0, 0, 255], dtype=np.uint8)).all()


def test_decode_jpeg_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (40, 30), (10, 200, 30)).save(buffer, format="JPEG", quality=95)
    source = decode_bytes(buffer.getvalue())

    assert source.size == (40, 30)
    assert (source.pixels[..., 3] == 255).all()


def test_decode_applies_exif_orientation():
    exif = Image.Exif()
    exif[0x0112] = 6
    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), RED).save(buffer, format="JPEG", exif=exif)

    source = decode_bytes(buffer.getvalue())
    assert source.size == (20, 40)


def test_decode_rejects_unreadable_data():
    with pytest.raises(DecodeError) as info:
        decode_bytes(b"definitely not an image")
    assert info.value.kind is DecodeErrorKind.UNREADABLE
    assert info.value.to_dict()["stage"] == "decode"

    with pytest.raises(DecodeError) as info:
        decode_bytes(b"")
    assert info.value.kind is DecodeErrorKind.UNREADABLE


def test_source_pixels_are_read_only():
    source = decode_bytes(png_bytes())
    assert not source.pixels.flags.writeable
    with pytest.raises(ValueError):
        source.pixels[0, 0, 0] = 1


def test_decode_data_uri_and_path(tmp_path):
    data = png_bytes(16, 8)
    uri = "data:image/png;base64," + base64.b64encode(data).decode("ascii")
    path = tmp_path / "source.png"
    path.write_bytes(data)

    decoder = ImageDecoder()
    from_uri = asyncio.run(decoder.decode(uri))
    from_path = asyncio.run(decoder.decode(path))
    from_str = asyncio.run(decoder.decode(str(path)))

    assert from_uri.size == (16, 8)
    assert np.array_equal(from_uri.pixels, from_path.pixels)
    assert from_path.source_id == from_str.source_id


def test_decode_reference_failures(tmp_path):
    decoder = ImageDecoder()

    with pytest.raises(DecodeError) as info:
        asyncio.run(decoder.decode(tmp_path / "missing.png"))
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED

    with pytest.raises(DecodeError) as info:
        asyncio.run(decoder.decode("data:image/png;base64"))
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED

    with pytest.raises(DecodeError) as info:
        asyncio.run(decoder.decode("data:image/png;base64,@@@not-base64@@@"))
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED


def _decode_via_http(handler, url="https://cdn.example.com/post.png"):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await ImageDecoder(client=client).decode(url)

    return asyncio.run(run())


def test_decode_http_success():
    data = png_bytes(32, 32)
    source = _decode_via_http(lambda request: httpx.Response(200, content=data))
    assert source.size == (32, 32)


@pytest.mark.parametrize("status,kind", [
    (401, DecodeErrorKind.ACCESS_DENIED),
    (403, DecodeErrorKind.ACCESS_DENIED),
    (404, DecodeErrorKind.FETCH_FAILED),
    (500, DecodeErrorKind.FETCH_FAILED),
])
def test_decode_http_status_errors(status, kind):
    with pytest.raises(DecodeError) as info:
        _decode_via_http(lambda request: httpx.Response(status))
    assert info.value.kind is kind


def test_decode_http_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DecodeError) as info:
        _decode_via_http(handler)
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED


def test_decode_http_non_image_body():
    with pytest.raises(DecodeError) as info:
        _decode_via_http(lambda request: httpx.Response(200, content=b"<html>login</html>"))
    assert info.value.kind is DecodeErrorKind.UNREADABLE


@pytest.mark.parametrize("ref", ["post\x00.png", Path("post\x00.png")])
def test_decode_malformed_path_is_fetch_failure(ref):
    with pytest.raises(DecodeError) as info:
        asyncio.run(ImageDecoder().decode(ref))
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED


@pytest.mark.parametrize("url", [
    "https://",
    "http://exa\x00mple.com/p.png",
    "http://xn--/p",
])
def test_decode_malformed_url_is_fetch_failure(url):
    data = png_bytes()
    with pytest.raises(DecodeError) as info:
        _decode_via_http(lambda request: httpx.Response(200, content=data), url=url)
    assert info.value.kind is DecodeErrorKind.FETCH_FAILED


def _mirrored_png(orientation: int) -> bytes:
    """40x20 PNG: left half red, right half blue, tagged with ``orientation``."""
    image = Image.new("RGB", (40, 20), RED)
    image.paste((0, 0, 255), (20, 0, 40, 20))
    exif = Image.Exif()
    exif[0x0112] = orientation
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", exif=exif)
    return buffer.getvalue()


def test_decode_applies_mirrored_exif_orientations():
    flipped = decode_bytes(_mirrored_png(2))
    assert flipped.size == (40, 20)
    assert tuple(flipped.pixels[10, 2, :3]) == (0, 0, 255)
    assert tuple(flipped.pixels[10, 37, :3]) == RED

    # Orientation 5 transposes, so the halves end up stacked vertically
    transposed = decode_bytes(_mirrored_png(5))
    assert transposed.size == (20, 40)
    assert tuple(transposed.pixels[2, 10, :3]) == RED
    assert tuple(transposed.pixels[37, 10, :3]) == (0, 0, 255)


# =============================================================================
# Blend stage
# =============================================================================

def _tiles_for(source: SourceImage, text: str, watermarker: VisibleWatermarker, style: WatermarkStyle):
    font_size = style.font_size_for(source.width, source.height)
    text_width, _ = watermarker.measure_text(text, font_size)
    placements = compute_tiles(
        source.width, source.height, text, font_size,
        stride_factor_for_text(text_width, font_size, style.stride_ratio),
        angle=style.angle,
    )
    return placements, font_size


def test_blend_rejects_zero_area():
    empty = SourceImage(source_id="empty", pixels=np.zeros((0, 10, 4), dtype=np.uint8))
    with pytest.raises(BlendError) as info:
        VisibleWatermarker().blend(empty, [], "@Brand", 0.5)
    assert info.value.kind is BlendErrorKind.INVALID_DIMENSIONS


def test_blend_never_mutates_the_source():
    source = solid_image(200, 200)
    before = source.pixels.copy()
    watermarker = VisibleWatermarker()
    placements, font_size = _tiles_for(source, "@Brand", watermarker, WatermarkStyle())

    output = watermarker.blend(source, placements, "@Brand", 0.8, font_size=font_size)

    assert output is not source.pixels
    assert np.array_equal(source.pixels, before)
    assert output.shape == source.pixels.shape
    assert (output[..., 3] == 255).all()
    assert not np.array_equal(output, before)


def test_blend_clamps_opacity():
    source = solid_image(160, 160)
    watermarker = VisibleWatermarker()
    placements, font_size = _tiles_for(source, "@Brand", watermarker, WatermarkStyle())

    over = watermarker.blend(source, placements, "@Brand", 1.7, font_size=font_size)
    full = watermarker.blend(source, placements, "@Brand", 1.0, font_size=font_size)
    under = watermarker.blend(source, placements, "@Brand", -0.3, font_size=font_size)

    assert np.array_equal(over, full)
    assert np.array_equal(under, source.pixels)


def test_blend_opacity_is_monotonic():
    source = solid_image(240, 240)
    watermarker = VisibleWatermarker()
    placements, font_size = _tiles_for(source, "@Brand", watermarker, WatermarkStyle())
    base = source.pixels.astype(np.int32)

    distances = []
    for opacity in (0.2, 0.5, 0.8):
        output = watermarker.blend(source, placements, "@Brand", opacity, font_size=font_size)
        distances.append(np.abs(output.astype(np.int32) - base).sum(axis=2))

    low, mid, high = distances
    assert (low <= mid).all() and (mid <= high).all()
    assert low.sum() < mid.sum() < high.sum()

    covered = high >= 20
    assert covered.any()
    assert (mid[covered] < high[covered]).all()
    assert (low[covered] < mid[covered]).all()


def test_glyph_mask_cache_is_bounded():
    source = solid_image(120, 120)
    watermarker = VisibleWatermarker()

    for index in range(MAX_MASK_CACHE_SIZE + 20):
        compose(source, WatermarkSpec(f"@Brand{index}", 0.6, True), watermarker=watermarker)

    assert len(watermarker._cached_masks) == MAX_MASK_CACHE_SIZE
    # Oldest texts were evicted first
    assert all(key[0] != "@Brand0" for key in watermarker._cached_masks)


# =============================================================================
# Encoder
# =============================================================================

def test_encode_png_is_deterministic_and_lossless():
    source = solid_image(50, 40)
    first = encode(source.pixels, 50, 40, ImageFormat.PNG)
    second = encode(source.pixels, 50, 40, "png")

    assert first == second
    assert first.startswith(b"\x89PNG")
    assert np.array_equal(decoded_pixels(first), source.pixels)


def test_encode_jpeg_is_decode_stable():
    source = solid_image(50, 40, (30, 120, 200))
    first = encode(source.pixels, 50, 40, "jpg")
    second = encode(source.pixels, 50, 40, ImageFormat.JPEG)

    assert first.startswith(b"\xff\xd8")
    assert first == second
    assert np.array_equal(decoded_pixels(first), decoded_pixels(second))
    assert np.abs(decoded_pixels(first).astype(int) - source.pixels.astype(int)).max() <= 4


def test_encode_rejects_bad_requests():
    source = solid_image(10, 10)

    with pytest.raises(EncodeError) as info:
        encode(source.pixels, 10, 10, "gif")
    assert info.value.kind is EncodeErrorKind.UNSUPPORTED_FORMAT

    with pytest.raises(EncodeError) as info:
        encode(source.pixels, 12, 10, "png")
    assert info.value.kind is EncodeErrorKind.INVALID_BUFFER


def test_format_names():
    assert ImageFormat.from_value("JPG") is ImageFormat.JPEG
    assert ImageFormat.from_value(".png") is ImageFormat.PNG
    assert ImageFormat.JPEG.extension == "jpg"
    assert ImageFormat.PNG.mime_type == "image/png"


def test_download_filename_and_save(tmp_path):
    assert download_filename(ImageFormat.JPEG, now=1700000000.5) == "social-post-1700000000500.jpg"
    assert download_filename("png", now=1.0) == "social-post-1000.png"

    result = compose(solid_image(30, 30), WatermarkSpec("@Brand", 0.6, True))
    saved = save_composited(result, tmp_path)
    assert saved.parent == tmp_path
    assert saved.name.startswith("social-post-") and saved.suffix == ".png"
    assert saved.read_bytes() == result.data

    explicit = save_composited(result, tmp_path / "nested" / "post.png")
    assert explicit.read_bytes() == result.data


# =============================================================================
# Configuration and model
# =============================================================================

def test_config_defaults_and_clamping():
    style = WatermarkStyle()
    assert style.font_size_for(800, 800) == 33
    assert style.font_size_for(10, 10) == 20
    assert WatermarkStyle(color=(300, -5, 12)).color == (255, 0, 12)

    config = CompositorConfig(jpeg_quality=200, output_format="jpg")
    assert config.jpeg_quality == 95
    assert config.output_format is ImageFormat.JPEG


def test_spec_equality_and_fingerprint():
    spec = WatermarkSpec("@Brand", 0.6, True)
    assert spec == WatermarkSpec("@Brand", 0.6, True)
    assert spec.fingerprint == WatermarkSpec("@Brand", 0.6, True).fingerprint
    assert spec.fingerprint != WatermarkSpec("@Brand", 0.6, False).fingerprint
    assert WatermarkSpec() == WatermarkSpec("@SocialGenAI", 0.6, True)


# =============================================================================
# Pipeline scenarios
# =============================================================================

def test_compose_is_pure(tmp_path):
    source = decode_bytes(create_test_image(tmp_path).read_bytes())
    spec = WatermarkSpec("@Brand", 0.6, True)

    first = compose(source, spec)
    second = compose(source, spec, watermarker=VisibleWatermarker())

    assert first.data == second.data
    assert first.spec_fingerprint == spec.fingerprint
    assert first.source_id == source.source_id


def test_scenario_red_square_with_watermark():
    source = decode_bytes(png_bytes(800, 800))
    spec = WatermarkSpec("@Brand", 0.6, True)
    style = WatermarkStyle()
    watermarker = VisibleWatermarker(color=style.color)

    result = compose(source, spec, "png", watermarker=watermarker)
    assert result.data_uri.startswith("data:image/png;base64,")
    assert (result.width, result.height) == (800, 800)

    pixels = decoded_pixels(result.data)
    assert pixels.shape == (800, 800, 4)
    assert np.array_equal(decoded_pixels(result.data), pixels)

    placements, font_size = _tiles_for(source, "@Brand", watermarker, style)
    overlay = watermarker.render_overlay_alpha(800, 800, placements, "@Brand", 0.6, font_size)

    untouched = overlay == 0
    assert (pixels[untouched] == np.array([255, 0, 0, 255], dtype=np.uint8)).all()

    text_pixels = overlay > 0.3
    assert text_pixels.any()
    assert (pixels[text_pixels][:, 0] < 255).all()

    touched_share = (~untouched).mean()
    assert 0.005 < touched_share < 0.6


def test_scenario_hidden_watermark_reencodes_source():
    source = decode_bytes(png_bytes(800, 800))
    result = compose(source, WatermarkSpec("@Brand", 0.6, False))

    assert np.array_equal(decoded_pixels(result.data), source.pixels)


def test_scenario_zero_opacity_matches_hidden():
    source = decode_bytes(png_bytes(800, 800))
    hidden = compose(source, WatermarkSpec("@Brand", 0.6, False))
    transparent = compose(source, WatermarkSpec("@Brand", 0.0, True))

    assert transparent.data == hidden.data
    assert transparent.spec_fingerprint != hidden.spec_fingerprint


def test_compose_with_empty_text_is_a_no_op():
    source = solid_image(120, 90)
    result = compose(source, WatermarkSpec("", 0.9, True))
    assert np.array_equal(decoded_pixels(result.data), source.pixels)


def test_compose_jpeg_output():
    source = solid_image(120, 90)
    result = compose(source, WatermarkSpec("@Brand", 0.6, True), config=CompositorConfig(output_format="jpg"))
    assert result.encoding is ImageFormat.JPEG
    assert result.data_uri.startswith("data:image/jpeg;base64,")
