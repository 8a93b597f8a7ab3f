"""进程内转码：压缩、缩放、格式拒绝与原子替换。"""

from __future__ import annotations

import multiprocessing
import time
from pathlib import Path

import pytest
from PIL import Image, ImageOps

from media_optimizer.core.config import QualityConfig, ResizeConfig, ResourceLimits
from media_optimizer.core.models import BackendKind
from media_optimizer.processing.transcoder import (
    OpenCVTranscoder,
    PillowTranscoder,
    TranscodeOptions,
    build_transcoder,
    png_compression_level,
)
from imaging import noise_image, write_gif, write_jpeg, write_png

# 替换 _encode 的用例依赖 fork 把补丁带进编码进程
needs_fork = pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="编码进程需要 fork 启动方式"
)


def test_pillow_recompresses_jpeg_in_place(tmp_path: Path) -> None:
    path = write_jpeg(tmp_path / "photo.jpg", quality=98)
    original_size = path.stat().st_size

    result = PillowTranscoder(QualityConfig(jpeg=60)).transcode(path)

    assert result
    assert result.backend is BackendKind.PILLOW
    assert path.stat().st_size < original_size
    with Image.open(path) as img:
        assert img.format == "JPEG"
        assert img.size == (256, 256)


def test_pillow_strips_exif(tmp_path: Path) -> None:
    path = tmp_path / "exif.jpg"
    exif = Image.Exif()
    exif[0x010F] = "Camera Maker"
    Image.new("RGB", (64, 64), "red").save(path, exif=exif.tobytes())

    assert PillowTranscoder().transcode(path)
    with Image.open(path) as img:
        assert 0x010F not in img.getexif()


def test_pillow_resizes_to_bounding_box(tmp_path: Path) -> None:
    path = write_jpeg(tmp_path / "wide.jpg", size=(400, 200))

    transcoder = PillowTranscoder(resize=ResizeConfig(max_width=100))
    assert transcoder.transcode(path)

    with Image.open(path) as img:
        assert img.size == (100, 50)


def test_resize_skipped_when_over_memory_cap(tmp_path: Path) -> None:
    path = write_jpeg(tmp_path / "wide.jpg", size=(400, 200))

    transcoder = PillowTranscoder(resize=ResizeConfig(max_width=100, memory_cap=1024))
    assert transcoder.transcode(path)

    with Image.open(path) as img:
        assert img.size == (400, 200)


def test_pillow_requantizes_palette_png(tmp_path: Path) -> None:
    path = write_png(tmp_path / "palette.png", palette=True)

    assert PillowTranscoder().transcode(path)
    with Image.open(path) as img:
        assert img.mode == "P"
        assert len(img.getcolors(maxcolors=256) or []) <= 256


def test_pillow_rejects_gif_with_fallback(tmp_path: Path) -> None:
    path = write_gif(tmp_path / "anim.gif")
    before = path.read_bytes()

    result = PillowTranscoder().transcode(path)

    assert not result
    assert result.fallback
    assert path.read_bytes() == before


def test_pillow_rejects_oversized_input(tmp_path: Path) -> None:
    path = write_jpeg(tmp_path / "big.jpg")
    before = path.read_bytes()

    result = PillowTranscoder(limits=ResourceLimits(max_input_bytes=1024)).transcode(path)

    assert not result
    assert result.fallback
    assert path.read_bytes() == before


def test_raster_over_memory_budget_is_rejected(tmp_path: Path) -> None:
    path = write_jpeg(tmp_path / "photo.jpg")
    before = path.read_bytes()

    result = PillowTranscoder(limits=ResourceLimits(memory=1024, map=1024)).transcode(path)

    assert not result
    assert result.fallback
    assert path.read_bytes() == before


@needs_fork
def test_invalid_output_leaves_file_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = write_jpeg(tmp_path / "photo.jpg")
    before = path.read_bytes()
    monkeypatch.setattr(PillowTranscoder, "_encode", lambda self, *args: b"\xff\xd8\xff truncated")

    result = PillowTranscoder().transcode(path)

    assert not result
    assert not result.fallback
    assert path.read_bytes() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["photo.jpg"]


@needs_fork
def test_time_budget_terminates_encoder(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = write_jpeg(tmp_path / "photo.jpg")
    before = path.read_bytes()

    def slow_encode(self, *args):
        time.sleep(5)
        return b""

    monkeypatch.setattr(PillowTranscoder, "_encode", slow_encode)
    transcoder = PillowTranscoder(limits=ResourceLimits(time_seconds=0.05))

    started = time.monotonic()
    results = [transcoder.transcode(path) for _ in range(3)]

    assert all(not result and result.fallback for result in results)
    assert time.monotonic() - started < 5
    assert multiprocessing.active_children() == []
    assert path.read_bytes() == before


@needs_fork
def test_encoder_errors_cross_process_boundary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = write_jpeg(tmp_path / "photo.jpg")

    def broken_encode(self, *args):
        raise KeyError("mode")

    monkeypatch.setattr(PillowTranscoder, "_encode", broken_encode)
    result = PillowTranscoder().transcode(path)

    assert not result
    assert not result.fallback
    assert "KeyError" in result.message
    assert multiprocessing.active_children() == []


def test_pillow_keeps_png_color_key(tmp_path: Path) -> None:
    path = tmp_path / "keyed.png"
    image = Image.new("RGB", (64, 64), (255, 0, 255))
    image.paste((10, 120, 200), (16, 16, 48, 48))
    image.save(path, transparency=(255, 0, 255))

    assert PillowTranscoder().transcode(path)
    with Image.open(path) as img:
        assert img.mode == "RGB"
        assert img.info.get("transparency") == (255, 0, 255)
        rgba = img.convert("RGBA")
        assert rgba.getpixel((0, 0))[3] == 0
        assert rgba.getpixel((32, 32))[3] == 255


def test_explicit_options_override_defaults(tmp_path: Path) -> None:
    path = write_png(tmp_path / "wide.png", size=(300, 150))

    assert PillowTranscoder().transcode(path, "png", TranscodeOptions(max_height=50))
    with Image.open(path) as img:
        assert img.size == (100, 50)


@pytest.mark.parametrize(("quality", "level"), [(100, 0), (82, 2), (50, 5), (1, 9)])
def test_png_compression_level(quality: int, level: int) -> None:
    assert png_compression_level(quality) == level


def test_build_transcoder_rejects_remote() -> None:
    assert isinstance(build_transcoder(BackendKind.PILLOW), PillowTranscoder)
    assert isinstance(build_transcoder(BackendKind.OPENCV), OpenCVTranscoder)
    with pytest.raises(ValueError):
        build_transcoder(BackendKind.REMOTE)


def test_opencv_recompresses_and_resizes(tmp_path: Path) -> None:
    pytest.importorskip("cv2")
    path = write_jpeg(tmp_path / "photo.jpg", size=(400, 200), quality=98)
    original_size = path.stat().st_size

    result = OpenCVTranscoder(QualityConfig(jpeg=60), ResizeConfig(max_width=200)).transcode(path)

    assert result
    assert result.backend is BackendKind.OPENCV
    assert path.stat().st_size < original_size
    with Image.open(path) as img:
        assert img.format == "JPEG"
        assert img.size == (200, 100)


def test_opencv_rejects_gif(tmp_path: Path) -> None:
    path = write_gif(tmp_path / "anim.gif")
    before = path.read_bytes()

    result = OpenCVTranscoder().transcode(path)

    assert not result
    assert result.fallback
    assert path.read_bytes() == before


def test_opencv_applies_exif_orientation(tmp_path: Path) -> None:
    pytest.importorskip("cv2")
    path = tmp_path / "rotated.jpg"
    exif = Image.Exif()
    exif[0x0112] = 6
    noise_image(200, 100).save(path, quality=95, exif=exif.tobytes())
    with Image.open(path) as img:
        assert ImageOps.exif_transpose(img).size == (100, 200)

    assert OpenCVTranscoder().transcode(path)

    with Image.open(path) as img:
        assert img.size == (100, 200)
        assert img.getexif().get(0x0112, 1) == 1
