"""进程内转码引擎：按格式压缩、可选缩放，并原子替换原文件。

两种实现共享同一套流程：输入检查 → 在独立的编码进程中编码为字节 →
校验输出 → 原子写回。编码进程只产出字节，超时即被终止；写回只发生在
调用方，因此超时或失败时原文件不会被改动。
"""

from __future__ import annotations

import io
import logging
import multiprocessing
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, ImageOps

from media_optimizer.core.config import MB, QualityConfig, ResizeConfig, ResourceLimits
from media_optimizer.core.exceptions import (
    IntegrityError,
    MediaOptimizerError,
    ResourceExceededError,
    UnsupportedFormatError,
)
from media_optimizer.core.models import BackendKind
from media_optimizer.processing.inspector import (
    calculate_resize_dimensions,
    detect_format,
    file_size,
    verify_image_bytes,
)
from media_optimizer.utils.files import atomic_write_bytes
from media_optimizer.utils.sizes import format_file_size

LOGGER = logging.getLogger(__name__)

_RESAMPLING = getattr(Image, "Resampling", Image)
PROGRESSIVE_THRESHOLD = 1 * MB
ORIENTATION_TAG = 0x0112

# fork 不需要序列化编码函数；没有 fork 的平台退回 spawn
_CONTEXT = multiprocessing.get_context("fork" if "fork" in multiprocessing.get_all_start_methods() else "spawn")


@dataclass(slots=True)
class TranscodeOptions:
    """单次转码参数。``quality`` 为空时使用该格式的默认质量。"""

    quality: Optional[int] = None
    max_width: int = 0
    max_height: int = 0


@dataclass(slots=True)
class TranscodeResult:
    """转码结果；失败时为假值，``fallback`` 表示应交给下一个后端。"""

    ok: bool
    backend: BackendKind
    fallback: bool = False
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


class Transcoder:
    """进程内转码器基类。"""

    kind: BackendKind
    formats: tuple[str, ...] = ()

    def __init__(
        self,
        quality: Optional[QualityConfig] = None,
        resize: Optional[ResizeConfig] = None,
        limits: Optional[ResourceLimits] = None,
    ) -> None:
        self.quality = quality or QualityConfig()
        self.resize = resize or ResizeConfig()
        self.limits = limits or ResourceLimits()

    def default_options(self) -> TranscodeOptions:
        return TranscodeOptions(max_width=self.resize.max_width, max_height=self.resize.max_height)

    def transcode(
        self,
        path: Path,
        image_format: Optional[str] = None,
        options: Optional[TranscodeOptions] = None,
    ) -> TranscodeResult:
        """压缩 ``path`` 并原地替换；任何失败都不会修改原文件。"""

        options = options or self.default_options()
        image_format = image_format or detect_format(path)

        try:
            if image_format is None:
                raise UnsupportedFormatError(f"无法识别的图片格式: {path.name}")
            self._check_input(path, image_format)
            quality = options.quality or self.quality.for_format(image_format)
            data = self._run_with_budget(self._encode, path, image_format, quality, options)
            verify_image_bytes(data, image_format)
            if len(data) > self.limits.disk:
                raise ResourceExceededError(f"输出超过磁盘预算 {format_file_size(self.limits.disk)}")
            atomic_write_bytes(path, data)
        except (UnsupportedFormatError, ResourceExceededError) as exc:
            LOGGER.info("%s 跳过 %s：%s", self.kind.value, path.name, exc)
            return TranscodeResult(ok=False, backend=self.kind, fallback=True, message=str(exc))
        except IntegrityError as exc:
            LOGGER.error("%s 输出校验失败 %s：%s", self.kind.value, path.name, exc)
            return TranscodeResult(ok=False, backend=self.kind, message=str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("%s 转码失败 %s：%s", self.kind.value, path.name, exc)
            return TranscodeResult(ok=False, backend=self.kind, message=str(exc))

        return TranscodeResult(ok=True, backend=self.kind)

    def _check_input(self, path: Path, image_format: str) -> None:
        if image_format not in self.formats:
            raise UnsupportedFormatError(f"{self.kind.value} 不支持 {image_format.upper()} 格式")

    def _check_raster(self, width: int, height: int, bands: int) -> None:
        # 解码缓冲允许溢出到映射内存，超过两者之和即拒绝
        raster = width * height * bands
        if raster > self.limits.memory + self.limits.map:
            raise ResourceExceededError(f"像素缓冲 {format_file_size(raster)} 超出内存预算 ({width}x{height})")

    def _fits_resize_budget(self, width: int, height: int) -> bool:
        required = width * height * 4
        if required > self.resize.memory_cap:
            LOGGER.warning(
                "缩放所需内存 %s 超过上限，跳过缩放 (%dx%d)",
                format_file_size(required),
                width,
                height,
            )
            return False
        return True

    def _run_with_budget(self, func: Callable[..., bytes], *args: object) -> bytes:
        """在单独的编码进程中执行 ``func``；超时或返回后该进程都不会存活。"""

        receiver, sender = _CONTEXT.Pipe(duplex=False)
        worker = _CONTEXT.Process(
            target=_encode_worker,
            args=(sender, func, args),
            name=f"transcode-{self.kind.value}",
            daemon=True,
        )
        worker.start()
        sender.close()
        try:
            if not receiver.poll(self.limits.time_seconds):
                raise ResourceExceededError(f"转码超过时间预算 {self.limits.time_seconds:g}s")
            ok, payload = receiver.recv()
        except EOFError as exc:
            raise ResourceExceededError("编码进程意外退出") from exc
        finally:
            receiver.close()
            if worker.is_alive():
                worker.terminate()
            worker.join()

        if not ok:
            raise payload
        return payload

    def _encode(self, path: Path, image_format: str, quality: int, options: TranscodeOptions) -> bytes:
        raise NotImplementedError


class PillowTranscoder(Transcoder):
    """高质量后端：去除元数据、渐进式 JPEG、PNG 调色板量化。"""

    kind = BackendKind.PILLOW
    formats = ("jpeg", "png", "webp")

    def _check_input(self, path: Path, image_format: str) -> None:
        if image_format == "gif":
            raise UnsupportedFormatError("GIF 多帧内存开销过高，交由其他后端处理")
        super()._check_input(path, image_format)
        size = file_size(path)
        if size > self.limits.max_input_bytes:
            raise ResourceExceededError(
                f"文件 {format_file_size(size)} 超过 {format_file_size(self.limits.max_input_bytes)} 上限"
            )

    def _encode(self, path: Path, image_format: str, quality: int, options: TranscodeOptions) -> bytes:
        source_size = file_size(path)
        with Image.open(path) as source:
            self._check_raster(source.width, source.height, len(source.getbands()))
            source.load()
            is_palette = source.mode == "P"
            has_transparency = "transparency" in source.info
            # 真彩色 PNG 的 tRNS 颜色键与元数据存放在同一个 info 里
            color_key = source.info.get("transparency") if source.mode in ("RGB", "L") else None
            image = ImageOps.exif_transpose(source)

        image = self._resize(image, options)
        if image_format == "png" and is_palette:
            image = _quantize_palette(image, has_transparency)

        # 去除 EXIF / ICC 等非像素信息
        image.info.clear()

        buffer = io.BytesIO()
        if image_format == "jpeg":
            if image.mode not in {"RGB", "L", "CMYK"}:
                image = image.convert("RGB")
            image.save(
                buffer,
                format="JPEG",
                quality=quality,
                optimize=True,
                progressive=source_size > PROGRESSIVE_THRESHOLD,
            )
        elif image_format == "png":
            extra = {"transparency": color_key} if color_key is not None and image.mode in ("RGB", "L") else {}
            image.save(buffer, format="PNG", optimize=True, compress_level=9, **extra)
        else:
            image.save(buffer, format="WEBP", quality=quality, method=6)
        image.close()
        return buffer.getvalue()

    def _resize(self, image: Image.Image, options: TranscodeOptions) -> Image.Image:
        if options.max_width <= 0 and options.max_height <= 0:
            return image

        width, height = image.size
        exceeds = (options.max_width > 0 and width > options.max_width) or (
            options.max_height > 0 and height > options.max_height
        )
        if not exceeds or not self._fits_resize_budget(width, height):
            return image

        image.thumbnail((options.max_width or width, options.max_height or height), _RESAMPLING.LANCZOS)
        LOGGER.info("Pillow 缩放图片 %dx%d -> %dx%d", width, height, image.width, image.height)
        return image


class OpenCVTranscoder(Transcoder):
    """基础后端：OpenCV 编码参数有限，但保留透明通道。"""

    kind = BackendKind.OPENCV
    formats = ("jpeg", "png", "webp")

    _EXTENSIONS = {"jpeg": ".jpg", "png": ".png", "webp": ".webp"}

    def _encode(self, path: Path, image_format: str, quality: int, options: TranscodeOptions) -> bytes:
        import cv2
        import numpy as np

        cv2.setNumThreads(self.limits.threads)
        raw = np.fromfile(str(path), dtype=np.uint8)
        # IMREAD_UNCHANGED 保留透明通道但忽略 EXIF 方向，方向由下面自行处理
        image = cv2.imdecode(raw, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise UnsupportedFormatError(f"OpenCV 无法解码 {path.name}")
        image = _apply_orientation(image, exif_orientation(path))

        height, width = image.shape[:2]
        bands = 1 if image.ndim == 2 else image.shape[2]
        self._check_raster(width, height, bands * image.dtype.itemsize)

        new_width, new_height = calculate_resize_dimensions(width, height, options.max_width, options.max_height)
        if (new_width, new_height) != (width, height) and self._fits_resize_budget(width, height):
            image = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_AREA)
            LOGGER.info("OpenCV 缩放图片 %dx%d -> %dx%d", width, height, new_width, new_height)

        if image_format == "jpeg":
            if image.ndim == 3 and image.shape[2] == 4:
                image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
            params = [cv2.IMWRITE_JPEG_QUALITY, quality, cv2.IMWRITE_JPEG_OPTIMIZE, 1]
        elif image_format == "png":
            params = [cv2.IMWRITE_PNG_COMPRESSION, png_compression_level(quality)]
        else:
            params = [cv2.IMWRITE_WEBP_QUALITY, quality]

        ok, encoded = cv2.imencode(self._EXTENSIONS[image_format], image, params)
        if not ok:
            raise ValueError(f"OpenCV 编码 {image_format.upper()} 失败")
        return encoded.tobytes()


def _encode_worker(conn, func: Callable[..., bytes], args: tuple) -> None:
    try:
        outcome = (True, func(*args))
    except MediaOptimizerError as exc:
        outcome = (False, exc)
    except Exception as exc:  # noqa: BLE001
        # 第三方异常不一定能跨进程序列化
        outcome = (False, RuntimeError(f"{type(exc).__name__}: {exc}"))
    try:
        conn.send(outcome)
    finally:
        conn.close()


def exif_orientation(path: Path) -> int:
    """读取 EXIF 方向标记，没有时返回 1。"""

    with Image.open(path) as source:
        return int(source.getexif().get(ORIENTATION_TAG, 1))


def _apply_orientation(image, orientation: int):
    """按 EXIF 方向旋转/翻转像素，与 ``ImageOps.exif_transpose`` 一致。"""

    import cv2

    if orientation == 2:
        return cv2.flip(image, 1)
    if orientation == 3:
        return cv2.rotate(image, cv2.ROTATE_180)
    if orientation == 4:
        return cv2.flip(image, 0)
    if orientation == 5:
        return cv2.transpose(image)
    if orientation == 6:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if orientation == 7:
        return cv2.flip(cv2.transpose(image), -1)
    if orientation == 8:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    return image


def png_compression_level(quality: int) -> int:
    """将 1~100 的质量换算为 0~9 的 PNG 压缩等级（质量越低压缩越强）。"""

    return max(0, min(9, int(round((100 - quality) / 10))))


def _quantize_palette(image: Image.Image, has_transparency: bool) -> Image.Image:
    """调色板图片重新量化到不超过 256 色。"""

    if has_transparency:
        return image.convert("RGBA").quantize(colors=256, method=Image.Quantize.FASTOCTREE)
    return image.convert("RGB").quantize(colors=256)


def build_transcoder(
    kind: BackendKind,
    quality: Optional[QualityConfig] = None,
    resize: Optional[ResizeConfig] = None,
    limits: Optional[ResourceLimits] = None,
) -> Transcoder:
    if kind is BackendKind.PILLOW:
        return PillowTranscoder(quality, resize, limits)
    if kind is BackendKind.OPENCV:
        return OpenCVTranscoder(quality, resize, limits)
    raise ValueError(f"{kind.value} 不是进程内后端")
