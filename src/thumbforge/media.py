"""Thumbnail generation strategies.

The media kind is resolved once, at submission, from the file extension and
mime type. The pipeline then picks the matching strategy:

- Image: decode, cover-fit resize, JPEG encode, atomic rename into place
- Video: probe duration, grab the frame at the midpoint, then the image steps

Output names are reserved exclusively before any work starts, so concurrent
jobs never write to the same file. The scoped output context removes
partial and temporary files on every failure path.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import PipelineError, ValidationError
from .ffmpeg_runner import FfmpegRunner
from .queue.models import MediaKind

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff")
DEFAULT_VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".mkv", ".webm")

TEMP_SUFFIX = ".tmp"


def resolve_media_kind(
    mime_type: Optional[str],
    filename: str,
    image_extensions: Iterable[str] = DEFAULT_IMAGE_EXTENSIONS,
    video_extensions: Iterable[str] = DEFAULT_VIDEO_EXTENSIONS,
) -> MediaKind:
    """Map an upload to its generation strategy.

    Raises:
        ValidationError: Neither the extension nor the mime type is supported
    """
    ext = Path(filename).suffix.lower()
    mime = (mime_type or "").lower()

    if ext in {e.lower() for e in video_extensions} or mime.startswith("video/"):
        return MediaKind.VIDEO
    if ext in {e.lower() for e in image_extensions} or mime.startswith("image/"):
        return MediaKind.IMAGE
    raise ValidationError(f"Unsupported file type: {mime_type or 'unknown'} ({filename})")


@dataclass
class ThumbnailResult:
    """What a strategy produced."""
    filename: str
    path: Path
    width: int
    height: int
    size_bytes: int
    media_kind: MediaKind
    sampled_at_s: Optional[float] = None  # Video only


def reserve_thumbnail_path(output_dir: Path) -> Path:
    """Claim a unique `thumb-<timestamp>.jpg` in output_dir.

    The name is created with O_EXCL; on collision the millisecond
    timestamp is bumped until a free name is found.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    while True:
        path = output_dir / f"thumb-{stamp}.jpg"
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            stamp += 1
            continue
        os.close(fd)
        return path


@contextmanager
def scoped_thumbnail(output_dir: Path) -> Iterator[Path]:
    """Reserve an output path and guarantee cleanup.

    On any exception (tool failure, encode failure, interrupt) the reserved
    file and its temp sibling are removed. The temp sibling is removed on
    success too.
    """
    path = reserve_thumbnail_path(output_dir)
    temp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        yield path
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    finally:
        temp_path.unlink(missing_ok=True)


def cleanup_stale_temp_files(output_dir: Path, max_age_s: float = 3600) -> int:
    """Remove temp files left behind by a crashed process."""
    if not output_dir.exists():
        return 0
    cutoff = time.time() - max_age_s
    removed = 0
    for temp in output_dir.glob(f"thumb-*{TEMP_SUFFIX}"):
        try:
            if temp.stat().st_mtime < cutoff:
                temp.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    if removed:
        logger.info("Removed %d stale temp file(s) from %s", removed, output_dir)
    return removed


class ThumbnailStrategy(ABC):
    """One way of turning a source file into a thumbnail."""

    media_kind: MediaKind

    def __init__(self, size: Tuple[int, int] = (128, 128), jpeg_quality: int = 80):
        self.size = size
        self.jpeg_quality = jpeg_quality

    @abstractmethod
    def generate(self, source_path: Path, output_dir: Path) -> ThumbnailResult:
        pass

    def render(self, image_path: Path, target: Path) -> None:
        """Cover-fit resize + JPEG encode of image_path, renamed onto target.

        image_path may be target itself (the video path overwrites its raw
        frame).
        """
        temp_path = target.with_name(target.name + TEMP_SUFFIX)
        try:
            with Image.open(image_path) as img:
                img = ImageOps.exif_transpose(img)
                if img.mode != "RGB":
                    img = img.convert("RGB")
                thumb = ImageOps.fit(img, self.size, Image.Resampling.LANCZOS)
                thumb.save(temp_path, "JPEG", quality=self.jpeg_quality)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise PipelineError("Image resize/encode failed", f"{type(e).__name__}: {e}") from e
        os.replace(temp_path, target)

    def _result(self, target: Path, sampled_at_s: Optional[float] = None) -> ThumbnailResult:
        if not target.exists() or target.stat().st_size == 0:
            raise PipelineError("Thumbnail file was not created")
        return ThumbnailResult(
            filename=target.name,
            path=target,
            width=self.size[0],
            height=self.size[1],
            size_bytes=target.stat().st_size,
            media_kind=self.media_kind,
            sampled_at_s=sampled_at_s,
        )


class ImageThumbnailer(ThumbnailStrategy):
    media_kind = MediaKind.IMAGE

    def generate(self, source_path: Path, output_dir: Path) -> ThumbnailResult:
        with scoped_thumbnail(output_dir) as target:
            self.render(source_path, target)
            return self._result(target)


class VideoThumbnailer(ThumbnailStrategy):
    """Frame at the midpoint of the video, never the first or last frame."""

    media_kind = MediaKind.VIDEO

    def __init__(self, runner: FfmpegRunner, **kwargs):
        super().__init__(**kwargs)
        self.runner = runner

    def generate(self, source_path: Path, output_dir: Path) -> ThumbnailResult:
        duration = self.runner.probe_duration(str(source_path))
        midpoint = duration / 2
        logger.debug("Video %s: duration %.3fs, sampling at %.3fs", source_path, duration, midpoint)

        with scoped_thumbnail(output_dir) as target:
            self.runner.extract_frame(str(source_path), midpoint, str(target))
            self.render(target, target)
            return self._result(target, sampled_at_s=midpoint)


class MediaPipeline:
    """Selects and runs the strategy for a task's media kind."""

    def __init__(
        self,
        output_dir: str,
        runner: Optional[FfmpegRunner] = None,
        size: Tuple[int, int] = (128, 128),
        jpeg_quality: int = 80,
    ):
        self.output_dir = Path(output_dir)
        self.runner = runner or FfmpegRunner()
        self.strategies: Dict[MediaKind, ThumbnailStrategy] = {
            MediaKind.IMAGE: ImageThumbnailer(size=size, jpeg_quality=jpeg_quality),
            MediaKind.VIDEO: VideoThumbnailer(self.runner, size=size, jpeg_quality=jpeg_quality),
        }

    def strategy_for(self, kind: MediaKind) -> ThumbnailStrategy:
        return self.strategies[MediaKind(kind)]

    def generate(self, kind: MediaKind, source_path: str) -> ThumbnailResult:
        """Produce a thumbnail for source_path.

        Raises:
            PipelineError: Source missing, or any strategy failure
        """
        source = Path(source_path)
        if not source.is_file():
            raise PipelineError(f"Input file not found: {source_path}")

        strategy = self.strategy_for(kind)
        result = strategy.generate(source, self.output_dir)
        logger.info(
            "Generated %s thumbnail %s (%d bytes) from %s",
            result.media_kind.value, result.filename, result.size_bytes, source.name,
        )
        return result
