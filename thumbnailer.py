"""Preview thumbnails for uploaded images and videos.

Images are resized with Pillow.  Videos go through ffmpeg: legacy mobile
containers are remuxed (stream copy, no re-encode) into MP4 first, then a
single frame is pulled from roughly one second in and letterboxed onto a
fixed canvas.  Any extraction problem degrades to a synthetic play-icon
placeholder so a bad video never blocks the upload that carries it.
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from upload_errors import ThumbnailFailed

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 600
DEFAULT_QUALITY = 80
DEFAULT_CANVAS_SIZE = (600, 400)
DEFAULT_SEEK_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 60.0

PLACEHOLDER_BG = (58, 87, 232)
PLACEHOLDER_FG = (255, 255, 255)
PLACEHOLDER_FONT_SIZE = 22

DEFAULT_REMUX_MIME_TYPES: Tuple[str, ...] = (
    "video/quicktime",
    "video/3gpp",
    "video/3gpp2",
    "video/x-msvideo",
    "video/x-ms-wmv",
)
REMUX_EXTENSIONS = {".mov", ".3gp", ".3g2", ".avi", ".wmv"}

try:  # Pillow >= 9.1
    _RESAMPLING_FILTER = Image.Resampling.LANCZOS  # type: ignore[attr-defined]
except AttributeError:  # pragma: no cover - legacy Pillow
    _RESAMPLING_FILTER = Image.LANCZOS  # type: ignore[attr-defined]


def _source_suffix(mime_type: Optional[str]) -> str:
    mapping = {
        "video/mp4": ".mp4",
        "video/quicktime": ".mov",
        "video/webm": ".webm",
        "video/x-matroska": ".mkv",
        "video/3gpp": ".3gp",
        "video/3gpp2": ".3g2",
        "video/x-msvideo": ".avi",
        "video/x-ms-wmv": ".wmv",
        "video/x-m4v": ".m4v",
    }
    return mapping.get((mime_type or "").split(";", 1)[0].strip().lower(), ".bin")


def generate_placeholder(
    size: Tuple[int, int] = DEFAULT_CANVAS_SIZE,
    *,
    label: Optional[str] = None,
) -> Image.Image:
    """Solid background with a play glyph (ring plus triangle)."""

    width, height = size
    image = Image.new("RGB", (width, height), PLACEHOLDER_BG)
    drawer = ImageDraw.Draw(image)
    cx, cy = width / 2, height / 2
    radius = max(8, min(width, height) // 5)
    ring = max(2, radius // 10)
    drawer.ellipse((cx - radius, cy - radius, cx + radius, cy + radius), outline=PLACEHOLDER_FG, width=ring)
    tri = radius * 0.5
    drawer.polygon(
        [(cx - tri * 0.6, cy - tri), (cx - tri * 0.6, cy + tri), (cx + tri, cy)],
        fill=PLACEHOLDER_FG,
    )
    if label:
        try:
            font = ImageFont.truetype("DejaVuSans.ttf", PLACEHOLDER_FONT_SIZE)
        except Exception:  # pragma: no cover - font availability varies
            font = ImageFont.load_default()
        bbox = drawer.textbbox((0, 0), label, font=font)
        text_width = bbox[2] - bbox[0]
        y = min(height - (bbox[3] - bbox[1]) - 8, cy + radius + 12)
        drawer.text(((width - text_width) / 2, y), label, fill=PLACEHOLDER_FG, font=font)
    return image


class ThumbnailGenerator:
    """Render JPEG thumbnails for image and video uploads."""

    def __init__(
        self,
        *,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        quality: int = DEFAULT_QUALITY,
        canvas_size: Tuple[int, int] = DEFAULT_CANVAS_SIZE,
        seek_seconds: float = DEFAULT_SEEK_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        remux_mime_types: Optional[Iterable[str]] = None,
        ffmpeg_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_dimension = max(16, int(max_dimension))
        self._quality = max(1, min(95, int(quality)))
        self._canvas_size = (max(16, int(canvas_size[0])), max(16, int(canvas_size[1])))
        self._seek_seconds = max(0.0, float(seek_seconds))
        self._timeout = float(timeout) if timeout and float(timeout) > 0 else DEFAULT_TIMEOUT_SECONDS
        remux = remux_mime_types if remux_mime_types is not None else DEFAULT_REMUX_MIME_TYPES
        self._remux_mime_types = {str(item).strip().lower() for item in remux if str(item).strip()}
        self._ffmpeg_path = ffmpeg_path
        self._clock = clock

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self._canvas_size

    # ----------------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------------
    def generate_image_thumbnail(self, source_bytes: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(source_bytes)) as img:
                img = ImageOps.exif_transpose(img)
                img = img.convert("RGB")
                img.thumbnail((self._max_dimension, self._max_dimension), _RESAMPLING_FILTER)
                return self._encode(img)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ThumbnailFailed(f"Unable to decode image: {exc}") from exc

    def generate_video_thumbnail(self, source_bytes: bytes, mime_type: Optional[str] = None) -> bytes:
        """Return a frame thumbnail, or the placeholder when extraction fails.

        The whole ffmpeg pipeline (remux plus every seek attempt) shares one
        ``timeout`` budget.
        """

        try:
            image = self._extract_video_frame(source_bytes, mime_type)
        except ThumbnailFailed as exc:
            logger.warning("Video thumbnail fell back to placeholder (mime=%s): %s", mime_type, exc.message)
            image = generate_placeholder(self._canvas_size)
        except Exception:
            logger.exception("Unexpected error extracting video frame (mime=%s); using placeholder", mime_type)
            image = generate_placeholder(self._canvas_size)
        return self._encode(image)

    def generate_placeholder_thumbnail(self, label: Optional[str] = None) -> bytes:
        return self._encode(generate_placeholder(self._canvas_size, label=label))

    def for_mime(self, source_bytes: bytes, mime_type: Optional[str]) -> Optional[bytes]:
        """Dispatch on MIME family; ``None`` when no thumbnail is warranted."""

        family = (mime_type or "").split("/", 1)[0].strip().lower()
        if family == "image":
            return self.generate_image_thumbnail(source_bytes)
        if family == "video":
            return self.generate_video_thumbnail(source_bytes, mime_type)
        return None

    def needs_remux(self, mime_type: Optional[str], filename: Optional[str] = None) -> bool:
        normalized = (mime_type or "").split(";", 1)[0].strip().lower()
        if normalized in self._remux_mime_types:
            return True
        if filename:
            return Path(filename).suffix.lower() in REMUX_EXTENSIONS
        return False

    # ----------------------------------------------------------------------
    # Video helpers
    # ----------------------------------------------------------------------
    def _extract_video_frame(self, source_bytes: bytes, mime_type: Optional[str]) -> Image.Image:
        ffmpeg_path = self._ffmpeg_path or shutil.which("ffmpeg")
        if not ffmpeg_path:
            raise ThumbnailFailed("ffmpeg is not available")
        self._ffmpeg_path = ffmpeg_path
        if not source_bytes:
            raise ThumbnailFailed("Video payload is empty")

        deadline = self._clock() + self._timeout
        with tempfile.TemporaryDirectory(prefix="thumb-") as workdir:
            work = Path(workdir)
            source = work / f"source{_source_suffix(mime_type)}"
            try:
                source.write_bytes(source_bytes)
            except OSError as exc:
                raise ThumbnailFailed(f"Unable to spool video for extraction: {exc}") from exc
            if self.needs_remux(mime_type, source.name):
                source = self._remux(ffmpeg_path, source, work / "remuxed.mp4", deadline)
            output = work / "frame.jpg"
            offsets: Sequence[float] = (self._seek_seconds, 0.0) if self._seek_seconds > 0 else (0.0,)
            for offset in offsets:
                if not self._run_frame_extraction(ffmpeg_path, source, output, offset, deadline):
                    continue
                if output.exists() and output.stat().st_size > 0:
                    try:
                        with Image.open(output) as frame:
                            frame.load()
                            return self._fit_canvas(frame)
                    except (UnidentifiedImageError, OSError) as exc:
                        raise ThumbnailFailed(f"ffmpeg produced an unreadable frame: {exc}") from exc
                logger.debug("No frame produced at %.1fs for %s", offset, source.name)
        raise ThumbnailFailed("ffmpeg produced no frame")

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise ThumbnailFailed(f"Video thumbnail exceeded {self._timeout:.0f}s")
        return remaining

    def _run_ffmpeg(self, cmd: Sequence[str], deadline: float) -> None:
        subprocess.run(  # noqa: S603
            list(cmd),
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=self._remaining(deadline),
        )

    def _remux(self, ffmpeg_path: str, source: Path, target: Path, deadline: float) -> Path:
        cmd = [
            ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source),
            "-c",
            "copy",
            "-movflags",
            "+faststart",
            str(target),
        ]
        try:
            self._run_ffmpeg(cmd, deadline)
        except subprocess.TimeoutExpired:
            raise ThumbnailFailed(f"Remux timed out after {self._timeout:.0f}s")
        except (subprocess.CalledProcessError, OSError) as exc:
            logger.debug("Remux of %s failed, extracting from original: %s", source.name, exc)
            return source
        if target.exists() and target.stat().st_size > 0:
            return target
        return source

    def _run_frame_extraction(
        self,
        ffmpeg_path: str,
        source: Path,
        output: Path,
        offset: float,
        deadline: float,
    ) -> bool:
        width, height = self._canvas_size
        filter_chain = (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        )
        cmd = [
            ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            f"{offset:.2f}",
            "-i",
            str(source),
            "-frames:v",
            "1",
            "-vf",
            filter_chain,
            "-q:v",
            "2",
            "-f",
            "image2",
            str(output),
        ]
        try:
            self._run_ffmpeg(cmd, deadline)
        except subprocess.TimeoutExpired:
            raise ThumbnailFailed(f"Frame extraction timed out after {self._timeout:.0f}s")
        except (subprocess.CalledProcessError, OSError) as exc:
            logger.debug("Frame extraction at %.1fs failed for %s: %s", offset, source.name, exc)
            return False
        return True

    def _fit_canvas(self, frame: Image.Image) -> Image.Image:
        width, height = self._canvas_size
        img = frame.convert("RGB")
        if img.size == (width, height):
            return img
        img.thumbnail((width, height), _RESAMPLING_FILTER)
        canvas = Image.new("RGB", (width, height), (0, 0, 0))
        offset = ((width - img.width) // 2, (height - img.height) // 2)
        canvas.paste(img, offset)
        return canvas

    def _encode(self, image: Image.Image) -> bytes:
        buffer = io.BytesIO()
        image.convert("RGB").save(buffer, "JPEG", quality=self._quality, optimize=True)
        return buffer.getvalue()


def build_thumbnailer(cfg: dict) -> ThumbnailGenerator:
    def _int(key: str, default: int) -> int:
        try:
            return int(cfg.get(key, default))
        except (TypeError, ValueError):
            return default

    def _float(key: str, default: float) -> float:
        try:
            return float(cfg.get(key, default))
        except (TypeError, ValueError):
            return default

    remux = cfg.get("THUMB_REMUX_MIME_TYPES")
    if isinstance(remux, str):
        remux = [segment.strip() for segment in remux.split(",") if segment.strip()]
    return ThumbnailGenerator(
        max_dimension=_int("THUMB_MAX_DIMENSION", DEFAULT_MAX_DIMENSION),
        quality=_int("THUMB_QUALITY", DEFAULT_QUALITY),
        canvas_size=(
            _int("THUMB_VIDEO_WIDTH", DEFAULT_CANVAS_SIZE[0]),
            _int("THUMB_VIDEO_HEIGHT", DEFAULT_CANVAS_SIZE[1]),
        ),
        seek_seconds=_float("THUMB_SEEK_SECONDS", DEFAULT_SEEK_SECONDS),
        timeout=_float("THUMB_TIMEOUT_SECS", DEFAULT_TIMEOUT_SECONDS),
        remux_mime_types=remux,
        ffmpeg_path=os.getenv("FFMPEG_PATH") or None,
    )
