"""Image tool backends: identify pictures and render thumbnails.

Two backends share one interface:
- ImageMagick, driven through its command-line tools (``magick`` on
  version 7, ``identify``/``convert`` on version 6)
- Pillow, with rawpy for camera RAW files and pillow-heif for HEIC/HEIF

``select_image_tool("auto")`` prefers ImageMagick when it is on PATH.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import pillow_heif
import rawpy
from PIL import Image, ImageOps

from ..constants import (
    CONVERT_TIMEOUT,
    IDENTIFY_TIMEOUT,
    JPEG_QUALITY_THUMBNAIL,
    RAW_EXTENSIONS,
)
from ..exceptions import ProcessError
from ..models import PictureInfo

logger = logging.getLogger(__name__)

# Register HEIC/HEIF support with Pillow
pillow_heif.register_heif_opener()


class ImageTool(ABC):
    """Identify-and-convert capability consumed by the image processor."""

    name: str = "base"

    @abstractmethod
    def identify(self, path: Path) -> PictureInfo:
        """Read dimensions and format of a picture file.

        Raises:
            ProcessError: If the file can't be identified
        """
        ...

    @abstractmethod
    def make_thumbnail(self, source: Path, destination: Path, size: int) -> None:
        """Write a JPEG thumbnail whose longest side is at most ``size``.

        Raises:
            ProcessError: If the thumbnail can't be rendered
        """
        ...


def _write_atomically(destination: Path, render) -> None:
    """Render into a temp file next to ``destination``, then rename it in place.

    Readers never see a partially written thumbnail.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=destination.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        render(tmp_path)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


# =============================================================================
# IMAGEMAGICK
# =============================================================================


class ImageMagickTool(ImageTool):
    """Backend calling ImageMagick's command-line tools."""

    name = "imagemagick"

    def __init__(self):
        magick = shutil.which("magick")
        if magick:
            self._identify_cmd = [magick, "identify"]
            self._convert_cmd = [magick]
        else:
            identify = shutil.which("identify")
            convert = shutil.which("convert")
            if not identify or not convert:
                raise ProcessError("ImageMagick not found on PATH")
            self._identify_cmd = [identify]
            self._convert_cmd = [convert]

    @staticmethod
    def available() -> bool:
        """Check if ImageMagick is installed."""
        if shutil.which("magick"):
            return True
        return bool(shutil.which("identify") and shutil.which("convert"))

    def identify(self, path: Path) -> PictureInfo:
        # [0]: first frame only for animations and multi-page files
        result = self._run(
            [*self._identify_cmd, "-format", "%w %h %m\\n", f"{path}[0]"],
            IDENTIFY_TIMEOUT,
        )
        return parse_identify_output(result.stdout, path.name)

    def make_thumbnail(self, source: Path, destination: Path, size: int) -> None:
        def render(tmp_path: Path) -> None:
            self._run(
                [
                    *self._convert_cmd,
                    f"{source}[0]",
                    "-auto-orient",
                    "-thumbnail",
                    f"{size}x{size}>",
                    "-quality",
                    str(JPEG_QUALITY_THUMBNAIL),
                    f"jpeg:{tmp_path}",
                ],
                CONVERT_TIMEOUT,
            )

        _write_atomically(destination, render)

    def _run(self, cmd: list[str], timeout: int) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProcessError(f"{Path(cmd[0]).name} timed out after {timeout}s") from e
        except (subprocess.SubprocessError, OSError) as e:
            raise ProcessError(f"{Path(cmd[0]).name} failed to run: {e}") from e

        if result.returncode != 0:
            raise ProcessError(
                f"{Path(cmd[0]).name} exited with {result.returncode}: {result.stderr.strip()}"
            )
        return result


def parse_identify_output(output: str, original_name: str) -> PictureInfo:
    """Parse ``identify -format "%w %h %m"`` output.

    Only the first line is used; multi-frame files print one per frame.

    Raises:
        ProcessError: If the output has no usable dimensions
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise ProcessError(f"identify printed nothing for {original_name}")
    parts = lines[0].split()
    try:
        width, height = int(parts[0]), int(parts[1])
    except (IndexError, ValueError) as e:
        raise ProcessError(f"Unexpected identify output: {lines[0]!r}") from e
    if width <= 0 or height <= 0:
        raise ProcessError(f"Invalid dimensions {width}x{height} for {original_name}")
    fmt = parts[2] if len(parts) > 2 else None
    return PictureInfo(width=width, height=height, original_name=original_name, format=fmt)


# =============================================================================
# PILLOW
# =============================================================================


class PillowTool(ImageTool):
    """In-process backend using Pillow (rawpy for RAW files)."""

    name = "pillow"

    def identify(self, path: Path) -> PictureInfo:
        try:
            if _is_raw(path):
                with rawpy.imread(str(path)) as raw:
                    width, height = raw.sizes.width, raw.sizes.height
                fmt = "RAW"
            else:
                with Image.open(path) as img:
                    width, height = img.size
                    fmt = img.format
        except Exception as e:
            raise ProcessError(f"Cannot identify {path}: {e}") from e
        if width <= 0 or height <= 0:
            raise ProcessError(f"Invalid dimensions {width}x{height} for {path}")
        return PictureInfo(width=width, height=height, original_name=path.name, format=fmt)

    def make_thumbnail(self, source: Path, destination: Path, size: int) -> None:
        def render(tmp_path: Path) -> None:
            img = _load_rgb(source)
            img.thumbnail((size, size))
            img.save(tmp_path, "JPEG", quality=JPEG_QUALITY_THUMBNAIL)

        try:
            _write_atomically(destination, render)
        except ProcessError:
            raise
        except Exception as e:
            raise ProcessError(f"Cannot render thumbnail of {source}: {e}") from e


def _is_raw(path: Path) -> bool:
    return path.suffix.lower() in RAW_EXTENSIONS


def _load_rgb(path: Path) -> Image.Image:
    """Load a picture as an upright RGB image."""
    if _is_raw(path):
        with rawpy.imread(str(path)) as raw:
            # Half size is plenty for a thumbnail
            rgb = raw.postprocess(use_camera_wb=True, half_size=True, output_bps=8)
        return Image.fromarray(rgb)

    with Image.open(path) as img:
        img.seek(0)
        img = ImageOps.exif_transpose(img)
        # Convert to RGB if necessary (handles RGBA, grayscale, etc.)
        if img.mode != "RGB":
            img = img.convert("RGB")
        img.load()
        return img


# =============================================================================
# SELECTION
# =============================================================================


def select_image_tool(name: str = "auto") -> ImageTool:
    """Instantiate a backend by name ("auto", "imagemagick" or "pillow").

    Raises:
        ProcessError: If ImageMagick is requested but not installed
        ValueError: On an unknown name
    """
    if name == "pillow":
        return PillowTool()
    if name == "imagemagick":
        return ImageMagickTool()
    if name == "auto":
        if ImageMagickTool.available():
            return ImageMagickTool()
        logger.warning("ImageMagick not found on PATH, using Pillow")
        return PillowTool()
    raise ValueError(f"Unknown image tool: {name}")
