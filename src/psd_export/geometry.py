"""
Image geometry utilities.

Pure functions on :py:class:`PIL.Image.Image` used by every export path:
clipping to the canvas, transparency analysis and trimming, and multi-scale
saving. None of them keeps state; only the ``save_*`` functions touch the
file system.

Example::

    from psd_export import geometry

    image, x, y = geometry.clip_to_canvas(image, x, y, 1920, 1080)
    bounds = geometry.analyze_transparency(image)
    if bounds.found_opaque:
        image = geometry.trim(image, bounds)
        path = geometry.save_scaled_variants(
            image, "out", "layer.png", ["1x", "2x"]
        )
"""

import hashlib
import logging
import os
import re
import secrets
from pathlib import Path
from typing import Sequence, Union

import numpy as np
from PIL import Image

from psd_export.constants import BASE_SCALE, PREVIEW_BASENAME, UNSAFE_FILENAME_CHARS
from psd_export.exceptions import (
    OutsideCanvasError,
    SaveError,
    TransparentImageError,
)
from psd_export.models import TransparencyBounds

logger = logging.getLogger(__name__)

_SCALE_PATTERN = re.compile(r"^\s*(\d+)x\s*$")
_UNSAFE_TABLE = str.maketrans({c: "_" for c in UNSAFE_FILENAME_CHARS})


def intersect(
    a: tuple[int, int, int, int], b: tuple[int, int, int, int]
) -> tuple[int, int, int, int]:
    """Calculate intersection of two bounding boxes."""
    inter = (max(a[0], b[0]), max(a[1], b[1]), min(a[2], b[2]), min(a[3], b[3]))
    if inter[0] >= inter[2] or inter[1] >= inter[3]:
        return (0, 0, 0, 0)
    return inter


def clip_to_canvas(
    image: Image.Image, x: int, y: int, canvas_width: int, canvas_height: int
) -> tuple[Image.Image, int, int]:
    """
    Clip an image placed at ``(x, y)`` to the canvas rectangle.

    :param image: image to clip.
    :param x: left offset of the image on the canvas.
    :param y: top offset of the image on the canvas.
    :param canvas_width: canvas width.
    :param canvas_height: canvas height.
    :return: ``(image, x, y)`` of the visible part. The input image and offset
        are returned as they are when the image lies inside the canvas.
    :raise OutsideCanvasError: if the image does not intersect the canvas.
    """
    width, height = image.size
    left, top, right, bottom = intersect(
        (x, y, x + width, y + height), (0, 0, canvas_width, canvas_height)
    )
    if right <= left or bottom <= top:
        raise OutsideCanvasError(
            "Image at (%d, %d) of size %dx%d is outside the %dx%d canvas"
            % (x, y, width, height, canvas_width, canvas_height)
        )

    crop = (left - x, top - y, right - x, bottom - y)
    if crop == (0, 0, width, height):
        return image, x, y
    return image.crop(crop), left, top


def analyze_transparency(image: Image.Image) -> TransparencyBounds:
    """
    Find the tight bounding box of pixels with non-zero alpha.

    Every pixel is visited once. Images without an alpha channel are opaque
    everywhere.

    :param image: image to analyze.
    :return: :py:class:`~psd_export.models.TransparencyBounds`.
    """
    width, height = image.size
    if width == 0 or height == 0:
        return TransparencyBounds()
    if "A" not in image.getbands():
        return TransparencyBounds(0, 0, width - 1, height - 1, True)

    mask = np.asarray(image.getchannel("A")) > 0
    rows = np.flatnonzero(mask.any(axis=1))
    if rows.size == 0:
        return TransparencyBounds()
    cols = np.flatnonzero(mask.any(axis=0))
    return TransparencyBounds(
        min_x=int(cols[0]),
        min_y=int(rows[0]),
        max_x=int(cols[-1]),
        max_y=int(rows[-1]),
        found_opaque=True,
    )


def trim(image: Image.Image, bounds: TransparencyBounds) -> Image.Image:
    """
    Crop the image to the given transparency bounds.

    :param image: image to crop.
    :param bounds: result of :py:func:`analyze_transparency`, possibly computed
        on another image of the same size.
    :return: the cropped image, or ``image`` itself when ``bounds`` already
        covers it.
    :raise TransparentImageError: if ``bounds`` has no opaque pixel.
    """
    if not bounds.found_opaque:
        raise TransparentImageError("Image is completely transparent")
    if bounds.is_tight(image.size):
        return image
    return image.crop(bounds.box)


def parse_scale(scale: str) -> int:
    """
    Parse a scale factor such as ``"2x"``.

    :raise ValueError: if the value is not a positive integer followed by ``x``.
    """
    match = _SCALE_PATTERN.match(str(scale))
    if match is None or int(match.group(1)) <= 0:
        raise ValueError("Invalid scale factor: %r" % (scale,))
    return int(match.group(1))


def scaled_filename(filename: str, scale: str) -> str:
    """
    File name of the given scale variant.

    ``1x`` keeps the file name, other scales insert ``@{scale}`` before the
    extension: ``scaled_filename("foo.png", "2x") == "foo@2x.png"``.
    """
    scale = scale.strip()
    if scale == BASE_SCALE:
        return filename
    base, ext = os.path.splitext(filename)
    return "%s@%s%s" % (base, scale, ext)


def save_scaled_variants(
    image: Image.Image,
    output_dir: Union[str, Path],
    base_filename: str,
    scales: Sequence[str],
) -> str:
    """
    Save an image at several integer scale factors.

    Factors other than 1 are resized with Lanczos resampling. Either every
    variant is written or none is: files written before a failure are removed.

    :param image: source image at 1x.
    :param output_dir: destination directory, created when missing.
    :param base_filename: file name of the 1x variant, including extension.
    :param scales: scale factors such as ``["1x", "2x"]``.
    :return: file name of the 1x variant, or of the first saved variant when
        1x is not requested.
    :raise SaveError: if a variant cannot be written.
    """
    if not scales:
        raise SaveError("No scale requested for %s" % base_filename)

    output_dir = Path(output_dir)
    written: list[Path] = []
    canonical = None
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        for scale in scales:
            scale = scale.strip()
            factor = parse_scale(scale)
            if factor == 1:
                variant = image
            else:
                size = (image.width * factor, image.height * factor)
                variant = image.resize(size, Image.Resampling.LANCZOS)
            filename = scaled_filename(base_filename, scale)
            path = output_dir / filename
            variant.save(path)
            written.append(path)
            if scale == BASE_SCALE:
                canonical = filename
            elif canonical is None:
                canonical = filename
    except (OSError, ValueError, KeyError) as e:
        for path in written:
            try:
                path.unlink()
            except OSError:
                logger.debug("Failed to remove %s", path, exc_info=True)
        raise SaveError("Failed to save %s: %s" % (base_filename, e)) from e
    return canonical


def save_preview(
    image: Image.Image, output_dir: Union[str, Path], quality: int = 75
) -> str:
    """
    Save the full document preview.

    The preview is written as lossy WebP and falls back to PNG when the WebP
    encoder fails.

    :return: file name of the written preview.
    :raise SaveError: if neither format can be written.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    filename = PREVIEW_BASENAME + ".webp"
    try:
        image.save(output_dir / filename, "WEBP", quality=quality, lossless=False)
        return filename
    except (OSError, ValueError, KeyError) as e:
        logger.warning("WebP preview failed, falling back to PNG: %s", e)

    filename = PREVIEW_BASENAME + ".png"
    try:
        image.save(output_dir / filename, "PNG")
    except (OSError, ValueError) as e:
        raise SaveError("Failed to save preview: %s" % e) from e
    return filename


def sanitize_filename(name: str, max_length: int = 50) -> str:
    """
    Make a layer name safe to embed in a file name.

    Path separators, reserved characters and spaces become ``_``, the result
    is capped to ``max_length`` characters, and names that end up blank are
    replaced by a hash of the original name.
    """
    sanitized = name.translate(_UNSAFE_TABLE)[:max_length]
    if not sanitized.strip():
        sanitized = hashlib.md5(name.encode("utf-8")).hexdigest()[:12]
    return sanitized


def unique_filename(
    prefix: str, name: str, variant: str = "", max_length: int = 50
) -> str:
    """
    File name ``{prefix}_{name}[_{variant}]_{random}.png`` for an exported node.

    The random part keeps nodes with the same name apart.
    """
    parts = [prefix, sanitize_filename(name, max_length)]
    if variant:
        parts.append(variant)
    parts.append(secrets.token_hex(4))
    return "_".join(parts) + ".png"


def slice_filename(project_id: int, slice_id: int) -> str:
    """File name of a slice, derived from the project and slice ids."""
    digest = hashlib.md5(
        ("slice_%s_%s" % (project_id, slice_id)).encode("utf-8")
    ).hexdigest()
    return "slice_%s.png" % digest[:8]
