"""
Image helpers and visual change detection.

Decodes screenshots with Pillow, scales them for the model, draws the click
marker, and compares two frames pixel by pixel.
"""

import io
import logging
from typing import Optional

from PIL import Image, ImageChops, ImageDraw, UnidentifiedImageError

from .types import ChangeVerdict

logger = logging.getLogger(__name__)

# Per-channel delta (0-255) below which a pixel counts as anti-aliasing noise
ANTIALIAS_TOLERANCE = 25

# Tools whose visual effect is subtle (typing into a field)
TEXT_ENTRY_TOOLS = frozenset({
    "browser_type",
    "browser_fill_form",
    "browser_press_key",
    "browser_select_option",
})

DEFAULT_THRESHOLD = 0.5

MARKER_RADIUS_SCALED = 14


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def image_size(data: bytes) -> tuple[int, int]:
    """Return (width, height) of an encoded image, or (0, 0) if unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.error("Error reading image dimensions: %s", e)
        return 0, 0


def _encode(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def scale_image(data: bytes, factor: float) -> bytes:
    """Scale an encoded image by ``factor`` and return PNG bytes.

    Returns the original bytes if the image cannot be decoded.
    """
    try:
        image = _open(data)
        width = max(1, round(image.width * factor))
        height = max(1, round(image.height * factor))
        scaled = image.convert("RGB").resize((width, height), Image.Resampling.LANCZOS)
        return _encode(scaled)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.error("Failed to scale screenshot: %s", e)
        return data


def draw_marker(data: bytes, x: int, y: int, radius: int = MARKER_RADIUS_SCALED) -> bytes:
    """Draw a red dot with a white ring at (x, y).

    Returns the original bytes if the image cannot be decoded.
    """
    try:
        image = _open(data).convert("RGBA")
        overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        outer = (x - radius, y - radius, x + radius, y + radius)
        inner_r = radius // 2
        inner = (x - inner_r, y - inner_r, x + inner_r, y + inner_r)
        draw.ellipse(outer, fill=(255, 0, 0, 128), outline=(255, 255, 255, 255), width=2)
        draw.ellipse(inner, fill=(255, 0, 0, 204))
        return _encode(Image.alpha_composite(image, overlay).convert("RGB"))
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.error("Failed to draw click marker: %s", e)
        return data


def compare_frames(
    before: Optional[bytes],
    after: Optional[bytes],
    threshold_percent: float = DEFAULT_THRESHOLD,
) -> ChangeVerdict:
    """Compare two encoded images.

    Never raises: unreadable input degrades to ``changed=False`` with
    ``error`` set, which callers must read as "unknown".

    Args:
        before: Image captured before the action
        after: Image captured after the action
        threshold_percent: Minimum percentage of differing pixels for ``changed``

    Returns:
        ChangeVerdict
    """
    if not before or not after:
        return ChangeVerdict(False, 0.0, 0, 0, error="missing image")

    if before == after:
        width, height = image_size(after)
        if width and height:
            return ChangeVerdict(False, 0.0, 0, width * height)

    try:
        first = _open(before).convert("RGB")
        second = _open(after).convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        return ChangeVerdict(False, 0.0, 0, 0, error=f"decode failed: {e}")

    total = second.width * second.height
    if first.size != second.size:
        return ChangeVerdict(True, 100.0, -1, total)

    diff = ImageChops.difference(first, second)
    red, green, blue = diff.split()
    peak = ImageChops.lighter(ImageChops.lighter(red, green), blue)
    mask = peak.point(lambda v: 255 if v > ANTIALIAS_TOLERANCE else 0)
    diff_pixels = mask.histogram()[255]

    percent = min(100.0, diff_pixels / total * 100) if total else 0.0
    return ChangeVerdict(percent > threshold_percent, percent, diff_pixels, total)


def describe_verdict(verdict: ChangeVerdict) -> str:
    """Render a verdict as text for the model."""
    if verdict.unknown:
        return (
            f"[Visual check] Unknown: could not compare screenshots ({verdict.error}). "
            "Verify the result with a snapshot before assuming it worked."
        )
    if verdict.dimension_mismatch:
        return "[Visual check] The page layout changed completely (viewport size differs)."
    if verdict.changed:
        return f"[Visual check] The page changed visibly ({verdict.percent_diff:.2f}% of pixels)."
    return (
        f"[Visual check] No visible change observed ({verdict.percent_diff:.2f}% of pixels). "
        "The action may not have had an effect; if so, try a different approach."
    )
