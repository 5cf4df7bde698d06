"""Pixel comparison between a baseline and a freshly captured screenshot."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageChops

logger = logging.getLogger(__name__)

# Per-channel delta (0-255) below which a pixel counts as unchanged;
# absorbs anti-aliasing and font rendering noise
PIXEL_THRESHOLD = 40
DIFF_COLOR = (255, 0, 64, 255)


@dataclass
class ComparisonResult:
    match: bool
    diff_pixels: int
    diff_percent: float
    message: str


def count_changed_pixels(baseline: Image.Image, current: Image.Image, pixel_threshold: int = PIXEL_THRESHOLD) -> tuple[int, Image.Image]:
    """Return the changed pixel count and a 1-bit style mask of the changes."""
    if baseline.size != current.size:
        logger.debug("Resizing %s screenshot to baseline size %s", current.size, baseline.size)
        current = current.resize(baseline.size)

    delta = ImageChops.difference(baseline.convert("RGBA"), current.convert("RGBA"))
    # Largest channel delta per pixel
    bands = delta.split()
    strongest = bands[0]
    for band in bands[1:]:
        strongest = ImageChops.lighter(strongest, band)
    mask = strongest.point(lambda v: 255 if v > pixel_threshold else 0)
    changed = mask.histogram()[255]
    return changed, mask


def write_diff_image(baseline: Image.Image, mask: Image.Image, diff_path: Path) -> None:
    """Highlight changed pixels over a faded copy of the baseline."""
    faded = Image.blend(baseline.convert("RGBA"), Image.new("RGBA", baseline.size, (255, 255, 255, 255)), 0.7)
    overlay = Image.new("RGBA", baseline.size, DIFF_COLOR)
    Image.composite(overlay, faded, mask).save(diff_path)


def compare_images(
    baseline_path: Path,
    actual_path: Path,
    diff_path: Path | None = None,
    threshold: float = 0.2,
    max_diff_pixels: int = 0,
    pixel_threshold: int = PIXEL_THRESHOLD,
) -> ComparisonResult:
    """Compare two PNGs.

    The images match when no pixel changed, when the changed share is at or
    below ``threshold`` percent, or when the changed count is at or below
    ``max_diff_pixels`` (when that is non-zero). A diff image is written to
    ``diff_path`` only for mismatches.
    """
    with Image.open(baseline_path) as baseline_file, Image.open(actual_path) as actual_file:
        baseline = baseline_file.convert("RGBA")
        actual = actual_file.convert("RGBA")

    total = baseline.size[0] * baseline.size[1]
    if total == 0:
        return ComparisonResult(True, 0, 0.0, "Empty images")

    changed, mask = count_changed_pixels(baseline, actual, pixel_threshold)
    percent = changed / total * 100
    match = changed == 0 or percent <= threshold or (max_diff_pixels > 0 and changed <= max_diff_pixels)
    message = f"Pixel diff: {changed} pixels ({percent:.2f}%, threshold {threshold:.2f}%)"

    if not match and diff_path is not None:
        diff_path.parent.mkdir(parents=True, exist_ok=True)
        write_diff_image(baseline, mask, diff_path)
        logger.debug("Wrote diff image %s", diff_path)
    return ComparisonResult(match, changed, round(percent, 4), message)
