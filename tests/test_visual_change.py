"""
Tests for the visual change detector and image helpers.
"""

import io

from PIL import Image

from conversational_browser.imaging import (
    compare_frames,
    describe_verdict,
    draw_marker,
    image_size,
    scale_image,
)


def make_png(width: int = 100, height: int = 80, color=(255, 255, 255), box=None) -> bytes:
    """Create a PNG, optionally with a black box (x0, y0, x1, y1)."""
    image = Image.new("RGB", (width, height), color)
    if box:
        x0, y0, x1, y1 = box
        for x in range(x0, x1):
            for y in range(y0, y1):
                image.putpixel((x, y), (0, 0, 0))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class TestCompareFrames:
    """Tests for compare_frames."""

    def test_identical_images_unchanged(self):
        """Identical images report no difference."""
        png = make_png()
        verdict = compare_frames(png, png)

        assert verdict.changed is False
        assert verdict.percent_diff == 0
        assert verdict.pixels_diff == 0
        assert verdict.total_pixels == 100 * 80

    def test_equal_content_different_encoding(self):
        """Two separately encoded copies of the same image are unchanged."""
        verdict = compare_frames(make_png(), make_png())

        assert verdict.changed is False
        assert verdict.pixels_diff == 0

    def test_dimension_mismatch(self):
        """Different geometry is a full change with pixels_diff -1."""
        verdict = compare_frames(make_png(100, 80), make_png(120, 80))

        assert verdict.changed is True
        assert verdict.percent_diff == 100
        assert verdict.pixels_diff == -1
        assert verdict.dimension_mismatch

    def test_counts_changed_pixels(self):
        """A 10x10 black box on 100x100 changes 1% of pixels."""
        before = make_png(100, 100)
        after = make_png(100, 100, box=(0, 0, 10, 10))
        verdict = compare_frames(before, after, threshold_percent=0.5)

        assert verdict.pixels_diff == 100
        assert verdict.percent_diff == 1.0
        assert verdict.changed is True

    def test_below_threshold_not_changed(self):
        """A small change under the threshold is reported but not 'changed'."""
        before = make_png(100, 100)
        after = make_png(100, 100, box=(0, 0, 2, 2))
        verdict = compare_frames(before, after, threshold_percent=0.5)

        assert verdict.pixels_diff == 4
        assert verdict.changed is False

    def test_antialiasing_tolerance(self):
        """Tiny per-channel deltas are ignored."""
        before = make_png(color=(200, 200, 200))
        after = make_png(color=(210, 205, 195))
        verdict = compare_frames(before, after, threshold_percent=0.0)

        assert verdict.pixels_diff == 0
        assert verdict.changed is False

    def test_corrupt_input_is_unknown(self):
        """Undecodable input degrades to an error verdict."""
        verdict = compare_frames(make_png(), b"not an image")

        assert verdict.changed is False
        assert verdict.error is not None
        assert verdict.unknown

    def test_missing_input_is_unknown(self):
        """A missing image degrades to an error verdict."""
        verdict = compare_frames(None, make_png())

        assert verdict.changed is False
        assert verdict.unknown


class TestDescribeVerdict:
    """Tests for the verdict text given to the model."""

    def test_unknown_never_reads_as_no_change(self):
        verdict = compare_frames(None, None)
        text = describe_verdict(verdict)

        assert "Unknown" in text
        assert "No visible change" not in text

    def test_no_change_suggests_another_approach(self):
        png = make_png()
        text = describe_verdict(compare_frames(png, png))

        assert "No visible change" in text
        assert "different approach" in text

    def test_changed(self):
        verdict = compare_frames(make_png(100, 100), make_png(100, 100, box=(0, 0, 50, 50)))
        assert "changed visibly" in describe_verdict(verdict)


class TestImageHelpers:
    """Tests for scaling and marker drawing."""

    def test_scale_image(self):
        scaled = scale_image(make_png(100, 80), 0.7)
        assert image_size(scaled) == (70, 56)

    def test_scale_invalid_returns_input(self):
        assert scale_image(b"garbage", 0.7) == b"garbage"

    def test_image_size_invalid(self):
        assert image_size(b"garbage") == (0, 0)

    def test_draw_marker_changes_pixels(self):
        png = make_png(100, 100)
        marked = draw_marker(png, 50, 50)

        assert image_size(marked) == (100, 100)
        assert compare_frames(png, marked, threshold_percent=0.0).changed
