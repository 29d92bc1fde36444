"""
Tests for the adaptive screenshot streamer.
"""

import io
import threading
import time
from unittest.mock import MagicMock

from PIL import Image

from conversational_browser.config import StreamerConfig
from conversational_browser.errors import GatewayUnavailable, ToolExecutionError
from conversational_browser.screenshot_cache import ScreenshotCache
from conversational_browser.streamer import (
    AdaptiveScreenshotStreamer,
    FrameRateController,
    LatestFrameDispatcher,
)


def make_png(color=(255, 255, 255), size=(40, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_streamer(gateway, **overrides):
    config = StreamerConfig(min_fps=2, max_fps=15, pause_cooldown_s=60.0, **overrides)
    return AdaptiveScreenshotStreamer(gateway, ScreenshotCache(), config)


class TestFrameRateController:
    """Tests for the capture rate rules."""

    def test_starts_at_max(self):
        rate = FrameRateController(2, 15)
        assert rate.current_fps == 15

    def test_decrements_from_threshold_frame(self):
        """Three unchanged frames drop the rate by one, then each further frame."""
        rate = FrameRateController(2, 15)

        assert rate.record(False) == 15
        assert rate.record(False) == 15
        assert rate.record(False) == 14
        assert rate.record(False) == 13

    def test_change_jumps_to_max(self):
        rate = FrameRateController(2, 15)
        for _ in range(6):
            rate.record(False)
        assert rate.current_fps == 11

        assert rate.record(True) == 15
        assert rate.unchanged_count == 0

    def test_floor_at_min(self):
        rate = FrameRateController(2, 5)
        for _ in range(20):
            rate.record(False)
        assert rate.current_fps == 2

    def test_set_bounds_clamps_current(self):
        rate = FrameRateController(2, 15)
        rate.set_bounds(1, 5)
        assert rate.current_fps == 5
        assert rate.interval == 0.2

    def test_invalid_bounds(self):
        rate = FrameRateController(0, -1)
        assert rate.min_fps == 1
        assert rate.max_fps == 1


class TestCaptureStep:
    """Tests for one capture step of the streamer."""

    def test_first_frame_is_cached(self):
        gateway = MagicMock()
        gateway.take_screenshot.return_value = make_png()
        streamer = make_streamer(gateway)

        streamer._step()

        frame = streamer.cache.latest()
        assert frame is not None
        assert frame.width == 40
        assert frame.scaled_width == 28

    def test_unchanged_frames_lower_rate(self):
        gateway = MagicMock()
        gateway.take_screenshot.return_value = make_png()
        streamer = make_streamer(gateway)

        for _ in range(4):
            streamer._step()

        # first frame counts as changed, the next three are unchanged
        assert streamer.rate.current_fps == 14

    def test_no_screenshot_keeps_cache_empty(self):
        gateway = MagicMock()
        gateway.take_screenshot.return_value = None
        streamer = make_streamer(gateway)

        streamer._step()
        assert streamer.cache.latest() is None

    def test_pauses_after_consecutive_errors(self):
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = ToolExecutionError("capture failed")
        streamer = make_streamer(gateway)

        try:
            for _ in range(4):
                streamer._step()
            assert not streamer.is_paused
            assert streamer.consecutive_errors == 4

            streamer._step()
            assert streamer.is_paused

            # paused steps do not touch the gateway
            calls = gateway.take_screenshot.call_count
            assert streamer._step() == streamer.config.paused_poll_s
            assert gateway.take_screenshot.call_count == calls
        finally:
            streamer.stop()

    def test_cooldown_end_resumes(self):
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = ToolExecutionError("capture failed")
        streamer = make_streamer(gateway)
        try:
            for _ in range(5):
                streamer._step()
            streamer._end_cooldown()

            assert not streamer.is_paused
            assert streamer.consecutive_errors == 0
        finally:
            streamer.stop()

    def test_unavailable_gateway_not_counted(self):
        """Frames skipped during a reconnect are not capture errors."""
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = GatewayUnavailable("reconnecting")
        streamer = make_streamer(gateway)

        for _ in range(10):
            streamer._step()

        assert streamer.consecutive_errors == 0
        assert not streamer.is_paused

    def test_unexpected_error_counted(self):
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = ValueError("Incorrect padding")
        streamer = make_streamer(gateway)

        assert streamer._step() == streamer.rate.interval
        assert streamer.consecutive_errors == 1

    def test_undecodable_image_counted(self):
        gateway = MagicMock()
        gateway.take_screenshot.return_value = b"not an image"
        streamer = make_streamer(gateway)

        streamer._step()

        assert streamer.consecutive_errors == 1
        assert streamer.cache.latest() is None

    def test_bad_payloads_keep_loop_running(self):
        """Capture failures pause the stream instead of ending it."""
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = ValueError("Incorrect padding")
        streamer = make_streamer(gateway)

        streamer.start()
        try:
            for _ in range(100):
                if streamer.is_paused:
                    break
                time.sleep(0.02)
            assert streamer.is_paused
            assert streamer.is_running
            assert streamer.consecutive_errors == 5
        finally:
            streamer.stop()

    def test_sleep_subtracts_capture_time(self):
        gateway = MagicMock()

        def slow_capture():
            time.sleep(0.03)
            return make_png()

        gateway.take_screenshot.side_effect = slow_capture
        streamer = make_streamer(gateway)

        delay = streamer._step()

        assert delay < 1 / 15 - 0.03 + 0.005
        assert delay >= 0.0

    def test_slow_capture_sleeps_zero(self):
        gateway = MagicMock()

        def slow_capture():
            time.sleep(0.1)
            return make_png()

        gateway.take_screenshot.side_effect = slow_capture
        streamer = make_streamer(gateway)

        assert streamer._step() == 0.0

    def test_success_resets_errors(self):
        gateway = MagicMock()
        gateway.take_screenshot.side_effect = [
            ToolExecutionError("a"),
            ToolExecutionError("b"),
            make_png(),
        ]
        streamer = make_streamer(gateway)

        for _ in range(3):
            streamer._step()
        assert streamer.consecutive_errors == 0

    def test_manual_pause_and_resume(self):
        gateway = MagicMock()
        streamer = make_streamer(gateway)

        streamer.pause()
        streamer._step()
        gateway.take_screenshot.assert_not_called()

        streamer.resume()
        assert not streamer.is_paused

    def test_marker_drawn_on_scaled_copy(self):
        gateway = MagicMock()
        png = make_png(size=(100, 100))
        gateway.take_screenshot.return_value = png
        streamer = make_streamer(gateway)

        streamer.set_marker(10, 10)
        streamer._step()

        frame = streamer.cache.latest()
        assert frame.marker is not None
        assert frame.full_bytes == png

    def test_set_fps_clamps_rate(self):
        streamer = make_streamer(MagicMock())
        streamer.set_fps(1, 4)

        assert streamer.rate.current_fps == 4
        assert streamer.config.max_fps == 4

    def test_start_delivers_frames(self):
        gateway = MagicMock()
        gateway.take_screenshot.return_value = make_png()
        streamer = make_streamer(gateway)
        received = threading.Event()

        streamer.start(lambda frame: received.set())
        streamer.start()
        try:
            assert received.wait(5)
            assert streamer.is_running
        finally:
            streamer.stop()
        assert not streamer.is_running

    def test_stop_without_start_is_noop(self):
        streamer = make_streamer(MagicMock())
        streamer.stop()
        streamer.stop()
        assert not streamer.is_running


class TestLatestFrameDispatcher:
    """Tests for frame delivery."""

    def test_superseded_frames_are_dropped(self):
        release = threading.Event()
        started = threading.Event()
        delivered = []

        def listener(frame):
            delivered.append(frame)
            started.set()
            release.wait(2)

        dispatcher = LatestFrameDispatcher(listener)
        try:
            dispatcher.submit("first")
            assert started.wait(2)

            # listener busy: only the newest of these is delivered
            dispatcher.submit("second")
            dispatcher.submit("third")
            release.set()

            for _ in range(50):
                if len(delivered) >= 2:
                    break
                threading.Event().wait(0.02)
        finally:
            dispatcher.close()

        assert delivered[0] == "first"
        assert "second" not in delivered
        assert delivered[-1] == "third"

    def test_listener_exception_does_not_stop_delivery(self):
        delivered = threading.Event()
        calls = []

        def listener(frame):
            calls.append(frame)
            if frame == "bad":
                raise RuntimeError("boom")
            delivered.set()

        dispatcher = LatestFrameDispatcher(listener)
        try:
            dispatcher.submit("bad")
            for _ in range(50):
                if calls:
                    break
                threading.Event().wait(0.02)
            dispatcher.submit("good")
            assert delivered.wait(2)
        finally:
            dispatcher.close()
