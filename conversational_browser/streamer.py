"""
Adaptive screenshot streaming.

Captures the page through the gateway, keeps the latest frame in the
screenshot cache, and adapts the capture rate to how much the page is
changing.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .config import StreamerConfig
from .errors import BrowserAgentError, GatewayUnavailable
from .gateway import ToolGateway
from .imaging import compare_frames, draw_marker, image_size, scale_image
from .logger import VERBOSE
from .scheduling import ScheduledTask, run_later
from .screenshot_cache import ScreenshotCache
from .types import Frame

logger = logging.getLogger(__name__)

FrameListener = Callable[[Frame], None]


class FrameRateController:
    """Capture rate rules.

    A visible change jumps straight to ``max_fps``. Once ``unchanged_threshold``
    frames in a row show no change, every unchanged frame (starting with the
    one that reaches the threshold) lowers the rate by one, down to ``min_fps``.
    """

    def __init__(self, min_fps: int, max_fps: int, unchanged_threshold: int = 3):
        self.unchanged_threshold = unchanged_threshold
        self.min_fps = max(1, int(min_fps))
        self.max_fps = max(self.min_fps, int(max_fps))
        self.current_fps = self.max_fps
        self.unchanged_count = 0

    def set_bounds(self, min_fps: int, max_fps: int) -> None:
        self.min_fps = max(1, int(min_fps))
        self.max_fps = max(self.min_fps, int(max_fps))
        self.current_fps = min(max(self.current_fps, self.min_fps), self.max_fps)

    def record(self, changed: bool) -> int:
        """Account for one captured frame and return the new rate."""
        if changed:
            self.current_fps = self.max_fps
            self.unchanged_count = 0
        else:
            self.unchanged_count += 1
            if self.unchanged_count >= self.unchanged_threshold and self.current_fps > self.min_fps:
                self.current_fps -= 1
        return self.current_fps

    def reset(self) -> None:
        self.current_fps = self.max_fps
        self.unchanged_count = 0

    @property
    def interval(self) -> float:
        return 1.0 / self.current_fps


class LatestFrameDispatcher:
    """Delivers frames to a listener on a worker thread.

    At most one frame is pending. A frame submitted while the listener is
    still busy replaces the pending one; nothing is queued.
    """

    def __init__(self, listener: FrameListener):
        self._listener = listener
        self._pending: Optional[Frame] = None
        self._closed = False
        self._cond = threading.Condition()
        self._thread = threading.Thread(target=self._run, name="frame-dispatcher", daemon=True)
        self._thread.start()

    def submit(self, frame: Frame) -> None:
        with self._cond:
            if self._pending is not None:
                logger.log(VERBOSE, "Superseding undelivered frame")
            self._pending = frame
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._pending = None
            self._cond.notify()

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                frame, self._pending = self._pending, None
            try:
                self._listener(frame)
            except Exception:
                logger.exception("Frame listener raised")


class AdaptiveScreenshotStreamer:
    """Streams screenshots into the cache at an adaptive rate.

    Usage:
        streamer = AdaptiveScreenshotStreamer(gateway, cache)
        streamer.start(on_frame)
        ...
        streamer.stop()
    """

    def __init__(
        self,
        gateway: ToolGateway,
        cache: ScreenshotCache,
        config: Optional[StreamerConfig] = None,
    ):
        self.gateway = gateway
        self.cache = cache
        self.config = config or StreamerConfig()
        self.rate = FrameRateController(
            self.config.min_fps,
            self.config.max_fps,
            self.config.unchanged_threshold,
        )
        self.consecutive_errors = 0

        self._lock = threading.Lock()
        self._task: Optional[ScheduledTask] = None
        self._cooldown: Optional[ScheduledTask] = None
        self._dispatcher: Optional[LatestFrameDispatcher] = None
        self._paused = False
        self._cooling_down = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and self._task.is_running

    @property
    def is_paused(self) -> bool:
        return self._paused or self._cooling_down

    def start(self, listener: Optional[FrameListener] = None) -> None:
        """Start streaming. A no-op if already running."""
        with self._lock:
            if self.is_running:
                return
            if listener is not None:
                self._set_dispatcher(listener)
            self._paused = False
            self._cooling_down = False
            self.consecutive_errors = 0
            self.rate.reset()
            logger.info(
                "Starting screenshot stream (%d-%d fps)",
                self.rate.min_fps, self.rate.max_fps,
            )
            self._task = ScheduledTask(self._step, name="screenshot-stream").start()

    def set_listener(self, listener: Optional[FrameListener]) -> None:
        with self._lock:
            self._set_dispatcher(listener)

    def _set_dispatcher(self, listener: Optional[FrameListener]) -> None:
        if self._dispatcher is not None:
            self._dispatcher.close()
        self._dispatcher = LatestFrameDispatcher(listener) if listener else None

    def stop(self) -> None:
        """Stop streaming. A no-op if not running."""
        with self._lock:
            task, self._task = self._task, None
            cooldown, self._cooldown = self._cooldown, None
            dispatcher, self._dispatcher = self._dispatcher, None
        if task is None and cooldown is None and dispatcher is None:
            return
        for t in (task, cooldown):
            if t is not None:
                t.cancel()
        if dispatcher is not None:
            dispatcher.close()
        logger.info("Screenshot stream stopped")

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.info("Screenshot stream paused")

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            self.consecutive_errors = 0
            self.rate.reset()
            logger.info("Screenshot stream resumed")

    def set_fps(self, min_fps: int, max_fps: int) -> None:
        self.config.min_fps = min_fps
        self.config.max_fps = max_fps
        self.rate.set_bounds(min_fps, max_fps)
        logger.info("Stream FPS range set to %d-%d", self.rate.min_fps, self.rate.max_fps)

    def set_marker(self, x: int, y: int) -> None:
        """Show the click indicator at (x, y) in scaled coordinates."""
        self.cache.set_marker(x, y)

    # ------------------------------------------------------------------

    def _step(self) -> float:
        if self.is_paused:
            return self.config.paused_poll_s

        started = time.monotonic()
        try:
            data = self.gateway.take_screenshot()
        except GatewayUnavailable as e:
            logger.log(VERBOSE, "Skipping frame: %s", e)
            return self.rate.interval
        except BrowserAgentError as e:
            return self._on_capture_error(e)
        except Exception as e:
            logger.exception("Unexpected screenshot capture error")
            return self._on_capture_error(e)

        if data is None:
            return self.rate.interval

        try:
            frame = self._build_frame(data)
        except Exception as e:
            # Undecodable image bytes
            return self._on_capture_error(e)
        self.consecutive_errors = 0
        changed = self._has_changed(frame)
        self.cache.put(frame)
        fps = self.rate.record(changed)

        dispatcher = self._dispatcher
        if dispatcher is not None:
            dispatcher.submit(frame)

        elapsed = time.monotonic() - started
        logger.log(VERBOSE, "Frame captured in %.3fs (changed=%s, fps=%d)", elapsed, changed, fps)
        return max(1.0 / fps - elapsed, 0.0)

    def _on_capture_error(self, error: BaseException) -> float:
        self.consecutive_errors += 1
        logger.error(
            "Screenshot capture failed (%d/%d): %s",
            self.consecutive_errors, self.config.max_consecutive_errors, error,
        )
        if self.consecutive_errors < self.config.max_consecutive_errors:
            return self.rate.interval

        logger.warning(
            "Too many consecutive screenshot errors, pausing stream for %.0fs",
            self.config.pause_cooldown_s,
        )
        self._cooling_down = True
        self._cooldown = run_later(
            self._end_cooldown,
            self.config.pause_cooldown_s,
            name="screenshot-cooldown",
        )
        return self.config.paused_poll_s

    def _end_cooldown(self) -> None:
        self.consecutive_errors = 0
        self.rate.reset()
        self._cooling_down = False
        logger.info("Resuming screenshot stream after cool-down")

    def _build_frame(self, data: bytes) -> Frame:
        factor = self.config.scale_factor
        width, height = image_size(data)
        scaled = scale_image(data, factor)
        marker = self.cache.active_marker()
        if marker is not None:
            scaled = draw_marker(scaled, marker.x, marker.y)
        return Frame(
            full_bytes=data,
            scaled_bytes=scaled,
            width=width,
            height=height,
            captured_at=time.monotonic(),
            marker=marker,
            scaled_width=round(width * factor),
            scaled_height=round(height * factor),
        )

    def _has_changed(self, frame: Frame) -> bool:
        previous = self.cache.latest()
        if previous is None:
            return True
        verdict = compare_frames(
            previous.full_bytes,
            frame.full_bytes,
            self.config.change_threshold_percent,
        )
        # An unreadable frame is treated as a change so the rate stays high
        return verdict.changed or verdict.unknown
