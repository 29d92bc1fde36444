"""
Single-slot cache of the most recent screenshot.

Written by the screenshot streamer, read by the agent loop and the UI.
"""

import threading
import time
from typing import Optional

from .types import Frame, Marker


class ScreenshotCache:
    """Holds the latest frame and the optional click marker.

    The frame is replaced atomically on each capture. Frames are immutable,
    so a reference returned by ``latest()`` stays valid after a newer capture.
    """

    def __init__(self, marker_duration_s: float = 10.0):
        self._lock = threading.Lock()
        self._frame: Optional[Frame] = None
        self._marker: Optional[Marker] = None
        self.marker_duration_s = marker_duration_s

    def put(self, frame: Frame) -> None:
        with self._lock:
            self._frame = frame

    def latest(self) -> Optional[Frame]:
        with self._lock:
            return self._frame

    def set_marker(self, x: int, y: int) -> None:
        """Set the click marker in scaled (model) coordinates."""
        with self._lock:
            self._marker = Marker(int(x), int(y), time.monotonic())

    def active_marker(self) -> Optional[Marker]:
        """Return the marker if it has not expired yet."""
        with self._lock:
            if self._marker is None:
                return None
            if time.monotonic() - self._marker.created_at > self.marker_duration_s:
                self._marker = None
            return self._marker
