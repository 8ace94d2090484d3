from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any

import numpy as np

from defectai.features.presence import resize_to_working

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CapturedFrame:
    """One camera read at full resolution plus its small working copy."""

    full: np.ndarray
    working: np.ndarray
    captured_at: float


class OpenCVFrameSource:
    """Frame source backed by ``cv2.VideoCapture`` (device index, file, or stream URL).

    A failed read on a file source means end of file and exhausts the source.
    Live sources (device indexes and URLs) tolerate ``max_failed_reads``
    consecutive failed reads, then reconnect up to ``reconnect_attempts`` times
    before giving up.
    """

    def __init__(
        self,
        source: str | int = 0,
        *,
        working_size: tuple[int, int] = (160, 120),
        frame_size: tuple[int, int] | None = None,
        reconnect_attempts: int = 3,
        reconnect_delay_seconds: float = 2.0,
        max_failed_reads: int = 30,
        cv2_module: Any | None = None,
    ) -> None:
        self.source = _normalize_source(source)
        self.working_size = working_size
        self.frame_size = frame_size
        self.reconnect_attempts = max(int(reconnect_attempts), 0)
        self.reconnect_delay_seconds = max(float(reconnect_delay_seconds), 0.0)
        self.max_failed_reads = max(int(max_failed_reads), 1)
        self.is_file = _is_file_source(self.source)
        self._cv2 = cv2_module
        self._capture: Any | None = None
        self._failed_reads = 0
        self._reconnects = 0
        self._exhausted = False

    @property
    def is_open(self) -> bool:
        return self._capture is not None and bool(self._capture.isOpened())

    @property
    def exhausted(self) -> bool:
        """True once no more frames will arrive (end of file or reconnects used up)."""

        return self._exhausted

    def open(self) -> None:
        """Open the capture, retrying before giving up with ``RuntimeError``."""

        for attempt in range(self.reconnect_attempts + 1):
            logger.info("Opening frame source %s (attempt %d)", self.source, attempt + 1)
            if self._try_open():
                self._failed_reads = 0
                self._reconnects = 0
                self._exhausted = False
                return
            if attempt < self.reconnect_attempts:
                logger.warning("Frame source not available, retrying in %.1fs", self.reconnect_delay_seconds)
                time.sleep(self.reconnect_delay_seconds)

        raise RuntimeError(
            f"Unable to open frame source {self.source} after {self.reconnect_attempts + 1} attempts."
        )

    def read(self) -> CapturedFrame | None:
        """Grab the current frame; ``None`` means the source is not ready (or exhausted)."""

        if self._exhausted:
            return None
        if not self.is_open:
            # A dropped live source keeps counting toward the next reconnect.
            if self._reconnects:
                self._handle_failed_read()
            return None

        ok, frame = self._capture.read()
        if not ok or frame is None or frame.size == 0:
            self._handle_failed_read()
            return None

        self._failed_reads = 0
        self._reconnects = 0
        working = resize_to_working(frame, self.working_size, cv2_module=self._cv2_module())
        return CapturedFrame(full=frame, working=working, captured_at=time.time())

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None

    def __enter__(self) -> OpenCVFrameSource:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _try_open(self) -> bool:
        cv2 = self._cv2_module()
        capture = cv2.VideoCapture(self.source)
        if not capture.isOpened():
            capture.release()
            return False
        if self.frame_size is not None:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.frame_size[0])
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.frame_size[1])
        self._capture = capture
        return True

    def _handle_failed_read(self) -> None:
        if self.is_file:
            logger.info("Reached end of video file %s", self.source)
            self._exhausted = True
            return

        self._failed_reads += 1
        if self._failed_reads < self.max_failed_reads:
            return

        if self._reconnects >= self.reconnect_attempts:
            logger.error(
                "Frame source %s stopped delivering frames after %d reconnect attempts.",
                self.source,
                self._reconnects,
            )
            self._exhausted = True
            return

        self._reconnects += 1
        self._failed_reads = 0
        logger.warning(
            "No frames from %s, reconnecting in %.1fs (attempt %d of %d)",
            self.source,
            self.reconnect_delay_seconds,
            self._reconnects,
            self.reconnect_attempts,
        )
        self.release()
        time.sleep(self.reconnect_delay_seconds)
        if not self._try_open():
            logger.warning("Reconnect to %s failed.", self.source)

    def _cv2_module(self) -> Any:
        if self._cv2 is None:
            import cv2

            self._cv2 = cv2
        return self._cv2


def make_thumbnail(
    frame: np.ndarray,
    size: int = 96,
    *,
    jpeg_quality: int = 60,
    cv2_module: Any | None = None,
) -> str | None:
    """Center-crop ``frame`` to a square, shrink it, and return a JPEG data URL."""

    if frame is None or frame.ndim < 2 or frame.size == 0:
        return None

    if cv2_module is None:
        import cv2 as cv2_module

    height, width = frame.shape[:2]
    side = min(height, width)
    top = (height - side) // 2
    left = (width - side) // 2
    square = frame[top : top + side, left : left + side]
    thumb = cv2_module.resize(square, (size, size), interpolation=cv2_module.INTER_AREA)

    ok, encoded = cv2_module.imencode(".jpg", thumb, [int(cv2_module.IMWRITE_JPEG_QUALITY), jpeg_quality])
    if not ok:
        logger.warning("Thumbnail JPEG encoding failed; storing record without thumbnail.")
        return None
    return "data:image/jpeg;base64," + base64.b64encode(encoded.tobytes()).decode("ascii")


def _normalize_source(source: str | int) -> str | int:
    if isinstance(source, str) and source.strip().isdigit():
        return int(source.strip())
    return source


def _is_file_source(source: str | int) -> bool:
    return isinstance(source, str) and "://" not in source
