from __future__ import annotations

import logging
from typing import Any

import numpy as np

from defectai.models import PresenceSignal

logger = logging.getLogger(__name__)

DEFAULT_WORKING_SIZE = (160, 120)
DEFAULT_SAMPLE_STRIDE = 4
DEFAULT_MOTION_THRESHOLD = 25.0
DEFAULT_PRESENCE_THRESHOLD = 0.02
DEFAULT_EXIT_FRAMES_REQUIRED = 15


class PresenceDetector:
    """Decide whether an object is in view by differencing consecutive frames.

    Frames are reduced to a small fixed working resolution and only every
    ``sample_stride``-th pixel is compared, so the per-frame cost does not
    depend on the camera resolution. Leaving is debounced: presence ends only
    after ``exit_frames_required`` consecutive frames without motion.
    """

    def __init__(
        self,
        working_size: tuple[int, int] = DEFAULT_WORKING_SIZE,
        sample_stride: int = DEFAULT_SAMPLE_STRIDE,
        motion_threshold: float = DEFAULT_MOTION_THRESHOLD,
        presence_threshold: float = DEFAULT_PRESENCE_THRESHOLD,
        exit_frames_required: int = DEFAULT_EXIT_FRAMES_REQUIRED,
        cv2_module: Any | None = None,
    ) -> None:
        width, height = working_size
        if width <= 0 or height <= 0:
            raise ValueError(f"Working size must be positive, got {working_size}.")
        if sample_stride < 1:
            raise ValueError(f"Sample stride must be >= 1, got {sample_stride}.")
        if exit_frames_required < 1:
            raise ValueError(f"exit_frames_required must be >= 1, got {exit_frames_required}.")

        self.working_size = (int(width), int(height))
        self.sample_stride = int(sample_stride)
        self.motion_threshold = float(motion_threshold)
        self.presence_threshold = float(presence_threshold)
        self.exit_frames_required = int(exit_frames_required)
        self._cv2 = cv2_module

        self._previous: np.ndarray | None = None
        self._present = False
        self._exit_frame_count = 0
        self.last_motion_ratio = 0.0

    @classmethod
    def from_settings(cls, settings: Any, cv2_module: Any | None = None) -> PresenceDetector:
        return cls(
            working_size=(settings.working_width, settings.working_height),
            sample_stride=settings.sample_stride,
            motion_threshold=settings.motion_threshold,
            presence_threshold=settings.presence_threshold,
            exit_frames_required=settings.exit_frames_required,
            cv2_module=cv2_module,
        )

    @property
    def present(self) -> bool:
        return self._present

    @property
    def exit_frame_count(self) -> int:
        return self._exit_frame_count

    def reset(self) -> None:
        """Forget history so the next call is treated as a cold start."""

        self._previous = None
        self._present = False
        self._exit_frame_count = 0
        self.last_motion_ratio = 0.0

    def detect(self, frame: np.ndarray) -> PresenceSignal:
        """Compare ``frame`` with the previous one and update presence state."""

        current = self._to_working_frame(frame)
        previous = self._previous
        self._previous = current

        if previous is None:
            self.last_motion_ratio = 0.0
            return PresenceSignal.absent()

        motion_ratio = motion_ratio_between(
            current,
            previous,
            sample_stride=self.sample_stride,
            motion_threshold=self.motion_threshold,
        )
        self.last_motion_ratio = motion_ratio
        return self._apply_hysteresis(motion_ratio > self.presence_threshold)

    def _apply_hysteresis(self, has_motion: bool) -> PresenceSignal:
        if has_motion:
            self._exit_frame_count = 0
            just_entered = not self._present
            self._present = True
            if just_entered:
                logger.debug("Object entered (motion ratio %.4f)", self.last_motion_ratio)
            return PresenceSignal(present=True, just_entered=just_entered)

        if not self._present:
            return PresenceSignal.absent()

        self._exit_frame_count += 1
        if self._exit_frame_count >= self.exit_frames_required:
            self._present = False
            self._exit_frame_count = 0
            logger.debug("Object left after %d still frames", self.exit_frames_required)
            return PresenceSignal(present=False, just_left=True)

        return PresenceSignal(present=True)

    def _to_working_frame(self, frame: np.ndarray) -> np.ndarray:
        if frame.ndim != 3 or frame.shape[2] < 3:
            raise ValueError(f"Expected an (H, W, C>=3) frame, got shape {frame.shape}.")

        resized = resize_to_working(frame, self.working_size, cv2_module=self._cv2)
        working = np.array(resized[:, :, :3], dtype=np.uint8, copy=True)
        working.setflags(write=False)
        return working


def resize_to_working(frame: np.ndarray, working_size: tuple[int, int], cv2_module: Any | None = None) -> np.ndarray:
    """Downsample ``frame`` to ``(width, height)``; frames already at that size pass through."""

    target_w, target_h = working_size
    height, width = frame.shape[:2]
    if width == target_w and height == target_h:
        return frame

    if cv2_module is None:
        import cv2 as cv2_module

    return cv2_module.resize(frame, (target_w, target_h), interpolation=cv2_module.INTER_AREA)


def motion_ratio_between(
    current: np.ndarray,
    previous: np.ndarray,
    *,
    sample_stride: int = DEFAULT_SAMPLE_STRIDE,
    motion_threshold: float = DEFAULT_MOTION_THRESHOLD,
) -> float:
    """Fraction of sampled pixels whose mean channel delta exceeds ``motion_threshold``."""

    if current.shape != previous.shape:
        raise ValueError(f"Frame shapes differ: {current.shape} vs {previous.shape}.")

    current_px = current.reshape(-1, current.shape[2])[::sample_stride, :3].astype(np.int16)
    previous_px = previous.reshape(-1, previous.shape[2])[::sample_stride, :3].astype(np.int16)
    sampled = current_px.shape[0]
    if sampled == 0:
        return 0.0

    channel_delta = np.abs(current_px - previous_px).mean(axis=1)
    changed = int(np.count_nonzero(channel_delta > motion_threshold))
    return changed / sampled
