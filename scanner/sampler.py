"""
Frame sampling: owns the camera handle and keeps decode cost bounded.

Policy is fixed: only every FRAME_STRIDE-th available frame is retrieved,
and that frame is downscaled by DOWNSCALE before it reaches the decoder.
Skipped frames are only grabbed, never retrieved or decoded.
"""

import logging
import os
import sys
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal, Protocol

import cv2 # type: ignore
import numpy as np # type: ignore

from backend.config import (
    CAMERA_ENVIRONMENT_INDEX,
    CAMERA_FPS,
    CAMERA_HEIGHT,
    CAMERA_USER_INDEX,
    CAMERA_WIDTH,
)
from scanner.errors import CameraError

logger = logging.getLogger("scanner.sampler")

FRAME_STRIDE = 3
DOWNSCALE = 0.5

FacingMode = Literal["environment", "user"]


@dataclass(frozen=True)
class CameraConstraints:
    facing_mode: FacingMode = "environment"
    width: int = CAMERA_WIDTH
    height: int = CAMERA_HEIGHT
    fps: int = CAMERA_FPS


class Stream(Protocol):
    def grab(self) -> bool: ...

    def retrieve(self) -> tuple[bool, np.ndarray | None]: ...

    def release(self) -> None: ...


class Camera(Protocol):
    push_based: bool

    def acquire(self, constraints: CameraConstraints) -> Stream: ...


class OpenCVCamera:
    """Local capture device through cv2.VideoCapture."""

    push_based = False

    def __init__(
        self,
        *,
        environment_index: int = CAMERA_ENVIRONMENT_INDEX,
        user_index: int = CAMERA_USER_INDEX,
        api_preference: int = cv2.CAP_ANY,
    ):
        self.environment_index = environment_index
        self.user_index = user_index
        self.api_preference = api_preference

    def _index_for(self, facing_mode: FacingMode) -> int:
        if facing_mode == "user":
            return self.user_index
        return self.environment_index

    def acquire(self, constraints: CameraConstraints) -> Stream:
        index = self._index_for(constraints.facing_mode)

        # OpenCV reports a locked device as "not opened"; check the node first.
        if sys.platform.startswith("linux"):
            device = Path(f"/dev/video{index}")
            if device.exists() and not os.access(device, os.R_OK | os.W_OK):
                raise CameraError.permission_denied()

        try:
            capture = cv2.VideoCapture(index, self.api_preference)
        except cv2.error as exc:
            raise CameraError.unknown(str(exc)) from exc

        if not capture.isOpened():
            capture.release()
            raise CameraError.no_device()

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        capture.set(cv2.CAP_PROP_FPS, constraints.fps)
        # Keep the driver queue short so a resumed session sees fresh frames.
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        logger.info("Opened camera %s (%s)", index, constraints.facing_mode)
        return capture


class PushStream:
    """Frames handed over by a remote client; holds only the newest one."""

    def __init__(self):
        self._pending: np.ndarray | None = None
        self._current: np.ndarray | None = None
        self.closed = False

    def push(self, frame: np.ndarray) -> bool:
        if self.closed:
            return False
        self._pending = frame
        return True

    def grab(self) -> bool:
        if self.closed or self._pending is None:
            return False
        self._current, self._pending = self._pending, None
        return True

    def retrieve(self) -> tuple[bool, np.ndarray | None]:
        return self._current is not None, self._current

    def release(self) -> None:
        self.closed = True
        self._pending = None
        self._current = None


class PushCamera:
    push_based = True

    def __init__(self):
        self._stream: PushStream | None = None

    def acquire(self, constraints: CameraConstraints) -> Stream:
        self._stream = PushStream()
        return self._stream

    def push(self, frame: np.ndarray) -> bool:
        if self._stream is None:
            return False
        return self._stream.push(frame)


def downscale(frame: np.ndarray, factor: float = DOWNSCALE) -> np.ndarray:
    return cv2.resize(frame, None, fx=factor, fy=factor, interpolation=cv2.INTER_AREA)

class FrameSampler:
    """
    Methods block on the device and are meant to run in a worker thread.
    One lock guards the stream, so stop() waits for an in-flight grab.
    """

    def __init__(self, camera: Camera, constraints: CameraConstraints | None = None):
        self.camera = camera
        self.constraints = constraints or CameraConstraints()
        self._stream: Stream | None = None
        self._frame_count = 0
        self._lock = threading.Lock()

    @property
    def is_live(self) -> bool:
        return self._stream is not None

    @property
    def push_based(self) -> bool:
        return bool(getattr(self.camera, "push_based", False))

    def start(self) -> Stream:
        """
        Acquire the preferred (environment-facing) camera, falling back to the
        user-facing one. Raises CameraError when neither can be opened.
        """
        with self._lock:
            if self._stream is not None:
                return self._stream

            try:
                stream = self.camera.acquire(self.constraints)
            except Exception as preferred_error:
                logger.info(
                    "Preferred camera unavailable (%s); trying user-facing camera",
                    getattr(preferred_error, "code", preferred_error),
                )
                fallback = replace(self.constraints, facing_mode="user")
                try:
                    stream = self.camera.acquire(fallback)
                except CameraError:
                    raise
                except Exception as exc:
                    raise CameraError.unknown(str(exc)) from exc

            self._stream = stream
            self._frame_count = 0
            return stream

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is None:
                return
            try:
                stream.release()
            except Exception:
                logger.warning("Camera release raised; handle dropped anyway", exc_info=True)

    def next_frame(self) -> np.ndarray | None:
        """Returns a downscaled frame, or None when nothing is ready to decode."""
        with self._lock:
            stream = self._stream
            if stream is None:
                return None
            if not stream.grab():
                return None

            self._frame_count += 1
            if self._frame_count % FRAME_STRIDE:
                return None

            ok, frame = stream.retrieve()
        if not ok or frame is None:
            return None
        return downscale(frame)
