"""
Camera acquisition (OpenCV).

A CameraStream owns the capture device. A daemon reader thread keeps the
latest frame and pushes every frame to registered sinks (the recorder).
"""
from __future__ import annotations
from typing import Callable, List, Optional
import asyncio
import logging
import threading
import time

import cv2

from sentiment.config import Settings
from sentiment.models import AcquisitionFailure

logger = logging.getLogger(__name__)

FrameSink = Callable[[object], None]


class AcquisitionError(RuntimeError):
    """Camera could not be acquired; `cause` says why."""
    def __init__(self, cause: AcquisitionFailure, message: str = ""):
        super().__init__(message or cause.value)
        self.cause = cause


class CameraStream:
    """Live stream over an opened cv2.VideoCapture."""
    def __init__(self, cap, index: int):
        self.index = index
        self._cap = cap
        self._lock = threading.Lock()
        self._latest = None
        self._sinks: List[FrameSink] = []
        self._run = True
        self._thread = threading.Thread(target=self._reader_loop, daemon=True)
        self._thread.start()

    @property
    def active(self) -> bool:
        return self._run

    def _reader_loop(self):
        while self._run:
            ok, frame = self._cap.read()
            if not ok:
                time.sleep(0.05)
                continue
            with self._lock:
                self._latest = frame
                sinks = list(self._sinks)
            for sink in sinks:
                try:
                    sink(frame)
                except Exception:
                    logger.exception("[camera] frame sink failed; detaching it")
                    self.remove_sink(sink)
            time.sleep(0.005)

    def latest_frame(self):
        with self._lock:
            return None if self._latest is None else self._latest.copy()

    def add_sink(self, sink: FrameSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def remove_sink(self, sink: FrameSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    def release(self) -> None:
        if not self._run:
            return
        self._run = False
        self._thread.join(timeout=1.0)
        with self._lock:
            self._sinks.clear()
        self._cap.release()
        logger.debug(f"[camera] released index={self.index}")


class OpenCVCamera:
    """Acquires a CameraStream for a device index."""
    def __init__(self, settings: Settings, camera_index: Optional[int] = None):
        self.index = settings.CAMERA_INDEX if camera_index is None else camera_index
        self.width = settings.CAMERA_WIDTH
        self.height = settings.CAMERA_HEIGHT

    def _open(self) -> CameraStream:
        try:
            cap = cv2.VideoCapture(self.index)
        except PermissionError as e:
            raise AcquisitionError(AcquisitionFailure.PERMISSION_DENIED, str(e)) from e
        except Exception as e:
            raise AcquisitionError(AcquisitionFailure.OTHER, str(e)) from e

        if not cap.isOpened():
            raise AcquisitionError(AcquisitionFailure.NOT_FOUND, f"Could not open camera index {self.index}")

        # ideal constraints; the driver may pick something else
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        ok, _ = cap.read()
        if not ok:
            cap.release()
            raise AcquisitionError(AcquisitionFailure.BUSY, f"Camera index {self.index} opened but yields no frames")
        return CameraStream(cap, self.index)

    async def acquire(self) -> CameraStream:
        logger.debug(f"[camera] acquire index={self.index} ideal={self.width}x{self.height}")
        return await asyncio.to_thread(self._open)
