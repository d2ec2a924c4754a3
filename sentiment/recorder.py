"""
Webcam recording with cv2.VideoWriter.

The recorder attaches itself as a frame sink on a live CameraStream, so the
sampler and the recorder share one capture device.
"""
from __future__ import annotations
from typing import Optional, Tuple
import asyncio
import logging
import os
import tempfile
import threading
import time

import cv2

from sentiment.config import Settings
from sentiment.models import RecordedMedia

logger = logging.getLogger(__name__)

CODEC_EXTENSIONS = {
    "VP90": ".webm",
    "VP80": ".webm",
    "H264": ".mp4",
    "AVC1": ".mp4",
    "MP4V": ".mp4",
    "MJPG": ".avi",
    "XVID": ".avi",
}


class RecorderUnavailable(RuntimeError):
    """No usable encoding, or the writer refused to open."""


def _extension(codec: str) -> str:
    return CODEC_EXTENSIONS.get(codec.upper(), ".avi")


class RecordingHandle:
    """
    A live recording: the writer plus the bookkeeping stop() needs.

    Frames are paced to the writer's fps against a monotonic clock. Frames
    that arrive early are dropped and gaps are filled by repeating the last
    frame, so frame_count / fps tracks the real recording length.
    """
    def __init__(self, writer, path: str, codec: str, fps: float, size: Tuple[int, int],
                 started_at: float, monotonic=time.monotonic):
        self.writer = writer
        self.path = path
        self.codec = codec
        self.fps = fps
        self.size = size
        self.started_at = started_at
        self.frame_count = 0
        self.stream = None
        self._monotonic = monotonic
        self._t0 = monotonic()
        self._last = None
        self._lock = threading.Lock()
        self._open = True

    def _due(self) -> int:
        return int((self._monotonic() - self._t0) * self.fps) + 1

    def _fill(self, frame, due: int) -> None:
        for _ in range(due - self.frame_count):
            self.writer.write(frame)
        self.frame_count = max(self.frame_count, due)

    def write(self, frame) -> None:
        with self._lock:
            if not self._open:
                return
            due = self._due()
            if due <= self.frame_count:
                return
            h, w = frame.shape[:2]
            if (w, h) != self.size:
                frame = cv2.resize(frame, self.size, interpolation=cv2.INTER_AREA)
            self._fill(frame, due)
            self._last = frame

    def close(self, pad: bool = False) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False
            if pad and self._last is not None:
                # cover a stalled tail up to the stop instant
                self._fill(self._last, self._due())
            self.writer.release()

    @property
    def seconds(self) -> Optional[float]:
        if not self.frame_count:
            return None
        return round(self.frame_count / self.fps, 3)


class OpenCVRecorder:
    def __init__(self, settings: Settings, output_dir: Optional[str] = None,
                 wallclock=time.time, monotonic=time.monotonic):
        self.codecs = list(settings.RECORDER_CODECS)
        self.fps = float(settings.RECORDER_FPS)
        self.default_size = (int(settings.CAMERA_WIDTH), int(settings.CAMERA_HEIGHT))
        self.output_dir = output_dir or tempfile.gettempdir()
        self.wallclock = wallclock
        self.monotonic = monotonic
        self._probed = False
        self._codec: Optional[str] = None

    def _probe(self, codec: str) -> bool:
        fd, path = tempfile.mkstemp(suffix=_extension(codec))
        os.close(fd)
        try:
            writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*codec[:4].ljust(4)), self.fps, (64, 64))
            ok = writer.isOpened()
            writer.release()
            return ok
        except Exception:
            return False
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass

    def _select_codec(self) -> Optional[str]:
        for codec in self.codecs:
            if self._probe(codec):
                logger.debug(f"[recorder] codec selected: {codec}")
                return codec
        logger.warning(f"[recorder] no supported codec. Tested: {', '.join(self.codecs)}")
        return None

    async def supported_codec(self) -> Optional[str]:
        """First configured FOURCC the local OpenCV build can encode, else None. Probed once."""
        if not self._probed:
            self._codec = await asyncio.to_thread(self._select_codec)
            self._probed = True
        return self._codec

    def _open_writer(self, codec: str, size: Tuple[int, int]):
        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, f"webcam_{int(self.wallclock() * 1000)}{_extension(codec)}")
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*codec[:4].ljust(4)), self.fps, size)
        if not writer.isOpened():
            writer.release()
            raise RecorderUnavailable(f"VideoWriter failed to open codec={codec} path={path}")
        return writer, path

    async def start(self, stream) -> RecordingHandle:
        codec = await self.supported_codec()
        if codec is None:
            raise RecorderUnavailable(f"No supported codec found. Tested: {', '.join(self.codecs)}")

        frame = stream.latest_frame()
        size = (frame.shape[1], frame.shape[0]) if frame is not None else self.default_size
        writer, path = await asyncio.to_thread(self._open_writer, codec, size)

        handle = RecordingHandle(writer, path, codec, self.fps, size,
                                 started_at=self.wallclock(), monotonic=self.monotonic)
        handle.stream = stream
        stream.add_sink(handle.write)
        logger.info(f"[recorder] recording started codec={codec} size={size} path={path}")
        return handle

    def _finish(self, handle: RecordingHandle, pad: bool = False) -> None:
        if handle.stream is not None:
            handle.stream.remove_sink(handle.write)
        handle.close(pad=pad)

    async def stop(self, handle: RecordingHandle) -> RecordedMedia:
        stopped_at = self.wallclock()
        await asyncio.to_thread(self._finish, handle, True)
        logger.info(f"[recorder] recording stopped frames={handle.frame_count} "
                    f"length={handle.seconds}s path={handle.path}")
        return RecordedMedia(
            path=handle.path,
            codec=handle.codec,
            frame_count=handle.frame_count,
            fps=handle.fps,
            started_at=handle.started_at,
            stopped_at=stopped_at,
            reported_duration=handle.seconds,
        )

    def abort(self, handle: RecordingHandle) -> None:
        """Force-stop without producing media (teardown path)."""
        self._finish(handle)
        try:
            os.unlink(handle.path)
        except OSError:
            pass
