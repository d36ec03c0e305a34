"""
Frame ingestion for a single camera.

``StreamIngestor.frames()`` is a lazy generator over sampled frames. It
owns the OpenCV capture, reconnects with bounded exponential backoff and
reports connection state transitions through a health callback. After
too many consecutive failures the camera is marked FAILED and the
generator returns; calling ``frames()`` again starts a fresh attempt.

``FrameQueue`` decouples the capture rate from inference: when the
consumer falls behind the oldest queued frame is dropped.
"""

from __future__ import annotations

import datetime
import enum
import logging
import os
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Generic, Iterator, Optional, TypeVar

import cv2  # type: ignore

from ..models.frame import Frame


T = TypeVar("T")


class CameraHealth(str, enum.Enum):
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


HealthCallback = Callable[[str, CameraHealth, datetime.datetime, Optional[str]], None]
OpenCapture = Callable[[str, bool], Any]


class FrameQueue(Generic[T]):
    """Bounded queue that drops the oldest item instead of blocking the producer."""

    def __init__(self, maxsize: int = 4) -> None:
        self.maxsize = max(1, int(maxsize))
        self._items: Deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def put(self, item: T) -> bool:
        """Append an item. Returns True if an older item had to be dropped."""
        with self._cond:
            if self._closed:
                return False
            dropped = False
            while len(self._items) >= self.maxsize:
                self._items.popleft()
                self.dropped += 1
                dropped = True
            self._items.append(item)
            self._cond.notify()
            return dropped

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Pop the oldest item, waiting up to ``timeout``. Returns None on timeout or close."""
        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout=timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


def is_realtime_source(source: str) -> bool:
    s = (source or "").strip().lower()
    return s.startswith(("rtsp://", "rtsps://", "http://", "https://"))


def open_video_capture(source: str, realtime_source: bool) -> Any:
    """Open an OpenCV capture; returns None when the source cannot be opened."""
    if realtime_source:
        # Lower FFmpeg demux/decode latency if options were not set externally.
        os.environ.setdefault(
            "OPENCV_FFMPEG_CAPTURE_OPTIONS",
            "rtsp_transport;tcp|fflags;nobuffer|flags;low_delay|max_delay;0|reorder_queue_size;0",
        )
        cap = cv2.VideoCapture(source, cv2.CAP_FFMPEG)
        if not cap.isOpened():
            cap = cv2.VideoCapture(source)
    else:
        cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        cap.release()
        return None
    if realtime_source:
        try:
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        except cv2.error:
            pass
    return cap


class StreamIngestor:
    """
    Produces sampled frames from one camera source.

    Parameters
    ----------
    camera_id: str
        Identifier for the camera.
    source: str
        RTSP URL or local file path.
    sample_interval_sec: float
        Minimum spacing between yielded frames. 0 yields every frame.
    backoff_base_sec, backoff_max_sec: float
        Reconnect delay is ``min(backoff_max_sec, backoff_base_sec * 2**(n-1))``
        for the n-th consecutive failure.
    max_consecutive_failures: int
        Failures tolerated before the camera is marked FAILED.
    on_health: Optional[HealthCallback]
        Called once per state transition.
    stop_event: Optional[threading.Event]
        Shared stop flag; also interrupts backoff waits.
    open_capture: Optional[OpenCapture]
        Capture factory, defaults to :func:`open_video_capture`.
    """

    def __init__(
        self,
        camera_id: str,
        source: str,
        *,
        sample_interval_sec: float = 0.5,
        backoff_base_sec: float = 1.0,
        backoff_max_sec: float = 30.0,
        max_consecutive_failures: int = 10,
        on_health: Optional[HealthCallback] = None,
        stop_event: Optional[threading.Event] = None,
        open_capture: Optional[OpenCapture] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = logging.getLogger(f"Ingest-{camera_id}")
        self.camera_id = camera_id
        self.source = source
        self.sample_interval_sec = max(0.0, float(sample_interval_sec))
        self.backoff_base_sec = max(0.0, float(backoff_base_sec))
        self.backoff_max_sec = max(self.backoff_base_sec, float(backoff_max_sec))
        self.max_consecutive_failures = max(1, int(max_consecutive_failures))
        self.on_health = on_health
        self.stop_event = stop_event or threading.Event()
        self._open_capture = open_capture or open_video_capture
        self._clock = clock
        self._state: Optional[CameraHealth] = None
        self._failures = 0
        self._seq = 0
        self.reconnects = 0

    @property
    def state(self) -> Optional[CameraHealth]:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def backoff_delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.backoff_max_sec, self.backoff_base_sec * (2 ** (attempt - 1)))

    def stop(self) -> None:
        self.stop_event.set()

    def _set_state(self, state: CameraHealth, reason: Optional[str] = None) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        log = self.logger.error if state == CameraHealth.FAILED else self.logger.info
        log("Camera %s state %s -> %s%s", self.camera_id, previous.value if previous else "NONE", state.value,
            f" ({reason})" if reason else "")
        if self.on_health is not None:
            try:
                self.on_health(self.camera_id, state, datetime.datetime.now(datetime.timezone.utc), reason)
            except Exception as exc:
                self.logger.warning("Health callback failed camera=%s: %s", self.camera_id, exc)

    def _register_failure(self, reason: str) -> bool:
        """Record a failure; back off and return True to retry, or False once FAILED."""
        self._failures += 1
        if self._failures >= self.max_consecutive_failures:
            self._set_state(CameraHealth.FAILED, reason)
            return False
        self._set_state(CameraHealth.RECONNECTING, reason)
        delay = self.backoff_delay(self._failures)
        self.logger.warning(
            "%s for camera=%s (attempt=%d/%d, retry in %.1fs)",
            reason,
            self.camera_id,
            self._failures,
            self.max_consecutive_failures,
            delay,
        )
        self.stop_event.wait(timeout=delay)
        self.reconnects += 1
        return not self.stop_event.is_set()

    @staticmethod
    def _release(cap: Any) -> None:
        try:
            cap.release()
        except Exception:
            logging.getLogger("Ingest").debug("Capture release failed", exc_info=True)

    def _file_stride(self, cap: Any) -> int:
        try:
            fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        except Exception:
            fps = 0.0
        if fps <= 0 or self.sample_interval_sec <= 0:
            return 1
        return max(1, int(round(self.sample_interval_sec * fps)))

    def frames(self) -> Iterator[Frame]:
        """
        Yield sampled frames until stopped, FAILED, or end of a file source.

        Each call opens a fresh capture and resets the failure budget.
        """
        realtime = is_realtime_source(self.source)
        self._failures = 0
        cap: Any = None
        last_yield: Optional[float] = None
        stride = 1
        read_index = 0
        try:
            while not self.stop_event.is_set():
                if cap is None:
                    cap = self._open_capture(self.source, realtime)
                    if cap is None:
                        if not self._register_failure("Open failed"):
                            return
                        continue
                    stride = 1 if realtime else self._file_stride(cap)
                    read_index = 0

                ok, image = cap.read()
                if not ok or image is None:
                    self._release(cap)
                    cap = None
                    if not realtime:
                        self.logger.info("End of file source for camera %s", self.camera_id)
                        return
                    if not self._register_failure("Read failed"):
                        return
                    continue

                self._failures = 0
                self._set_state(CameraHealth.CONNECTED)
                if realtime:
                    now = self._clock()
                    if last_yield is not None and now - last_yield < self.sample_interval_sec:
                        continue
                    last_yield = now
                else:
                    read_index += 1
                    if (read_index - 1) % stride != 0:
                        continue
                self._seq += 1
                yield Frame(
                    camera_id=self.camera_id,
                    seq=self._seq,
                    timestamp=datetime.datetime.now(datetime.timezone.utc),
                    image=image,
                )
        finally:
            if cap is not None:
                self._release(cap)


__all__ = [
    "CameraHealth",
    "FrameQueue",
    "StreamIngestor",
    "is_realtime_source",
    "open_video_capture",
]
