"""Live capture: single-shot and timed auto-capture into the store, plus
continuous prediction from a live source.

Closing a session always halts its timer (joining the timer thread) before
the capture source is stopped, so no tick can read from a released source.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

import cv2

from teachablex.errors import CaptureUnavailable, NotFound, NotReady, TeachableXError

if TYPE_CHECKING:
    from collections.abc import Callable

    from teachablex.core.classifier import Classifier, Prediction
    from teachablex.core.store import SampleStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Capture sources
# ---------------------------------------------------------------------------


class CaptureSource(Protocol):
    """A live image source."""

    def start(self) -> None:
        """Open the underlying device or stream."""
        ...

    def frame(self) -> bytes:
        """Return the current frame as an encoded image.

        Raises:
            CaptureUnavailable: If no frame can be read.
        """
        ...

    def stop(self) -> None:
        """Release the device. Idempotent."""
        ...


class OpenCVCaptureSource:
    """Camera source backed by ``cv2.VideoCapture``; frames are JPEG encoded."""

    def __init__(self, device_index: int = 0, width: int = 640, height: int = 480) -> None:
        self._device_index = device_index
        self._width = width
        self._height = height
        self._capture: cv2.VideoCapture | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._capture is not None:
                return
            capture = cv2.VideoCapture(self._device_index)
            if not capture.isOpened():
                capture.release()
                raise CaptureUnavailable(f"Cannot open camera {self._device_index}")
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
            self._capture = capture
        logger.info("Camera %d started", self._device_index)

    def frame(self) -> bytes:
        with self._lock:
            if self._capture is None:
                raise CaptureUnavailable("Camera is not started")
            ok, image = self._capture.read()
        if not ok or image is None:
            raise CaptureUnavailable("Camera is not ready yet")
        ok, encoded = cv2.imencode(".jpg", image)
        if not ok:
            raise CaptureUnavailable("Could not encode camera frame")
        return encoded.tobytes()

    def stop(self) -> None:
        with self._lock:
            capture = self._capture
            self._capture = None
        if capture is not None:
            capture.release()
            logger.info("Camera %d stopped", self._device_index)


class PushCaptureSource:
    """Holds the most recent frame pushed by a remote client (e.g. a browser camera)."""

    def __init__(self) -> None:
        self._frame: bytes | None = None
        self._started = False
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            self._started = True

    def push(self, frame: bytes) -> None:
        with self._lock:
            self._frame = frame

    def frame(self) -> bytes:
        with self._lock:
            if not self._started:
                raise CaptureUnavailable("Source is not started")
            if self._frame is None:
                raise CaptureUnavailable("No frame received yet")
            return self._frame

    def stop(self) -> None:
        with self._lock:
            self._started = False
            self._frame = None


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------


class RepeatingTask:
    """Calls ``func`` every ``interval`` seconds on a daemon thread.

    ``start`` and ``stop`` are idempotent. ``stop`` returns only after the
    thread has exited, unless called from the task itself.
    """

    def __init__(self, interval: float, func: Callable[[], None], name: str = "repeating-task") -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._func = func
        self._name = name
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def start(self) -> bool:
        """Start ticking; returns False if already running."""
        with self._lock:
            if self._thread is not None:
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop, args=(self._stop_event,), name=self._name, daemon=True
            )
            self._thread.start()
        return True

    def stop(self) -> bool:
        """Stop ticking; returns False if it was not running."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._thread = None
            self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        return True

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._interval):
            try:
                self._func()
            except Exception:
                logger.exception("%s tick failed", self._name)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class CaptureSession:
    """Feeds frames from a capture source into one class of the store."""

    def __init__(
        self,
        source: CaptureSource,
        store: SampleStore,
        class_id: int,
        interval: float = 0.5,
    ) -> None:
        self._source = source
        self._store = store
        self._class_id = class_id
        self._lock = threading.Lock()
        self._opened = False
        self._captured = 0
        self._timer = RepeatingTask(interval, self._auto_tick, name=f"auto-capture-{class_id}")

    @property
    def class_id(self) -> int:
        return self._class_id

    @property
    def source(self) -> CaptureSource:
        return self._source

    @property
    def captured(self) -> int:
        """Number of frames successfully added since the session opened."""
        with self._lock:
            return self._captured

    @property
    def opened(self) -> bool:
        with self._lock:
            return self._opened

    @property
    def auto_capturing(self) -> bool:
        return self._timer.running

    def open(self) -> None:
        with self._lock:
            if self._opened:
                return
            self._source.start()
            self._opened = True
            self._captured = 0
        logger.info("Capture session opened for class %d", self._class_id)

    def capture_once(self) -> int:
        """Grab the current frame and add it to the class; return its sample index.

        Raises:
            NotReady: If the session is not open.
            CaptureUnavailable: If the source has no frame.
            NotFound, EmbeddingFailed: Propagated from the store.
        """
        if not self.opened:
            raise NotReady("Capture session is not open")
        frame = self._source.frame()
        index = self._store.add_sample(self._class_id, frame)
        with self._lock:
            self._captured += 1
            count = self._captured
        logger.debug("Captured image %d for class %d", count, self._class_id)
        return index

    def start_auto(self) -> bool:
        """Start periodic capture. No-op (returns False) if already running."""
        if not self.opened:
            raise NotReady("Capture session is not open")
        started = self._timer.start()
        if started:
            logger.info("Auto-capture started for class %d", self._class_id)
        return started

    def stop_auto(self) -> bool:
        """Stop periodic capture. No-op (returns False) if not running."""
        stopped = self._timer.stop()
        if stopped:
            logger.info("Auto-capture stopped for class %d", self._class_id)
        return stopped

    def close(self) -> None:
        self.stop_auto()
        with self._lock:
            if not self._opened:
                return
            self._opened = False
        self._source.stop()
        logger.info("Capture session closed for class %d (%d captured)", self._class_id, self.captured)

    def __enter__(self) -> CaptureSession:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _auto_tick(self) -> None:
        try:
            self.capture_once()
        except NotFound:
            logger.warning("Class %d no longer exists; stopping auto-capture", self._class_id)
            self._timer.stop()
        except TeachableXError as exc:
            logger.warning("Auto-capture for class %d skipped a frame: %s", self._class_id, exc)


class PredictionStream:
    """Classifies frames from a live source on a timer and keeps the latest result."""

    def __init__(
        self,
        source: CaptureSource,
        classifier: Classifier,
        interval: float = 0.5,
        on_result: Callable[[list[Prediction]], None] | None = None,
    ) -> None:
        self._source = source
        self._classifier = classifier
        self._on_result = on_result
        self._lock = threading.Lock()
        self._opened = False
        self._latest: list[Prediction] | None = None
        self._timer = RepeatingTask(interval, self._tick, name="live-prediction")

    @property
    def source(self) -> CaptureSource:
        return self._source

    @property
    def latest(self) -> list[Prediction] | None:
        with self._lock:
            return None if self._latest is None else list(self._latest)

    @property
    def running(self) -> bool:
        return self._timer.running

    def open(self) -> None:
        with self._lock:
            if self._opened:
                return
            self._source.start()
            self._opened = True

    def predict_once(self) -> list[Prediction]:
        if not self._opened:
            raise NotReady("Prediction stream is not open")
        predictions = self._classifier.predict(self._source.frame())
        with self._lock:
            self._latest = predictions
        if self._on_result is not None:
            self._on_result(predictions)
        return predictions

    def start(self) -> bool:
        if not self._opened:
            raise NotReady("Prediction stream is not open")
        return self._timer.start()

    def stop(self) -> bool:
        return self._timer.stop()

    def close(self) -> None:
        self.stop()
        with self._lock:
            if not self._opened:
                return
            self._opened = False
            self._latest = None
        self._source.stop()

    def _tick(self) -> None:
        try:
            self.predict_once()
        except TeachableXError as exc:
            logger.debug("Live prediction skipped a frame: %s", exc)
