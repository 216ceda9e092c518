import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable

from backend.config import FACE_WORKERS, SAMPLING_INTERVAL_SECONDS
from backend.engagement import engagement_score
from backend.logger import get_logger
from backend.recognizer import Detection, FaceMatcher, resolve_identity
from database.attendance import mark_present, record_engagement_observation

logger = get_logger("live_session")

Resolver = Callable[[list[float]], tuple[int | None, float | None]]


# -----------------------------
# Per-face pipeline
# -----------------------------
def process_detection(
    detection: Detection,
    *,
    date: str,
    session_key: str,
    resolver: Resolver = resolve_identity,
) -> dict[str, Any]:
    """resolve -> score -> reconcile for a single detected face."""
    student_id, distance = resolver(detection.descriptor)
    if student_id is None:
        return {"matched": False, "student_id": None, "distance": distance}

    score = engagement_score(detection.expressions)
    marked = mark_present(student_id, date, session_key)
    record_engagement_observation(student_id, date, score)
    return {
        "matched": True,
        "student_id": student_id,
        "distance": distance,
        "engagement": score,
        "marked": marked,
    }


def _safe_process(detection: Detection, **kwargs) -> dict[str, Any]:
    try:
        return process_detection(detection, **kwargs)
    except Exception as e:
        # one bad face must not stop the others
        logger.exception("Reconciliation failed for a detected face")
        return {"matched": False, "student_id": None, "error": str(e)}


def process_detections(
    detections: Iterable[Detection],
    *,
    date: str,
    session_key: str,
    resolver: Resolver = resolve_identity,
    workers: int = FACE_WORKERS,
) -> list[dict[str, Any]]:
    detections = list(detections)
    if not detections:
        return []
    with ThreadPoolExecutor(max_workers=min(workers, len(detections))) as pool:
        futures = [
            pool.submit(_safe_process, d, date=date, session_key=session_key, resolver=resolver)
            for d in detections
        ]
        return [f.result() for f in futures]


def process_frame(
    frame,
    *,
    matcher: FaceMatcher,
    date: str,
    session_key: str,
    resolver: Resolver = resolve_identity,
) -> list[dict[str, Any]]:
    return process_detections(
        matcher.detect(frame),
        date=date,
        session_key=session_key,
        resolver=resolver,
    )


# -----------------------------
# Sampling loop
# -----------------------------
class FrameBuffer:
    """Holds the most recent frame pushed by a client; sampling consumes it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frame = None

    def push(self, frame) -> None:
        with self._lock:
            self._frame = frame

    def take(self):
        with self._lock:
            frame, self._frame = self._frame, None
            return frame


class RecognitionLoop:
    """
    Samples `frame_source` every `interval` seconds and reconciles each
    detected face on a worker pool.

    Ticks never wait for earlier per-face work. `stop()` ends sampling and
    drops queued faces; faces already being written are allowed to finish.
    """

    def __init__(
        self,
        *,
        frame_source: Callable[[], Any],
        matcher: FaceMatcher,
        date: str,
        session_key: str,
        interval: float = SAMPLING_INTERVAL_SECONDS,
        workers: int = FACE_WORKERS,
        resolver: Resolver = resolve_identity,
    ):
        self.frame_source = frame_source
        self.matcher = matcher
        self.date = date
        self.session_key = session_key
        self.interval = interval
        self.resolver = resolver
        self.started_at: str | None = None
        self.ticks = 0
        self.processed = 0
        self.failures = 0

        self._stop_event = threading.Event()
        self._count_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix=f"faces-{session_key}",
        )
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self.started_at = datetime.now().isoformat(timespec="seconds")
        self._thread = threading.Thread(
            target=self._run,
            name=f"recognition-{self.session_key}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Recognition loop started for session %s (every %.1fs)", self.session_key, self.interval)

    def stop(self, *, wait: bool = False) -> None:
        self._stop_event.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        logger.info("Recognition loop stopped for session %s after %d tick(s)", self.session_key, self.ticks)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            self._tick()
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.interval - elapsed))

    def _tick(self) -> None:
        self.ticks += 1
        try:
            frame = self.frame_source()
            if frame is None:
                return
            detections = self.matcher.detect(frame)
        except Exception:
            logger.exception("Frame sampling failed for session %s", self.session_key)
            return

        for detection in detections:
            if self._stop_event.is_set():
                return
            try:
                self._executor.submit(self._reconcile, detection)
            except RuntimeError:
                # executor shut down by stop() mid-tick
                return

    def _reconcile(self, detection: Detection) -> None:
        result = _safe_process(
            detection,
            date=self.date,
            session_key=self.session_key,
            resolver=self.resolver,
        )
        with self._count_lock:
            self.processed += 1
            if "error" in result:
                self.failures += 1

    def status(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "date": self.date,
            "running": self.running,
            "started_at": self.started_at,
            "interval_seconds": self.interval,
            "ticks": self.ticks,
            "processed": self.processed,
            "failures": self.failures,
        }


# -----------------------------
# Active loops (per session key)
# -----------------------------
LOOPS_LOCK = threading.Lock()
ACTIVE_LOOPS: dict[str, tuple[RecognitionLoop, FrameBuffer]] = {}


def start_loop(
    session_key: str,
    *,
    date: str,
    matcher: FaceMatcher,
    interval: float = SAMPLING_INTERVAL_SECONDS,
    resolver: Resolver = resolve_identity,
) -> bool:
    """
    Start a loop fed by a FrameBuffer. Returns False if one is already running
    for this session key.
    """
    with LOOPS_LOCK:
        existing = ACTIVE_LOOPS.get(session_key)
        if existing and existing[0].running:
            return False
        buffer = FrameBuffer()
        loop = RecognitionLoop(
            frame_source=buffer.take,
            matcher=matcher,
            date=date,
            session_key=session_key,
            interval=interval,
            resolver=resolver,
        )
        ACTIVE_LOOPS[session_key] = (loop, buffer)
    loop.start()
    return True


def push_frame(session_key: str, frame) -> bool:
    with LOOPS_LOCK:
        entry = ACTIVE_LOOPS.get(session_key)
    if not entry or not entry[0].running:
        return False
    entry[1].push(frame)
    return True


def stop_loop(session_key: str, *, wait: bool = False) -> dict[str, Any] | None:
    with LOOPS_LOCK:
        entry = ACTIVE_LOOPS.pop(session_key, None)
    if not entry:
        return None
    loop = entry[0]
    loop.stop(wait=wait)
    return loop.status()


def active_sessions() -> list[dict[str, Any]]:
    with LOOPS_LOCK:
        loops = [loop for loop, _ in ACTIVE_LOOPS.values()]
    return [loop.status() for loop in loops]


def stop_all_loops() -> None:
    with LOOPS_LOCK:
        keys = list(ACTIVE_LOOPS)
    for key in keys:
        stop_loop(key)
