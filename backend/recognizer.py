import threading
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    DESCRIPTOR_SIZE,
    DETECTION_SCORE_THRESHOLD,
    EXPRESSION_MODEL,
    FACE_DETECTOR_MODEL,
    FACE_RECOGNIZER_MODEL,
    MATCH_THRESHOLD,
)
from backend.engagement import EXPRESSIONS
from backend.logger import get_logger
from database.db import get_enrolled_descriptors

logger = get_logger("recognizer")


@dataclass
class Detection:
    """One face found in a frame: its descriptor and expression probabilities."""

    descriptor: list[float]
    expressions: dict[str, float] = field(default_factory=dict)


class FaceMatcher(Protocol):
    def detect(self, frame) -> list[Detection]:
        ...


class ModelMissingError(RuntimeError):
    pass


# -----------------------------
# Identity resolution
# -----------------------------
class DescriptorIndex:
    """
    Nearest-neighbour lookup over enrolled face templates.

    A query resolves to the closest template when its Euclidean distance is
    strictly below `threshold`; equal distances go to the template enrolled
    first.
    """

    def __init__(
        self,
        entries: Sequence[tuple[int, str, Sequence[float]]],
        *,
        threshold: float = MATCH_THRESHOLD,
        size: int = DESCRIPTOR_SIZE,
    ):
        self.threshold = threshold
        self.size = size
        kept = [(sid, name, vec) for sid, name, vec in entries if len(vec) == size]
        if len(kept) != len(entries):
            logger.warning("Ignoring %d template(s) with wrong dimension", len(entries) - len(kept))
        self.student_ids = [int(sid) for sid, _, _ in kept]
        self.names = [str(name) for _, name, _ in kept]
        if kept:
            self.matrix = np.asarray([vec for _, _, vec in kept], dtype=np.float32)
        else:
            self.matrix = np.empty((0, size), dtype=np.float32)

    def __len__(self) -> int:
        return len(self.student_ids)

    def resolve(self, descriptor: Sequence[float]) -> tuple[int | None, float | None]:
        """
        Returns:
          (student_id | None, best_distance | None)
        """
        if len(self.student_ids) == 0:
            return None, None

        query = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.size:
            return None, None

        distances = np.linalg.norm(self.matrix - query, axis=1)
        best = int(np.argmin(distances))  # first minimum wins ties
        best_distance = float(distances[best])
        if best_distance < self.threshold:
            return self.student_ids[best], best_distance
        return None, best_distance


_INDEX_LOCK = threading.Lock()
_INDEX: DescriptorIndex | None = None


def load_index() -> DescriptorIndex:
    index = DescriptorIndex(get_enrolled_descriptors())
    logger.info("Loaded %d face template(s)", len(index))
    return index


def get_index() -> DescriptorIndex:
    global _INDEX
    with _INDEX_LOCK:
        if _INDEX is None:
            _INDEX = load_index()
        return _INDEX


def reload_index() -> int:
    global _INDEX
    index = load_index()
    with _INDEX_LOCK:
        _INDEX = index
    return len(index)


def resolve_identity(descriptor: Sequence[float]) -> tuple[int | None, float | None]:
    return get_index().resolve(descriptor)


# -----------------------------
# OpenCV face matcher
# -----------------------------
# FER+ output order
FERPLUS_LABELS = ("neutral", "happy", "surprised", "sad", "angry", "disgusted", "fearful", "contempt")


def _softmax(values: np.ndarray) -> np.ndarray:
    shifted = values - np.max(values)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OpenCVFaceMatcher:
    """
    YuNet detection + SFace descriptors + FER+ expressions via OpenCV.

    Model files are loaded lazily; a missing file raises ModelMissingError
    from `detect` or `ensure_loaded` so callers can report it.
    """

    def __init__(
        self,
        detector_model=FACE_DETECTOR_MODEL,
        recognizer_model=FACE_RECOGNIZER_MODEL,
        expression_model=EXPRESSION_MODEL,
        score_threshold: float = DETECTION_SCORE_THRESHOLD,
    ):
        self.detector_model = detector_model
        self.recognizer_model = recognizer_model
        self.expression_model = expression_model
        self.score_threshold = score_threshold
        self._detector = None
        self._recognizer = None
        self._expression_net = None
        self._lock = threading.Lock()

    def _load(self) -> None:
        for path in (self.detector_model, self.recognizer_model, self.expression_model):
            if not path.exists():
                raise ModelMissingError(f"Model file not found: {path}")
        self._detector = cv2.FaceDetectorYN.create(
            str(self.detector_model), "", (320, 320), self.score_threshold
        )
        self._recognizer = cv2.FaceRecognizerSF.create(str(self.recognizer_model), "")
        self._expression_net = cv2.dnn.readNetFromONNX(str(self.expression_model))

    def ensure_loaded(self) -> None:
        with self._lock:
            if self._detector is None:
                self._load()

    def _expressions(self, frame_bgr, face_row) -> dict[str, float]:
        frame_h, frame_w = frame_bgr.shape[:2]
        x, y, w, h = [int(v) for v in face_row[:4]]
        x0, y0 = max(0, x), max(0, y)
        x1, y1 = min(frame_w, x + w), min(frame_h, y + h)
        if x1 <= x0 or y1 <= y0:
            return {}

        gray = cv2.cvtColor(frame_bgr[y0:y1, x0:x1], cv2.COLOR_BGR2GRAY)
        blob = cv2.dnn.blobFromImage(gray, 1.0, (64, 64))
        self._expression_net.setInput(blob)
        probs = _softmax(self._expression_net.forward().reshape(-1))
        return {
            label: float(p)
            for label, p in zip(FERPLUS_LABELS, probs)
            if label in EXPRESSIONS
        }

    def detect(self, frame) -> list[Detection]:
        with self._lock:
            if self._detector is None:
                self._load()

            frame_h, frame_w = frame.shape[:2]
            self._detector.setInputSize((frame_w, frame_h))
            _, faces = self._detector.detect(frame)
            if faces is None:
                return []

            out: list[Detection] = []
            for face_row in faces:
                aligned = self._recognizer.alignCrop(frame, face_row)
                feature = self._recognizer.feature(aligned).reshape(-1)
                norm = float(np.linalg.norm(feature))
                if norm > 0:
                    feature = feature / norm
                out.append(
                    Detection(
                        descriptor=[float(v) for v in feature],
                        expressions=self._expressions(frame, face_row),
                    )
                )
            return out


_MATCHER: OpenCVFaceMatcher | None = None


def get_face_matcher() -> OpenCVFaceMatcher:
    global _MATCHER
    if _MATCHER is None:
        _MATCHER = OpenCVFaceMatcher()
    return _MATCHER


def decode_frame(data: bytes):
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)
