"""
Descriptor comparison and capture quality gates.
Pure numpy, no I/O: safe to share across concurrent requests.
"""
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from . import config
from .domain import DescriptorSet
from .errors import DimensionMismatch, EmptySet

DescriptorLike = Union[np.ndarray, Sequence[float]]
CandidatesLike = Union[DescriptorSet, np.ndarray, Sequence[DescriptorLike]]


@dataclass(frozen=True)
class QualityResult:
    valid: bool
    score: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    match: bool
    distance: float
    confidence: float

    def to_dict(self) -> dict:
        return {"match": self.match, "distance": self.distance, "confidence": self.confidence}


NO_FACE_RESULT = VerificationResult(match=False, distance=1.0, confidence=0.0)


def _as_vector(descriptor: DescriptorLike) -> np.ndarray:
    return np.asarray(descriptor, dtype=np.float64).reshape(-1)


def _as_matrix(descriptors: CandidatesLike) -> np.ndarray:
    if isinstance(descriptors, DescriptorSet):
        matrix = descriptors.vectors
    else:
        matrix = np.asarray(descriptors, dtype=np.float64)
    if matrix.size == 0:
        raise EmptySet()
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    return matrix


def distance(a: DescriptorLike, b: DescriptorLike) -> float:
    """
    Euclidean distance between two face descriptors.

    Raises:
        DimensionMismatch: if the descriptors have different lengths
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        raise DimensionMismatch(f"Descriptor lengths differ: {va.shape[0]} != {vb.shape[0]}")
    return float(np.linalg.norm(va - vb))


def average_descriptor(descriptors: CandidatesLike) -> np.ndarray:
    """Element-wise mean of a non-empty group of descriptors."""
    return _as_matrix(descriptors).mean(axis=0)


def check_quality(
    confidence: float,
    box_area: float,
    box_center_offset: Tuple[float, float],
    min_confidence: float = config.MIN_DETECTION_CONFIDENCE,
    min_area: float = config.MIN_FACE_AREA,
    max_area: float = config.MAX_FACE_AREA,
    max_offset_x: float = config.MAX_CENTER_OFFSET_X,
    max_offset_y: float = config.MAX_CENTER_OFFSET_Y,
) -> QualityResult:
    """
    Gate a single capture before its descriptor is trusted.

    Args:
        confidence: Detector confidence in [0, 1]
        box_area: Face bounding box area in px^2
        box_center_offset: (dx, dy) of the box centre from the frame centre

    Returns:
        QualityResult; ``score`` is a diagnostic in [0, 1], not a pass/fail signal
    """
    # written as negated >= so NaN fails every gate
    if not confidence >= min_confidence:
        return QualityResult(
            valid=False,
            score=_clamp(confidence),
            reason=f"Face detection confidence too low: {confidence * 100:.1f}%. Please improve lighting.",
        )

    if not box_area >= min_area:
        return QualityResult(
            valid=False,
            score=_clamp(box_area / min_area),
            reason="Face too small. Please move closer to the camera.",
        )

    if box_area > max_area:
        return QualityResult(
            valid=False,
            score=_clamp(1 - (box_area - max_area) / max_area),
            reason="Face too close. Please move back slightly.",
        )

    x_offset = abs(box_center_offset[0])
    y_offset = abs(box_center_offset[1])
    if not (x_offset <= max_offset_x and y_offset <= max_offset_y):
        half_width = config.FRAME_WIDTH / 2
        half_height = config.FRAME_HEIGHT / 2
        return QualityResult(
            valid=False,
            score=_clamp(max(1 - x_offset / half_width, 1 - y_offset / half_height)),
            reason="Please center your face in the frame.",
        )

    return QualityResult(valid=True, score=_clamp(confidence))


def check_detection_quality(detection) -> QualityResult:
    """Run ``check_quality`` on a FaceDetection from the extractor."""
    box = detection.box
    return check_quality(detection.confidence, box.area, box.center_offset(config.FRAME_WIDTH, config.FRAME_HEIGHT))


def check_consistency(descriptors: CandidatesLike, max_distance: float = config.CONSISTENCY_THRESHOLD) -> bool:
    """True when every descriptor lies strictly within ``max_distance`` of the group average."""
    matrix = _as_matrix(descriptors)
    mean = matrix.mean(axis=0)
    distances = np.linalg.norm(matrix - mean, axis=1)
    return bool(np.all(distances < max_distance))


def match_best(
    query: DescriptorLike,
    candidates: CandidatesLike,
    threshold: float = config.MATCH_THRESHOLD,
) -> VerificationResult:
    """
    Compare a live descriptor against every stored one and keep the closest.

    The unrounded minimum distance drives the decision (strictly below
    ``threshold``); reported distance and confidence are rounded to 2 decimals.
    """
    vector = _as_vector(query)
    matrix = _as_matrix(candidates)
    if matrix.shape[1] != vector.shape[0]:
        raise DimensionMismatch(f"Descriptor lengths differ: {vector.shape[0]} != {matrix.shape[1]}")

    distances = np.linalg.norm(matrix - vector, axis=1)
    min_distance = float(distances[int(np.argmin(distances))])
    confidence = max(0.0, 1.0 - min_distance)

    return VerificationResult(
        match=min_distance < threshold,
        distance=round(min_distance, 2),
        confidence=round(confidence, 2),
    )


def _clamp(value: float) -> float:
    if np.isnan(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))
