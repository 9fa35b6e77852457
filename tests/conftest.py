from datetime import datetime
from typing import Dict, Optional

import numpy as np
import pytest

from faceattend.clock import FixedClock
from faceattend.database import init_db, make_engine, make_session_factory
from faceattend.engine import AttendanceEngine
from faceattend.recognition import BoundingBox, FaceDetection, FaceExtractor
from faceattend.repository import InMemoryRepository
from faceattend.sql_repository import SqlRepository

DIM = 128

# 200x200 face centred in a 640x480 frame
GOOD_BOX = BoundingBox(x=220, y=140, width=200, height=200)


def make_descriptor(seed: int, dim: int = DIM) -> np.ndarray:
    rng = np.random.default_rng(seed)
    vector = rng.normal(size=dim)
    return vector / np.linalg.norm(vector)


def jitter(descriptor: np.ndarray, index: int, amount: float = 0.05) -> np.ndarray:
    """Same face, slightly different capture: nudge one axis."""
    nudged = descriptor.copy()
    nudged[index % descriptor.shape[0]] += amount
    return nudged


def offset(descriptor: np.ndarray, by: float) -> np.ndarray:
    """A descriptor exactly ``by`` away from ``descriptor``."""
    moved = descriptor.copy()
    moved[0] += by
    return moved


class FakeExtractor(FaceExtractor):
    """Returns canned detections keyed by image bytes; unknown images have no face."""

    def __init__(self):
        self.detections: Dict[bytes, FaceDetection] = {}
        self.calls = 0

    def add(self, image: bytes, descriptor, confidence: float = 0.99, box: BoundingBox = GOOD_BOX) -> bytes:
        self.detections[image] = FaceDetection(np.asarray(descriptor, dtype=np.float64), confidence, box)
        return image

    def extract(self, image) -> Optional[FaceDetection]:
        self.calls += 1
        return self.detections.get(bytes(image))

    def captures(self, prefix: str, descriptor: np.ndarray, count: int = 5):
        """Register ``count`` consistent captures of one face and return their image bytes."""
        return [self.add(f"{prefix}-{i}".encode(), jitter(descriptor, i)) for i in range(count)]


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 10, 19, 8, 30))


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def sql_repository():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield SqlRepository(make_session_factory(engine))
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def any_repository(request):
    """Runs a test against both repository implementations."""
    if request.param == "memory":
        return InMemoryRepository()
    return request.getfixturevalue("sql_repository")


@pytest.fixture
def engine(repository, extractor, clock):
    return AttendanceEngine(repository, extractor, clock=clock, extractor_timeout=None)
