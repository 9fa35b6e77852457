import pytest

from faceattend.domain import DescriptorSet
from faceattend.enrollment import EnrollmentPipeline
from faceattend.errors import (
    DependencyUnavailable,
    InconsistentCaptures,
    InsufficientCaptures,
    NoFaceDetected,
    QualityRejected,
    TooManyCaptures,
)
from faceattend.recognition import BoundingBox, TimedExtractor
from tests.conftest import make_descriptor


@pytest.fixture
def pipeline(extractor):
    return EnrollmentPipeline(extractor)


def test_enrolls_five_consistent_captures(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=5)

    descriptors = pipeline.enroll(images)

    assert isinstance(descriptors, DescriptorSet)
    assert len(descriptors) == 5
    assert descriptors.dimension == 128


def test_preserves_capture_order(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=6)
    descriptors = pipeline.enroll(images)
    for i, image in enumerate(images):
        assert descriptors[i].tolist() == extractor.detections[image].descriptor.tolist()


def test_accepts_ten_captures(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=10)
    assert len(pipeline.enroll(images)) == 10


def test_four_captures_is_insufficient(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=4)
    with pytest.raises(InsufficientCaptures):
        pipeline.enroll(images)
    assert extractor.calls == 0


def test_eleven_captures_is_rejected_not_truncated(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=11)
    with pytest.raises(TooManyCaptures):
        pipeline.enroll(images)
    assert extractor.calls == 0


def test_no_face_fails_whole_enrollment(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=5)
    images[2] = b"blank-wall"

    with pytest.raises(NoFaceDetected) as excinfo:
        pipeline.enroll(images)

    assert excinfo.value.capture_index == 2
    assert "capture 3" in str(excinfo.value)
    # stops at the failing capture
    assert extractor.calls == 3


def test_low_confidence_capture_is_rejected_at_its_index(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=5)
    extractor.add(images[3], extractor.detections[images[3]].descriptor, confidence=0.5)

    with pytest.raises(QualityRejected) as excinfo:
        pipeline.enroll(images)

    assert excinfo.value.capture_index == 3
    assert "confidence too low" in excinfo.value.reason


def test_off_center_capture_is_rejected(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=5)
    extractor.add(images[0], extractor.detections[images[0]].descriptor, box=BoundingBox(0, 0, 150, 150))

    with pytest.raises(QualityRejected) as excinfo:
        pipeline.enroll(images)

    assert excinfo.value.capture_index == 0


def test_inconsistent_batch_is_rejected(pipeline, extractor):
    images = extractor.captures("alice", make_descriptor(1), count=4)
    images.append(extractor.add(b"bob-0", make_descriptor(2)))

    with pytest.raises(InconsistentCaptures) as excinfo:
        pipeline.enroll(images)

    assert "lighting" in str(excinfo.value)


def test_configurable_bounds(extractor):
    pipeline = EnrollmentPipeline(extractor, min_captures=2, max_captures=3)
    images = extractor.captures("alice", make_descriptor(1), count=3)
    assert len(pipeline.enroll(images)) == 3
    with pytest.raises(InsufficientCaptures):
        pipeline.enroll(images[:1])


def test_extractor_failure_is_dependency_unavailable(extractor):
    class Broken:
        def extract(self, image):
            raise RuntimeError("model crashed")

    pipeline = EnrollmentPipeline(TimedExtractor(Broken(), timeout=1))
    with pytest.raises(DependencyUnavailable):
        pipeline.enroll([b"x"] * 5)
