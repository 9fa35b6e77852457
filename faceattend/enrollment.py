"""
Enrollment: turn a batch of raw captures into a validated DescriptorSet.
"""
import logging
from typing import Sequence

from . import config
from .domain import DescriptorSet
from .errors import InconsistentCaptures, InsufficientCaptures, NoFaceDetected, QualityRejected, TooManyCaptures
from .matcher import check_consistency, check_detection_quality
from .recognition import FaceExtractor, ImageInput

logger = logging.getLogger(__name__)


class EnrollmentPipeline:
    """
    Runs every capture through the extractor and quality gate, then checks the
    batch for consistency. Persistence is left to the caller, so a failure or a
    cancellation at any step leaves nothing written.
    """

    def __init__(
        self,
        extractor: FaceExtractor,
        min_captures: int = config.MIN_ENROLL_CAPTURES,
        max_captures: int = config.MAX_ENROLL_CAPTURES,
        consistency_threshold: float = config.CONSISTENCY_THRESHOLD,
    ):
        self.extractor = extractor
        self.min_captures = min_captures
        self.max_captures = max_captures
        self.consistency_threshold = consistency_threshold

    def enroll(self, images: Sequence[ImageInput]) -> DescriptorSet:
        """
        Args:
            images: Ordered captures, between ``min_captures`` and ``max_captures``

        Returns:
            DescriptorSet with one descriptor per capture, in capture order

        Raises:
            InsufficientCaptures, TooManyCaptures: batch size out of bounds
            NoFaceDetected: a capture has no face (carries its index)
            QualityRejected: a capture failed the quality gate (index + reason)
            InconsistentCaptures: the batch does not look like a single person
            DependencyUnavailable: the extractor timed out or crashed
        """
        images = list(images)
        if len(images) < self.min_captures:
            raise InsufficientCaptures(len(images), self.min_captures)
        if len(images) > self.max_captures:
            raise TooManyCaptures(len(images), self.max_captures)

        descriptors = []
        for index, image in enumerate(images):
            detection = self.extractor.extract(image)
            if detection is None:
                logger.info("Enrollment rejected: no face in capture %d", index + 1)
                raise NoFaceDetected(index)

            quality = check_detection_quality(detection)
            if not quality.valid:
                logger.info("Enrollment rejected: capture %d quality %.2f (%s)", index + 1, quality.score, quality.reason)
                raise QualityRejected(index, quality.reason)

            descriptors.append(detection.descriptor)

        if not check_consistency(descriptors, self.consistency_threshold):
            logger.info("Enrollment rejected: %d captures are inconsistent", len(descriptors))
            raise InconsistentCaptures()

        return DescriptorSet(descriptors)
