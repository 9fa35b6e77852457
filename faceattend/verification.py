"""
Verification: resolve one live capture against one stored DescriptorSet.
"""
import logging

from . import config
from .domain import DescriptorSet
from .errors import EmptySet
from .matcher import NO_FACE_RESULT, VerificationResult, match_best
from .recognition import FaceExtractor, ImageInput

logger = logging.getLogger(__name__)


class VerificationPipeline:
    """A non-match is an ordinary result, never an exception."""

    def __init__(self, extractor: FaceExtractor, threshold: float = config.MATCH_THRESHOLD):
        self.extractor = extractor
        self.threshold = threshold

    def verify(self, image: ImageInput, candidates: DescriptorSet) -> VerificationResult:
        if candidates is None or len(candidates) == 0:
            raise EmptySet()

        detection = self.extractor.extract(image)
        if detection is None:
            return NO_FACE_RESULT

        result = match_best(detection.descriptor, candidates, self.threshold)
        logger.debug("Verification match=%s distance=%.2f", result.match, result.distance)
        return result
