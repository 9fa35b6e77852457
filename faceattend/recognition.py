"""
Face extractor collaborators.
InsightFace wrapper for production, plus a timeout guard used by both pipelines.
Supports GPU with CPU fallback.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from . import config
from .errors import AttendanceEngineError, DependencyUnavailable, InvalidImage

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, np.ndarray]


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def center_offset(self, frame_width: int, frame_height: int) -> Tuple[float, float]:
        """Offset of the box centre from the centre of a reference frame."""
        center_x = self.x + self.width / 2
        center_y = self.y + self.height / 2
        return center_x - frame_width / 2, center_y - frame_height / 2


@dataclass(frozen=True)
class FaceDetection:
    descriptor: np.ndarray
    confidence: float
    box: BoundingBox


class FaceExtractor:
    """
    Contract for descriptor extraction.
    ``extract`` returns None when no face is found; that is not an error.
    """

    def extract(self, image: ImageInput) -> Optional[FaceDetection]:
        raise NotImplementedError


def decode_image(image: ImageInput) -> np.ndarray:
    """Decode encoded image bytes into a BGR array (arrays pass through)."""
    if isinstance(image, np.ndarray):
        return image
    nparr = np.frombuffer(bytes(image), np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        raise InvalidImage()
    return img


class InsightFaceExtractor(FaceExtractor):
    """
    Wrapper around InsightFace for face detection and descriptor extraction.
    Uses buffalo_l model by default with GPU support and CPU fallback.
    """

    def __init__(self, model_name: str = config.MODEL_NAME, det_size: tuple = (640, 640),
                 use_gpu: bool = config.USE_GPU, min_face_size: int = 30):
        """
        Initialize the face extractor.

        Args:
            model_name: InsightFace model name (buffalo_l, buffalo_sc, etc.)
            det_size: Detection size for face detector
            use_gpu: Try to use GPU, fallback to CPU if unavailable
            min_face_size: Faces narrower or shorter than this are ignored
        """
        from insightface.app import FaceAnalysis

        logger.info("Loading InsightFace model: %s", model_name)
        providers = self._select_providers(use_gpu)

        self.app = FaceAnalysis(name=model_name, providers=providers)
        self.app.prepare(ctx_id=0, det_size=det_size)

        self.providers = providers
        self.min_face_size = min_face_size
        logger.info("Model %s loaded with providers: %s", model_name, providers)

    @staticmethod
    def _select_providers(use_gpu: bool) -> List[str]:
        if not use_gpu:
            logger.info("Using CPU (GPU disabled)")
            return ['CPUExecutionProvider']
        try:
            import onnxruntime as ort
            available_providers = ort.get_available_providers()
        except Exception as e:
            logger.warning("Error checking GPU: %s, falling back to CPU", e)
            return ['CPUExecutionProvider']

        if 'CUDAExecutionProvider' in available_providers:
            logger.info("GPU (CUDA) available, using GPU acceleration")
            return ['CUDAExecutionProvider', 'CPUExecutionProvider']
        if 'CoreMLExecutionProvider' in available_providers:
            logger.info("CoreML available, using Apple GPU acceleration")
            return ['CoreMLExecutionProvider', 'CPUExecutionProvider']
        logger.warning("GPU not available, using CPU")
        return ['CPUExecutionProvider']

    def extract(self, image: ImageInput) -> Optional[FaceDetection]:
        """
        Detect the dominant face in an image and extract its descriptor.

        Args:
            image: Encoded image bytes or a BGR array

        Returns:
            FaceDetection for the largest face, or None if no face is found
        """
        faces = self.app.get(decode_image(image))

        best = None
        for face in faces:
            x1, y1, x2, y2 = face.bbox.astype(int)
            w = x2 - x1
            h = y2 - y1
            if w < self.min_face_size or h < self.min_face_size:
                continue
            if best is None or w * h > best.box.area:
                best = FaceDetection(
                    descriptor=np.asarray(face.embedding, dtype=np.float32),
                    confidence=float(face.det_score),
                    box=BoundingBox(float(x1), float(y1), float(w), float(h)),
                )
        return best

    def get_provider_info(self) -> dict:
        """Get information about active execution providers."""
        return {
            "providers": self.providers,
            "using_gpu": any(p in ['CUDAExecutionProvider', 'CoreMLExecutionProvider'] for p in self.providers)
        }


class TimedExtractor(FaceExtractor):
    """
    Bounds every extraction with a timeout.
    Timeouts and extractor crashes become DependencyUnavailable so callers can
    tell infrastructure trouble from a biometric rejection.
    """

    def __init__(self, extractor: FaceExtractor, timeout: float = config.EXTRACTOR_TIMEOUT_SECONDS,
                 max_workers: int = 4):
        self.extractor = extractor
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="face-extractor")

    def extract(self, image: ImageInput) -> Optional[FaceDetection]:
        future = self._pool.submit(self.extractor.extract, image)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Face extractor timed out after %.1fs", self.timeout)
            raise DependencyUnavailable(f"Face extractor timed out after {self.timeout:.1f}s")
        except AttendanceEngineError:
            raise
        except Exception as e:
            logger.exception("Face extractor failed")
            raise DependencyUnavailable(f"Face extractor failed: {e}") from e

    def shutdown(self):
        self._pool.shutdown(wait=False)
