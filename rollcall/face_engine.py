from dataclasses import dataclass
from typing import Iterator, List, Optional, Protocol, Tuple

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import DEVICE, FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE
from .exceptions import FaceEngineError, NotInitializedError
from .logger import setup_logger

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


@dataclass
class FaceDetection:
    descriptor: np.ndarray
    region: np.ndarray
    score: float = 1.0


class EmbeddingProvider(Protocol):
    @property
    def initialized(self) -> bool: ...

    def initialize(self) -> bool: ...

    def detect_faces(self, frame: np.ndarray) -> List[FaceDetection]: ...


class FaceEngine:
    """MediaPipe face detection followed by a ResNet-18 embedding.

    Descriptors are L2-normalised, so Euclidean distances fall in [0, 2].
    Models load in ``initialize``; ``detect_faces`` is safe to call
    repeatedly afterwards.
    """

    def __init__(
        self,
        device: str = DEVICE,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
    ):
        self.device = torch.device(device)
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self.logger = setup_logger(self.__class__.__name__)

        self.detector = None
        self.embedder: Optional[torch.nn.Module] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        if self._initialized:
            return True

        try:
            self._load_models()
        except FaceEngineError:
            self.logger.exception("Face model initialization failed")
            return False

        self._initialized = True
        self.logger.info("Face models loaded on %s", self.device)
        return True

    def _load_models(self) -> None:
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the project dependencies.")

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=self.detection_threshold,
            )

            weights = ResNet18_Weights.DEFAULT
            backbone = models.resnet18(weights=weights)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

    def detect_faces(self, frame: np.ndarray) -> List[FaceDetection]:
        if not self._initialized:
            raise NotInitializedError("Face recognition models not loaded")

        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        found = list(self._face_regions(result.detections or [], rgb))
        if not found:
            return []

        descriptors = self._describe([crop for crop, _, _ in found])
        return [
            FaceDetection(descriptor=descriptor, region=region, score=score)
            for descriptor, (_, region, score) in zip(descriptors, found)
        ]

    def _face_regions(self, detections, rgb: np.ndarray) -> Iterator[Tuple[np.ndarray, np.ndarray, float]]:
        h, w = rgb.shape[:2]
        for det in detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            box = det.location_data.relative_bounding_box
            left, top = max(0, int(box.xmin * w)), max(0, int(box.ymin * h))
            right = min(w, left + int(box.width * w))
            bottom = min(h, top + int(box.height * h))
            # Tiny faces give unstable descriptors.
            if min(right - left, bottom - top) < self.min_face_size:
                continue

            crop, region = self._square_crop(rgb, left, top, right, bottom)
            if crop.size:
                yield crop, region, score

    def _describe(self, crops: List[np.ndarray]) -> np.ndarray:
        tensors = [
            torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
            for crop in crops
        ]
        try:
            batch = (torch.stack(tensors).to(self.device) - self.mean) / self.std
            with torch.inference_mode():
                descriptors = f.normalize(self.embedder(batch), p=2, dim=1)
            return descriptors.cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Descriptor extraction failed: {exc}") from exc

    @staticmethod
    def _square_crop(rgb: np.ndarray, left: int, top: int, right: int, bottom: int) -> Tuple[np.ndarray, np.ndarray]:
        h, w = rgb.shape[:2]
        side = int(max(right - left, bottom - top, 1) * 1.05)
        x1 = max(0, (left + right - side) // 2)
        y1 = max(0, (top + bottom - side) // 2)
        x2, y2 = min(w, x1 + side), min(h, y1 + side)
        return rgb[y1:y2, x1:x2], np.array([x1, y1, x2, y2], dtype=np.float32)

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < 224 else cv2.INTER_AREA
        resized = cv2.resize(crop, (224, 224), interpolation=interpolation)

        # Equalise luminance only; chroma is left untouched.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        ycrcb[:, :, 0] = self.clahe.apply(np.ascontiguousarray(ycrcb[:, :, 0]))
        return cv2.cvtColor(ycrcb, cv2.COLOR_YCrCb2RGB)
