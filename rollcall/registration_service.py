import asyncio
import math
from typing import Callable, Optional, Union

import numpy as np

from .camera import CaptureSession
from .config import ENROLL_REQUIRE_SINGLE_FACE, ENROLLMENT_SAMPLE_DELAY_SECONDS, ENROLLMENT_SAMPLES
from .database import DescriptorStore
from .face_engine import EmbeddingProvider
from .face_types import EnrollmentResult, UserType
from .logger import setup_logger

ProgressCallback = Callable[[int], None]


class RegistrationService:
    def __init__(
        self,
        provider: EmbeddingProvider,
        store: DescriptorStore,
        session: CaptureSession,
        sample_delay: float = ENROLLMENT_SAMPLE_DELAY_SECONDS,
        require_single_face: bool = ENROLL_REQUIRE_SINGLE_FACE,
    ):
        self.provider = provider
        self.store = store
        self.session = session
        self.sample_delay = sample_delay
        self.require_single_face = require_single_face
        self.logger = setup_logger(self.__class__.__name__)

        self.enrolling = False
        self.progress = 0

    async def enroll(
        self,
        user_id: str,
        user_type: Union[UserType, str] = UserType.EMPLOYEE,
        sample_count: int = ENROLLMENT_SAMPLES,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EnrollmentResult:
        if not self.provider.initialized:
            return EnrollmentResult(success=False, error="Face recognition not initialized")
        if not user_id.strip():
            return EnrollmentResult(success=False, error="user_id cannot be empty.")
        if sample_count < 1:
            return EnrollmentResult(success=False, error="sample_count should be at least 1.")
        try:
            kind = UserType(user_type)
        except ValueError:
            return EnrollmentResult(success=False, error=f"Unknown user type: {user_type}")

        self.logger.info("Starting enrollment for %s %s (%d samples)", kind.value, user_id, sample_count)
        self.enrolling = True
        self.progress = 0
        captured = 0
        stored = 0

        try:
            for i in range(sample_count):
                if i > 0:
                    # Spacing samples out gives some pose variation.
                    await asyncio.sleep(self.sample_delay)

                frame = await self.session.read_frame()
                if frame is None:
                    self.logger.warning("Video surface not available for enrollment sample %d", i + 1)
                else:
                    added = await self._capture_sample(frame, user_id, kind, i + 1)
                    if added:
                        captured += 1
                        stored += added

                self.progress = int(math.floor((i + 1) * 100 / sample_count + 0.5))
                if on_progress is not None:
                    on_progress(self.progress)
        finally:
            self.enrolling = False

        if captured == 0:
            self.logger.warning("Enrollment failed for %s %s: no face samples", kind.value, user_id)
            return EnrollmentResult(success=False, error="Failed to capture any face samples")

        self.logger.info(
            "Enrolled %s %s with %d/%d samples (%d descriptors)",
            kind.value,
            user_id,
            captured,
            sample_count,
            stored,
        )
        return EnrollmentResult(success=True, samples_captured=captured, descriptors_stored=stored)

    async def _capture_sample(self, frame: np.ndarray, user_id: str, kind: UserType, sample_no: int) -> int:
        try:
            detections = await asyncio.to_thread(self.provider.detect_faces, frame)
        except Exception:
            self.logger.exception("Face detection failed for enrollment sample %d", sample_no)
            return 0

        if not detections:
            self.logger.info("No face detected in enrollment sample %d", sample_no)
            return 0
        if self.require_single_face and len(detections) > 1:
            self.logger.warning("Enrollment sample %d skipped: %d faces visible", sample_no, len(detections))
            return 0

        # Store errors are not per-sample misses; they propagate to the caller.
        for detection in detections:
            await asyncio.to_thread(self.store.add, user_id, kind, detection.descriptor)
        return len(detections)
