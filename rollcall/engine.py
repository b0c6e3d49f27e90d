from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import numpy as np

from .camera import CaptureSession
from .camera_capture import VideoSource
from .config import (
    CAMERA_READY_TIMEOUT_SECONDS,
    ENROLL_REQUIRE_SINGLE_FACE,
    ENROLLMENT_SAMPLE_DELAY_SECONDS,
    ENROLLMENT_SAMPLES,
    FRAME_HEIGHT,
    FRAME_WIDTH,
    MATCH_THRESHOLD,
    RECOGNITION_INTERVAL_SECONDS,
    SURFACE_REBIND_DELAY_SECONDS,
    SURFACE_RETRY_ATTEMPTS,
    SURFACE_RETRY_DELAY_SECONDS,
)
from .database import DescriptorStore, EnrolledUser
from .exceptions import StorageUnavailableError
from .face_engine import EmbeddingProvider
from .face_types import EngineState, EnrollmentResult, RecognitionOutcome, UserType
from .logger import setup_logger
from .matcher import FaceMatcher
from .recognition_service import RecognitionService, ResultCallback
from .registration_service import ProgressCallback, RegistrationService
from .surface import SurfaceProvider


@dataclass(frozen=True)
class EngineSettings:
    match_threshold: float = MATCH_THRESHOLD
    recognition_interval: float = RECOGNITION_INTERVAL_SECONDS
    enrollment_samples: int = ENROLLMENT_SAMPLES
    enrollment_sample_delay: float = ENROLLMENT_SAMPLE_DELAY_SECONDS
    enroll_require_single_face: bool = ENROLL_REQUIRE_SINGLE_FACE
    frame_width: int = FRAME_WIDTH
    frame_height: int = FRAME_HEIGHT
    camera_ready_timeout: float = CAMERA_READY_TIMEOUT_SECONDS
    surface_retry_attempts: int = SURFACE_RETRY_ATTEMPTS
    surface_retry_delay: float = SURFACE_RETRY_DELAY_SECONDS
    surface_rebind_delay: float = SURFACE_REBIND_DELAY_SECONDS


class FaceRecognitionEngine:
    """Owns every piece of the face-recognition core for one camera.

    Nothing here is module-level state, so several engines can run side by
    side (each with its own store and camera) in one process.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: DescriptorStore,
        video_source: VideoSource,
        surface_provider: SurfaceProvider,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings()
        self.provider = provider
        self.store = store
        self.logger = setup_logger(self.__class__.__name__)

        self.matcher = FaceMatcher(threshold=self.settings.match_threshold)
        self.session = CaptureSession(
            provider,
            video_source,
            surface_provider,
            width=self.settings.frame_width,
            height=self.settings.frame_height,
            ready_timeout=self.settings.camera_ready_timeout,
            surface_attempts=self.settings.surface_retry_attempts,
            surface_delay=self.settings.surface_retry_delay,
            rebind_delay=self.settings.surface_rebind_delay,
        )
        self.recognition = RecognitionService(
            provider,
            store,
            self.session,
            self.matcher,
            interval=self.settings.recognition_interval,
        )
        self.registration = RegistrationService(
            provider,
            store,
            self.session,
            sample_delay=self.settings.enrollment_sample_delay,
            require_single_face=self.settings.enroll_require_single_face,
        )

        self.loading = False
        self._init_error: Optional[str] = None
        self._store_ready = False

    @property
    def initialized(self) -> bool:
        return self.provider.initialized and self._store_ready

    @property
    def error(self) -> Optional[str]:
        return self._init_error or self.session.last_error or self.recognition.last_error

    @property
    def state(self) -> EngineState:
        return EngineState(
            initialized=self.initialized,
            camera_active=self.session.active,
            loading=self.loading,
            error=self.error,
            detection=self.recognition.detection,
            enrolling=self.registration.enrolling,
            enrollment_progress=self.registration.progress,
        )

    async def initialize(self) -> bool:
        if self.initialized:
            return True

        self.loading = True
        self._init_error = None
        try:
            if not self.provider.initialized:
                loaded = await asyncio.to_thread(self.provider.initialize)
                if not loaded:
                    self._init_error = "Failed to load face recognition models"
                    return False
            await asyncio.to_thread(self.store.open)
            self._store_ready = True
        except StorageUnavailableError as exc:
            self._init_error = str(exc)
            self.logger.error("Descriptor store unavailable: %s", exc)
            return False
        finally:
            self.loading = False

        self.logger.info("Face recognition engine initialized")
        return True

    async def start_camera(self) -> bool:
        return await self.session.start()

    def stop_camera(self) -> None:
        self.session.stop()

    def start_recognition(self, on_result: ResultCallback) -> Callable[[], None]:
        return self.recognition.start(on_result)

    def stop_recognition(self) -> None:
        self.recognition.stop()

    async def recognize_frame(self, frame: np.ndarray) -> RecognitionOutcome:
        return await self.recognition.recognize(frame)

    async def enroll(
        self,
        user_id: str,
        user_type: Union[UserType, str] = UserType.EMPLOYEE,
        sample_count: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EnrollmentResult:
        count = self.settings.enrollment_samples if sample_count is None else sample_count
        return await self.registration.enroll(user_id, user_type, count, on_progress)

    async def remove_user(self, user_id: str, user_type: Union[UserType, str]) -> int:
        removed = await asyncio.to_thread(self.store.remove_all_for_user, user_id, user_type)
        self.logger.info("Removed %d descriptors for %s %s", removed, user_type, user_id)
        return removed

    async def list_users(self) -> List[EnrolledUser]:
        return await asyncio.to_thread(self.store.list_enrolled_users)

    async def close(self) -> None:
        self.session.stop()
        await asyncio.to_thread(self.store.close)
        self._store_ready = False

    async def __aenter__(self) -> "FaceRecognitionEngine":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
