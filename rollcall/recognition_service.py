from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import numpy as np

from .camera import CaptureSession
from .config import RECOGNITION_INTERVAL_SECONDS
from .database import DescriptorStore
from .exceptions import StorageUnavailableError
from .face_engine import EmbeddingProvider
from .face_types import NO_FACE, FacePresentUnmatched, Matched, RecognitionOutcome, UserType
from .logger import setup_logger
from .matcher import FaceMatcher

ResultCallback = Callable[[str, UserType, float], Any]


def _noop() -> None:
    return None


class RecognitionService:
    """Polls the live camera and reports recognised faces.

    Only one loop runs at a time. The next tick is scheduled after the
    previous one has settled, so ticks never overlap. Each loop carries a
    generation number; a tick that finishes after its loop was cancelled
    drops its result.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: DescriptorStore,
        session: CaptureSession,
        matcher: FaceMatcher,
        interval: float = RECOGNITION_INTERVAL_SECONDS,
    ):
        self.provider = provider
        self.store = store
        self.session = session
        self.matcher = matcher
        self.interval = interval
        self.logger = setup_logger(self.__class__.__name__)

        self.detection: RecognitionOutcome = NO_FACE
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

        session.add_stop_listener(self.stop)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_result: ResultCallback) -> Callable[[], None]:
        if not self.provider.initialized or not self.session.active:
            self.logger.warning("Recognition not started: models or camera not ready")
            return _noop

        self.stop()
        self._generation += 1
        generation = self._generation
        self.last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run(generation, on_result))
        self.logger.info("Recognition loop started (every %.2fs)", self.interval)

        def cancel() -> None:
            if self._generation == generation:
                self.stop()

        return cancel

    def stop(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            self.logger.info("Recognition loop stopped")
        self.detection = NO_FACE

    async def recognize(self, frame: np.ndarray) -> RecognitionOutcome:
        detections = await asyncio.to_thread(self.provider.detect_faces, frame)
        if not detections:
            return NO_FACE

        # Only the first detected face is matched.
        primary = detections[0]
        enrolled = await asyncio.to_thread(self.store.get_all)
        candidate = self.matcher.nearest(primary.descriptor, enrolled)
        if candidate is None or candidate.distance > self.matcher.threshold:
            distance = candidate.distance if candidate is not None else None
            return FacePresentUnmatched(distance=distance, region=primary.region)

        return Matched(
            user_id=candidate.user_id,
            user_type=candidate.user_type,
            distance=candidate.distance,
            confidence=self.matcher.confidence(candidate.distance),
            region=primary.region,
        )

    async def _run(self, generation: int, on_result: ResultCallback) -> None:
        loop = asyncio.get_running_loop()
        due = loop.time() + self.interval
        while generation == self._generation:
            await asyncio.sleep(max(0.0, due - loop.time()))
            if generation != self._generation:
                return
            await self._tick(generation, on_result)
            # A slow tick delays the next one instead of queueing a backlog.
            due = max(due + self.interval, loop.time())

    async def _tick(self, generation: int, on_result: ResultCallback) -> None:
        try:
            frame = await self.session.read_frame()
            if frame is None or generation != self._generation:
                return

            outcome = await self.recognize(frame)
            if generation != self._generation:
                return

            self.detection = outcome
            if isinstance(outcome, Matched):
                self.logger.info(
                    "Recognised %s %s (distance=%.3f confidence=%.2f)",
                    outcome.user_type.value,
                    outcome.user_id,
                    outcome.distance,
                    outcome.confidence,
                )
                result = on_result(outcome.user_id, outcome.user_type, outcome.confidence)
                if inspect.isawaitable(result):
                    await result
        except StorageUnavailableError as exc:
            self.last_error = str(exc)
            self.logger.error("Recognition tick skipped: %s", exc)
        except Exception:
            self.logger.exception("Error during face recognition tick")
