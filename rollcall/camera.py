from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .camera_capture import CameraDevice, VideoSource, VideoStream
from .config import (
    CAMERA_READY_TIMEOUT_SECONDS,
    FRAME_HEIGHT,
    FRAME_WIDTH,
    SURFACE_REBIND_DELAY_SECONDS,
    SURFACE_RETRY_ATTEMPTS,
    SURFACE_RETRY_DELAY_SECONDS,
)
from .exceptions import CameraError, CameraInitTimeoutError, NoDeviceFoundError, NotInitializedError
from .face_engine import EmbeddingProvider
from .logger import setup_logger
from .surface import Surface, SurfaceProvider, acquire_surface

READY_POLL_SECONDS = 0.05


class CameraState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    ERROR = "error"


class _AcquisitionAborted(CameraError):
    pass


class CaptureSession:
    """Owns one live camera stream and the surface it is rendered to.

    ``start`` walks Idle -> Acquiring -> Active and reports failures as a
    message in ``last_error`` instead of raising. ``stop`` is idempotent and
    tears down anything registered through ``add_stop_listener`` first.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        video_source: VideoSource,
        surface_provider: SurfaceProvider,
        width: int = FRAME_WIDTH,
        height: int = FRAME_HEIGHT,
        ready_timeout: float = CAMERA_READY_TIMEOUT_SECONDS,
        surface_attempts: int = SURFACE_RETRY_ATTEMPTS,
        surface_delay: float = SURFACE_RETRY_DELAY_SECONDS,
        rebind_delay: float = SURFACE_REBIND_DELAY_SECONDS,
    ):
        self.provider = provider
        self.video_source = video_source
        self.surface_provider = surface_provider
        self.width = width
        self.height = height
        self.ready_timeout = ready_timeout
        self.surface_attempts = surface_attempts
        self.surface_delay = surface_delay
        self.rebind_delay = rebind_delay
        self.logger = setup_logger(self.__class__.__name__)

        self.state = CameraState.IDLE
        self.last_error: Optional[str] = None
        self._stream: Optional[VideoStream] = None
        self._surface: Optional[Surface] = None
        self._rebind_task: Optional[asyncio.Task] = None
        self._stop_listeners: List[Callable[[], None]] = []
        self._generation = 0

    @property
    def active(self) -> bool:
        return self.state is CameraState.ACTIVE

    @property
    def surface(self) -> Optional[Surface]:
        return self._surface

    def add_stop_listener(self, listener: Callable[[], None]) -> None:
        self._stop_listeners.append(listener)

    async def start(self) -> bool:
        if not self.provider.initialized:
            self.last_error = str(NotInitializedError("Face recognition not initialized"))
            self.logger.error("Camera start refused: %s", self.last_error)
            return False
        if self.state is CameraState.ACTIVE:
            return True
        if self.state is CameraState.ACQUIRING:
            self.logger.warning("Camera start already in progress")
            return False

        self.state = CameraState.ACQUIRING
        self.last_error = None
        self._generation += 1
        generation = self._generation
        stream: Optional[VideoStream] = None
        surface: Optional[Surface] = None

        try:
            devices = await asyncio.to_thread(self.video_source.list_devices)
            self._ensure_current(generation)
            if not devices:
                raise NoDeviceFoundError("No video input devices found")

            stream = await self._open_stream(devices)
            self._ensure_current(generation)

            # The render target may only appear after the stream is live.
            surface = await acquire_surface(self.surface_provider, self.surface_attempts, self.surface_delay)
            self._ensure_current(generation)

            surface.attach(stream)
            await self._wait_until_ready(surface, generation)
            self._ensure_current(generation)
        except CameraError as exc:
            self._release(stream, surface)
            if isinstance(exc, _AcquisitionAborted) or generation != self._generation:
                # A later stop() or start() owns the session state now.
                self.logger.info("Camera start aborted by stop()")
                return False
            self.state = CameraState.ERROR
            self.last_error = str(exc)
            self.logger.error("Camera start failed: %s", exc)
            return False
        except asyncio.CancelledError:
            self._release(stream, surface)
            if generation == self._generation:
                self.state = CameraState.IDLE
            raise

        self._stream = stream
        self._surface = surface
        self.state = CameraState.ACTIVE
        self._rebind_task = asyncio.create_task(self._rebind_later(generation))
        self.logger.info("Camera active on %r", surface)
        return True

    def stop(self) -> None:
        self._generation += 1

        for listener in list(self._stop_listeners):
            try:
                listener()
            except Exception:
                self.logger.exception("Camera stop listener failed")

        if self._rebind_task is not None:
            self._rebind_task.cancel()
            self._rebind_task = None

        was_active = self._stream is not None
        self._release(self._stream, self._surface)
        self._stream = None
        self._surface = None
        self.state = CameraState.IDLE
        if was_active:
            self.logger.info("Camera stopped")

    def current_surface(self) -> Optional[Surface]:
        if not self.active:
            return None
        if self._surface is None or not self._surface.connected:
            self.rebind()
        if self._surface is None or not self._surface.connected:
            return None
        return self._surface

    async def read_frame(self) -> Optional[np.ndarray]:
        surface = self.current_surface()
        if surface is None:
            return None
        return await asyncio.to_thread(surface.current_frame)

    def rebind(self) -> bool:
        if self._stream is None:
            return False
        candidate = self.surface_provider.acquire()
        if candidate is None or candidate is self._surface:
            return False

        if self._surface is not None:
            self._surface.detach()
        candidate.attach(self._stream)
        self._surface = candidate
        self.logger.info("Camera stream rebound to %r", candidate)
        return True

    async def _rebind_later(self, generation: int) -> None:
        await asyncio.sleep(self.rebind_delay)
        if generation != self._generation or not self.active:
            return
        try:
            self.rebind()
        except Exception:
            self.logger.exception("Camera surface rebind failed")

    async def _open_stream(self, devices: List[CameraDevice]) -> VideoStream:
        preferred = devices[0]
        try:
            return await asyncio.to_thread(self.video_source.open, preferred.index, self.width, self.height)
        except CameraError as exc:
            self.logger.warning("Camera %s failed to open (%s); trying default device", preferred.index, exc)
            try:
                return await asyncio.to_thread(self.video_source.open, None, self.width, self.height)
            except CameraError:
                raise exc

    async def _wait_until_ready(self, surface: Surface, generation: int) -> None:
        async def _poll() -> None:
            while not surface.is_ready():
                self._ensure_current(generation)
                await asyncio.to_thread(surface.current_frame)
                if surface.is_ready():
                    return
                await asyncio.sleep(READY_POLL_SECONDS)

        try:
            await asyncio.wait_for(_poll(), timeout=self.ready_timeout)
        except asyncio.TimeoutError as exc:
            raise CameraInitTimeoutError("Camera initialization timed out") from exc

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _AcquisitionAborted("Camera start was cancelled")

    def _release(self, stream: Optional[VideoStream], surface: Optional[Surface]) -> None:
        # The surface may already carry a newer session's stream; leave that binding alone.
        if surface is not None and stream is not None and surface.stream is stream:
            try:
                surface.detach()
            except Exception:
                self.logger.exception("Failed to detach camera surface")
        if stream is not None:
            try:
                stream.release()
            except Exception:
                self.logger.exception("Failed to release camera stream")
