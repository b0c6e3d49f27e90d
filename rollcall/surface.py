from __future__ import annotations

import asyncio
import threading
from typing import Optional, Protocol

import numpy as np

from .camera_capture import VideoStream
from .config import SURFACE_RETRY_ATTEMPTS, SURFACE_RETRY_DELAY_SECONDS
from .exceptions import SurfaceNotFoundError


class Surface(Protocol):
    @property
    def connected(self) -> bool: ...

    @property
    def stream(self) -> Optional[VideoStream]: ...

    def attach(self, stream: VideoStream) -> None: ...

    def detach(self) -> None: ...

    def is_ready(self) -> bool: ...

    def current_frame(self) -> Optional[np.ndarray]: ...


class SurfaceProvider(Protocol):
    def acquire(self) -> Optional[Surface]: ...


class StreamSurface:
    """Headless render target: pulls the newest frame from the bound stream.

    It becomes ready once the stream has delivered its first frame, which is
    the point a display element would report loaded metadata.
    """

    def __init__(self, name: str = "surface"):
        self.name = name
        self._stream: Optional[VideoStream] = None
        self._last_frame: Optional[np.ndarray] = None
        self._connected = True
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def stream(self) -> Optional[VideoStream]:
        return self._stream

    def disconnect(self) -> None:
        self._connected = False
        self.detach()

    def reconnect(self) -> None:
        self._connected = True

    def attach(self, stream: VideoStream) -> None:
        with self._lock:
            self._stream = stream
            self._last_frame = None

    def detach(self) -> None:
        with self._lock:
            self._stream = None
            self._last_frame = None

    def is_ready(self) -> bool:
        return self._stream is not None and self._last_frame is not None

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            stream = self._stream
            if stream is None:
                return None
            frame = stream.read()
            if frame is not None:
                self._last_frame = frame
            return frame

    def __repr__(self) -> str:
        return f"StreamSurface({self.name!r}, connected={self._connected})"


class SurfaceSlot:
    """Holder a UI layer fills when its render target exists.

    ``acquire`` only hands out a connected surface, mirroring a display element
    that may be torn down and re-created between renders.
    """

    def __init__(self, surface: Optional[Surface] = None):
        self._surface = surface

    def set(self, surface: Optional[Surface]) -> None:
        self._surface = surface

    def clear(self) -> None:
        self._surface = None

    def acquire(self) -> Optional[Surface]:
        surface = self._surface
        if surface is None or not surface.connected:
            return None
        return surface


async def acquire_surface(
    provider: SurfaceProvider,
    attempts: int = SURFACE_RETRY_ATTEMPTS,
    delay: float = SURFACE_RETRY_DELAY_SECONDS,
) -> Surface:
    surface = provider.acquire()
    tries = 0
    while surface is None and tries < attempts:
        await asyncio.sleep(delay)
        tries += 1
        surface = provider.acquire()

    if surface is None:
        raise SurfaceNotFoundError(f"Video surface not available after {tries} attempts")
    return surface
