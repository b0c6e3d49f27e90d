import asyncio
import threading
import time
from typing import List, Optional

import numpy as np

from rollcall.camera_capture import CameraDevice
from rollcall.exceptions import CameraPermissionError
from rollcall.face_engine import FaceDetection

FRAME = np.zeros((8, 8, 3), dtype=np.uint8)


def face(vector) -> FaceDetection:
    return FaceDetection(descriptor=np.asarray(vector, dtype=np.float32), region=np.array([0, 0, 8, 8]))


class FakeProvider:
    """Scripted embedding provider.

    Each ``detect_faces`` call consumes the next script entry: a list of
    detections, or an exception instance to raise. Once the script runs out,
    ``default`` is returned.
    """

    def __init__(self, script=None, default=None, initialized: bool = True):
        self.script = list(script or [])
        self.default = list(default or [])
        self._initialized = initialized
        self.calls = 0
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        self._initialized = True
        return True

    def detect_faces(self, frame: np.ndarray) -> List[FaceDetection]:
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.script:
            item = self.script.pop(0)
        else:
            item = self.default
        if isinstance(item, Exception):
            raise item
        return list(item)


class FakeStream:
    def __init__(self, frames: bool = True):
        self.frames = frames
        self.released = False
        self.reads = 0

    def read(self) -> Optional[np.ndarray]:
        self.reads += 1
        if self.released or not self.frames:
            return None
        return FRAME

    def release(self) -> None:
        self.released = True


class FakeVideoSource:
    def __init__(self, devices=None, frames: bool = True, failing=()):
        self.devices = [CameraDevice(index=0, width=1280, height=720, fps=30.0)] if devices is None else devices
        self.frames = frames
        self.failing = set(failing)
        self.opened: list = []
        self.streams: List[FakeStream] = []
        self.listed = 0

    def list_devices(self) -> List[CameraDevice]:
        self.listed += 1
        return list(self.devices)

    def open(self, device_index: Optional[int], width: int, height: int) -> FakeStream:
        self.opened.append(device_index)
        if device_index in self.failing:
            raise CameraPermissionError(f"Could not access camera {device_index}")
        stream = FakeStream(frames=self.frames)
        self.streams.append(stream)
        return stream


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step)
    return predicate()
