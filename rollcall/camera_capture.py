from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .config import CAMERA_INDEX, CAMERA_SCAN_MAX_INDEX, FRAME_FPS
from .exceptions import CameraError, CameraPermissionError


@dataclass
class CameraDevice:
    index: int
    width: int
    height: int
    fps: float
    backend: str = "unknown"


class VideoStream(Protocol):
    def read(self) -> Optional[np.ndarray]: ...

    def release(self) -> None: ...


class VideoSource(Protocol):
    def list_devices(self) -> List[CameraDevice]: ...

    def open(self, device_index: Optional[int], width: int, height: int) -> VideoStream: ...


_BACKEND_ALIASES = {
    "auto": "CAP_ANY",
    "any": "CAP_ANY",
    "v4l2": "CAP_V4L2",
    "dshow": "CAP_DSHOW",
    "directshow": "CAP_DSHOW",
    "msmf": "CAP_MSMF",
    "mediafoundation": "CAP_MSMF",
}


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    """OpenCV capture APIs to try, in order.

    ``ROLLCALL_CAMERA_BACKEND_ORDER`` takes a comma list such as ``dshow,auto``.
    Windows laptop webcams are generally more stable on DirectShow, so it
    leads there by default.
    """
    raw = os.getenv("ROLLCALL_CAMERA_BACKEND_ORDER", "").strip()
    if raw:
        names = [_BACKEND_ALIASES.get(item.strip().lower()) for item in raw.split(",")]
    elif os.name == "nt":
        names = ["CAP_DSHOW", "CAP_MSMF", "CAP_ANY"]
    else:
        names = ["CAP_ANY", "CAP_V4L2"]

    candidates: List[Tuple[str, Optional[int]]] = []
    for name in names:
        if name is None:
            continue
        api = getattr(cv2, name, None)
        if all(api != seen for _, seen in candidates):
            candidates.append((name, api))
    return candidates or [("CAP_ANY", getattr(cv2, "CAP_ANY", None))]


def _capture(camera_index: int, api: Optional[int]) -> cv2.VideoCapture:
    return cv2.VideoCapture(camera_index) if api is None else cv2.VideoCapture(camera_index, api)


def _probe(cap: cv2.VideoCapture, attempts: int = 6, delay: float = 0.03) -> Optional[np.ndarray]:
    # Some backends report opened=True but never deliver frames.
    for _ in range(attempts):
        ok, frame = cap.read()
        if ok and frame is not None:
            return frame
        time.sleep(delay)
    return None


class OpenCVStream:
    def __init__(self, cap: cv2.VideoCapture, device_index: int, backend_name: str):
        self.cap: Optional[cv2.VideoCapture] = cap
        self.device_index = device_index
        self.backend_name = backend_name

    def read(self) -> Optional[np.ndarray]:
        if self.cap is None:
            return None
        ok, frame = self.cap.read()
        if not ok or frame is None:
            return None
        return frame

    def release(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class OpenCVVideoSource:
    def __init__(
        self,
        preferred_index: int = CAMERA_INDEX,
        max_index: int = CAMERA_SCAN_MAX_INDEX,
        fps: int = FRAME_FPS,
    ):
        self.preferred_index = preferred_index
        self.max_index = max_index
        self.fps = fps

    def list_devices(self) -> List[CameraDevice]:
        devices: List[CameraDevice] = []
        for camera_index in range(self.max_index + 1):
            for backend_name, backend in capture_backends():
                cap = _capture(camera_index, backend)
                if not cap.isOpened():
                    cap.release()
                    continue

                frame = _probe(cap, delay=0.02)
                if frame is None:
                    cap.release()
                    continue

                devices.append(
                    CameraDevice(
                        index=camera_index,
                        width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or frame.shape[1]),
                        height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or frame.shape[0]),
                        fps=float(cap.get(cv2.CAP_PROP_FPS) or 0.0),
                        backend=backend_name,
                    )
                )
                cap.release()
                break

        # The session opens the first device, so the preferred index leads.
        devices.sort(key=lambda device: device.index != self.preferred_index)
        return devices

    def open(self, device_index: Optional[int], width: int, height: int) -> OpenCVStream:
        camera_index = 0 if device_index is None else device_index
        attempted: List[str] = []

        for backend_name, backend in capture_backends():
            attempted.append(backend_name)
            cap = _capture(camera_index, backend)
            if cap.isOpened():
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
                cap.set(cv2.CAP_PROP_FPS, self.fps)
                if _probe(cap) is not None:
                    return OpenCVStream(cap, camera_index, backend_name)
            cap.release()

        tried = ", ".join(attempted) if attempted else "default backend"
        if device_index is not None:
            raise CameraPermissionError(
                f"Could not access camera {camera_index} (tried {tried}). "
                "Check permissions and make sure no other application is using the camera."
            )
        raise CameraError(f"Unable to open the default camera. Tried backends: {tried}.")
