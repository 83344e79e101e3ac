from __future__ import annotations

import os
import time
from typing import List, Protocol, Tuple

import cv2
import numpy as np

from .exceptions import CameraError


class CaptureSession(Protocol):
    def frame(self) -> np.ndarray: ...

    def release(self) -> None: ...


class CaptureProvider(Protocol):
    def acquire_local_capture(self) -> CaptureSession: ...


def _preferred_backend_order() -> list[str]:
    raw = os.getenv("MONITOR_CAPTURE_BACKEND_ORDER", "").strip()
    if not raw:
        if os.name == "nt":
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2"]
    mapping = {
        "auto": "Auto",
        "any": "Auto",
        "v4l2": "V4L2",
        "dshow": "DirectShow",
        "directshow": "DirectShow",
        "msmf": "Media Foundation",
        "media foundation": "Media Foundation",
    }
    result: list[str] = []
    for item in raw.split(","):
        name = mapping.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or ["Auto"]


def capture_backends() -> List[Tuple[str, int | None]]:
    backend_map: dict[str, int | None] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
    }
    candidates: List[Tuple[str, int | None]] = []
    seen: set[int | None] = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        if backend is None:
            cap = cv2.VideoCapture(camera_index)
        else:
            cap = cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # A device still held by another process can open but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {tried}.")


class OpenCvCaptureSession:
    def __init__(self, cap: cv2.VideoCapture, backend_name: str):
        self.cap = cap
        self.backend_name = backend_name

    def frame(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Capture session already released.")
        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def release(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class OpenCvCaptureProvider:
    def __init__(self, camera_index: int = 0, width: int = 640, height: int = 480):
        self.camera_index = camera_index
        self.width = width
        self.height = height

    def acquire_local_capture(self) -> OpenCvCaptureSession:
        cap, backend_name = open_camera_capture(self.camera_index)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return OpenCvCaptureSession(cap, backend_name)


def encode_jpeg(frame: np.ndarray, quality: int = 95) -> bytes:
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise CameraError("Failed to encode frame as JPEG.")
    return encoded.tobytes()
