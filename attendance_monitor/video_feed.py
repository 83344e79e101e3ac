from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterator

import cv2
import numpy as np
import requests

from .models import SlotId

logger = logging.getLogger("attendance_monitor.video_feed")

_SOI = b"\xff\xd8"
_EOI = b"\xff\xd9"
_MAX_BUFFER_BYTES = 8_000_000


class SignalState(str, Enum):
    IDLE = "idle"
    LIVE = "live"
    NO_SIGNAL = "no_signal"


def split_jpeg_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Cut complete JPEG payloads out of a multipart MJPEG byte stream.

    Returns the complete images and the unconsumed tail, which still holds the
    start of the next image when one is in flight.
    """
    frames: list[bytes] = []
    cursor = 0
    while True:
        start = buffer.find(_SOI, cursor)
        if start < 0:
            # Keep a trailing 0xFF; it may be the first half of the next SOI.
            return frames, buffer[-1:] if buffer.endswith(b"\xff") else b""
        end = buffer.find(_EOI, start + 2)
        if end < 0:
            return frames, buffer[start:]
        frames.append(buffer[start : end + 2])
        cursor = end + 2


class VideoFeed:
    """Pixel feed of one camera slot, correlated with the overlay only by slot and source key."""

    def __init__(
        self,
        url_for: Callable[[SlotId, str], str],
        session: requests.Session | None = None,
        timeout_seconds: float = 8.0,
    ):
        self._url_for = url_for
        self.session = session if session is not None else requests.Session()
        self.timeout_seconds = timeout_seconds
        self._slot_id: SlotId | None = None
        self._source_key = ""
        self._url: str | None = None
        self._state = SignalState.IDLE

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def state(self) -> SignalState:
        return self._state

    def bind(self, slot_id: SlotId | str, source_key: str | None) -> str | None:
        slot = SlotId(slot_id)
        url = self._url_for(slot, source_key) if source_key else None
        if url != self._url:
            self._state = SignalState.IDLE
        self._slot_id = slot
        self._source_key = source_key or ""
        self._url = url
        return url

    def mark_loaded(self) -> None:
        if self._url is not None:
            self._state = SignalState.LIVE

    def mark_error(self) -> None:
        if self._url is not None:
            self._state = SignalState.NO_SIGNAL

    def iter_frames(self, chunk_size: int = 16_384) -> Iterator[np.ndarray]:
        """Decode frames from the MJPEG stream until it ends or fails."""
        url = self._url
        if url is None:
            return
        try:
            with self.session.get(url, stream=True, timeout=self.timeout_seconds) as resp:
                resp.raise_for_status()
                pending = b""
                for chunk in resp.iter_content(chunk_size=chunk_size):
                    if url != self._url:
                        return
                    pending += chunk
                    images, pending = split_jpeg_frames(pending)
                    if len(pending) > _MAX_BUFFER_BYTES:
                        pending = b""
                    for payload in images:
                        frame = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
                        if frame is None:
                            continue
                        self.mark_loaded()
                        yield frame
        except requests.RequestException as exc:
            logger.warning("Video feed %s failed: %s", url, exc)
            self.mark_error()
            return
        if url == self._url:
            self.mark_error()
