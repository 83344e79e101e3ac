from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from .arbiter import DeviceArbiter
from .capture import encode_jpeg
from .exceptions import AcquisitionDenied, AlreadyOwned, MissingCredentials, MonitorError
from .models import CapturedPhoto, OwnershipState

logger = logging.getLogger("attendance_monitor.capture_workflow")

AUTH_FAILED_MESSAGE = "Authentication failed. Please re-login."
DEVICE_BUSY_MESSAGE = "Device is currently in use by another application or permission is denied."
ENCODE_FAILED_MESSAGE = "Failed to process image."


class CaptureMode(str, Enum):
    LOADING = "loading"
    LIVE = "live"
    ERROR = "error"
    PREVIEW = "preview"
    CLOSED = "closed"


class PhotoCaptureWorkflow:
    """Take a registration photo on a slot's physical camera.

    The device is borrowed from the backend through the slot's arbiter for as
    long as the workflow is open; ``close`` (or leaving the ``async with``
    block, for any reason) hands it back.
    """

    def __init__(
        self,
        arbiter: DeviceArbiter,
        token_provider=None,
        on_capture: Callable[[CapturedPhoto], None] | None = None,
        jpeg_quality: int = 95,
    ):
        self.arbiter = arbiter
        self.token_provider = token_provider
        self.on_capture = on_capture
        self.jpeg_quality = jpeg_quality
        self.mode = CaptureMode.LOADING
        self.error_message = ""
        self._photo: CapturedPhoto | None = None
        self._owns_device = False

    @property
    def photo(self) -> CapturedPhoto | None:
        return self._photo

    async def __aenter__(self) -> "PhotoCaptureWorkflow":
        await self.start_live_preview()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start_live_preview(self) -> None:
        self.mode = CaptureMode.LOADING
        self.error_message = ""
        self._photo = None

        if self.token_provider is not None:
            try:
                await asyncio.to_thread(self.token_provider.get_token)
            except MissingCredentials:
                self._fail(AUTH_FAILED_MESSAGE)
                return

        if self._owns_device and self.arbiter.state is OwnershipState.LOCAL_OWNED:
            self.mode = CaptureMode.LIVE
            return
        self._owns_device = False

        try:
            await self.arbiter.acquire()
        except (AcquisitionDenied, AlreadyOwned) as exc:
            logger.warning("Live preview unavailable: %s", exc)
            self._fail(DEVICE_BUSY_MESSAGE)
            return
        self._owns_device = True
        self.mode = CaptureMode.LIVE

    async def retry(self) -> None:
        await self.start_live_preview()

    async def take_photo(self) -> CapturedPhoto | None:
        session = self.arbiter.session
        if self.mode is not CaptureMode.LIVE or not self._owns_device or session is None:
            return None
        try:
            frame = await asyncio.to_thread(session.frame)
            content = encode_jpeg(frame, self.jpeg_quality)
        except MonitorError as exc:
            logger.warning("Photo capture failed: %s", exc)
            self._fail(ENCODE_FAILED_MESSAGE)
            return None
        self._photo = CapturedPhoto(filename=f"captured_face_{int(time.time() * 1000)}.jpeg", content=content)
        self.mode = CaptureMode.PREVIEW
        return self._photo

    async def use_photo(self) -> CapturedPhoto | None:
        photo = self._photo
        if photo is None:
            return None
        if self.on_capture is not None:
            self.on_capture(photo)
        await self.start_live_preview()
        return photo

    async def close(self) -> None:
        if self.mode is CaptureMode.CLOSED:
            return
        self.mode = CaptureMode.CLOSED
        self._photo = None
        if self._owns_device:
            self._owns_device = False
            await self.arbiter.release()

    def _fail(self, message: str) -> None:
        self.error_message = message
        self.mode = CaptureMode.ERROR
