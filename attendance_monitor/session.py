from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from .annotations import AnnotationChannel, WebSocketConnector
from .api_client import BackendClient
from .capture import CaptureProvider, OpenCvCaptureProvider
from .capture_workflow import PhotoCaptureWorkflow
from .config import MonitorSettings, is_valid_hhmm
from .exceptions import MonitorError
from .log_sync import LogSynchronizer
from .models import CapturedPhoto, SlotId, StudentCount, Subject
from .slots import CameraSlotRegistry
from .video_feed import VideoFeed

logger = logging.getLogger("attendance_monitor.session")


class MonitorSession:
    """Live attendance session: two camera slots, their overlays and the event log.

    The session owns the external selection state (subject, date, camera
    sources) and pushes it into the three independent pieces: the slot
    registry with its device arbiters, one annotation channel and one video
    feed per slot, and the log synchronizer.
    """

    def __init__(
        self,
        settings: MonitorSettings,
        client: BackendClient,
        capture_provider: CaptureProvider | None = None,
        connector=None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self.client = client
        self._today = today
        capture_provider = capture_provider or OpenCvCaptureProvider(
            camera_index=settings.capture_camera_index,
            width=settings.capture_width,
            height=settings.capture_height,
        )
        connector = connector or WebSocketConnector(
            token_provider=client.token_provider,
            connect_timeout_seconds=settings.request_timeout_seconds,
        )

        self.slots = CameraSlotRegistry(client, capture_provider, settle_delay_seconds=settings.settle_delay_seconds)
        self.channels: dict[SlotId, AnnotationChannel] = {
            slot_id: AnnotationChannel(
                connector,
                url_for=client.annotation_url,
                reconnect_seconds=settings.reconnect_seconds,
                native_width=settings.native_width,
                native_height=settings.native_height,
            )
            for slot_id in SlotId
        }
        self.feeds: dict[SlotId, VideoFeed] = {
            slot_id: VideoFeed(client.stream_url, timeout_seconds=settings.request_timeout_seconds)
            for slot_id in SlotId
        }
        self.logs = LogSynchronizer(
            client,
            poll_interval_seconds=settings.poll_interval_seconds,
            page_size=settings.page_size,
            today=today,
            explicit_cursor=settings.explicit_poll_cursor,
        )

        self.subjects: list[Subject] = []
        self.subject_id: int | None = None
        self.selected_date: date = today()
        self.late_time = settings.default_late_time

    @property
    def student_count(self) -> StudentCount:
        return self.logs.student_count

    @property
    def viewing_today(self) -> bool:
        return self.selected_date == self._today()

    async def start(self) -> None:
        await self.refresh_subjects()
        if await self.slots.load():
            for slot_id in SlotId:
                await self._bind_slot(slot_id)
        else:
            logger.info("Camera mapping unavailable; slots stay in placeholder state.")
        self.selected_date = self._today()
        await self.logs.select(self.selected_date, self.subject_id)

    async def close(self) -> None:
        for channel in self.channels.values():
            await channel.close()
        await self.logs.stop()
        await self.slots.release_all()

    async def refresh_subjects(self) -> list[Subject]:
        try:
            self.subjects = await self.client.list_subjects()
        except MonitorError as exc:
            logger.error("Failed to fetch subjects: %s", exc)
            return self.subjects
        if self.subject_id is None and self.subjects:
            self.subject_id = self.subjects[0].subject_id
        self._apply_late_time()
        return self.subjects

    def find_subject(self, subject_id: int | None) -> Subject | None:
        for subject in self.subjects:
            if subject.subject_id == subject_id:
                return subject
        return None

    async def select_subject(self, subject_id: int | None) -> None:
        self.subject_id = subject_id
        self._apply_late_time()
        await self.logs.select(self.selected_date, subject_id)
        try:
            body = await self.client.set_active_subject(subject_id)
            logger.info("Backend roster updated: %s", body)
        except MonitorError as exc:
            logger.error("Failed to update active subject: %s", exc)

    async def select_date(self, day: date) -> None:
        self.selected_date = day
        await self.logs.select(day, self.subject_id)

    async def reconfigure_camera(self, slot_id: SlotId | str, source_key: str) -> None:
        slot = await self.slots.reconfigure(slot_id, source_key)
        await self._bind_slot(slot.slot_id)

    async def save_late_time(self, late_time: str) -> None:
        if self.subject_id is None:
            raise MonitorError("Please select a subject first.")
        if not is_valid_hhmm(late_time):
            raise MonitorError("Please enter a valid time (HH:MM).")
        await self.client.update_subject_start_time(self.subject_id, late_time)
        self.late_time = late_time
        await self.refresh_subjects()

    async def start_attendance(self) -> None:
        await self.client.start_attendance()
        logger.info("Attendance started.")

    async def stop_attendance(self) -> None:
        await self.client.stop_attendance()
        logger.info("Attendance stopped.")

    async def export(self, fmt: str) -> tuple[str, bytes]:
        return await self.client.download_export(self.selected_date, self.subject_id, fmt)

    def photo_capture(
        self,
        slot_id: SlotId | str,
        on_capture: Callable[[CapturedPhoto], None] | None = None,
    ) -> PhotoCaptureWorkflow:
        return PhotoCaptureWorkflow(
            self.slots[slot_id].arbiter,
            token_provider=self.client.token_provider,
            on_capture=on_capture,
            jpeg_quality=self.settings.capture_jpeg_quality,
        )

    async def _bind_slot(self, slot_id: SlotId) -> None:
        source_key = self.slots[slot_id].source_key
        self.feeds[slot_id].bind(slot_id, source_key)
        await self.channels[slot_id].open(slot_id, source_key)

    def _apply_late_time(self) -> None:
        subject = self.find_subject(self.subject_id)
        if subject is None:
            self.late_time = self.settings.default_late_time
        else:
            self.late_time = subject.late_time(self.settings.default_late_time)
