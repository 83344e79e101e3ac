import asyncio

import numpy as np
import pytest

from attendance_monitor.arbiter import DeviceArbiter
from attendance_monitor.auth import StaticTokenProvider
from attendance_monitor.capture import capture_backends, encode_jpeg
from attendance_monitor.capture_workflow import (
    AUTH_FAILED_MESSAGE,
    DEVICE_BUSY_MESSAGE,
    CaptureMode,
    PhotoCaptureWorkflow,
)
from attendance_monitor.exceptions import CameraError
from attendance_monitor.models import OwnershipState, SlotId

from fakes import FakeCaptureProvider, FakeDeviceControl, PhysicalCamera


def _arbiter(error=None):
    camera = PhysicalCamera()
    control = FakeDeviceControl(camera)
    provider = FakeCaptureProvider(camera, error=error)
    return DeviceArbiter(SlotId.ENTRANCE, control, provider, settle_delay_seconds=0.0), control, provider


def test_photo_is_taken_and_device_returned():
    arbiter, control, provider = _arbiter()
    captured = []

    async def scenario():
        async with PhotoCaptureWorkflow(arbiter, StaticTokenProvider("token"), on_capture=captured.append) as flow:
            assert flow.mode is CaptureMode.LIVE
            photo = await flow.take_photo()
            assert flow.mode is CaptureMode.PREVIEW
            used = await flow.use_photo()
            assert used is photo
            assert flow.mode is CaptureMode.LIVE
            assert arbiter.state is OwnershipState.LOCAL_OWNED
        return flow, photo

    flow, photo = asyncio.run(scenario())

    assert flow.mode is CaptureMode.CLOSED
    assert photo.filename.startswith("captured_face_")
    assert photo.filename.endswith(".jpeg")
    assert photo.content[:2] == b"\xff\xd8"
    assert photo.content_type == "image/jpeg"
    assert captured == [photo]
    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]
    assert provider.sessions[0].released is True


def test_busy_device_shows_error_and_restores_backend():
    arbiter, control, _ = _arbiter(error=CameraError("device busy"))

    async def scenario():
        async with PhotoCaptureWorkflow(arbiter) as flow:
            assert await flow.take_photo() is None
            return flow.mode, flow.error_message

    mode, message = asyncio.run(scenario())

    assert mode is CaptureMode.ERROR
    assert message == DEVICE_BUSY_MESSAGE
    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]


def test_retry_after_error_can_succeed():
    arbiter, control, provider = _arbiter(error=CameraError("device busy"))

    async def scenario():
        flow = PhotoCaptureWorkflow(arbiter)
        await flow.start_live_preview()
        assert flow.mode is CaptureMode.ERROR
        provider.error = None
        await flow.retry()
        mode = flow.mode
        await flow.close()
        return mode

    assert asyncio.run(scenario()) is CaptureMode.LIVE
    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls.count(("close", SlotId.ENTRANCE)) == 2
    assert control.calls.count(("open", SlotId.ENTRANCE)) == 2


def test_missing_token_never_touches_device():
    arbiter, control, _ = _arbiter()

    async def scenario():
        async with PhotoCaptureWorkflow(arbiter, StaticTokenProvider("")) as flow:
            return flow.mode, flow.error_message

    assert asyncio.run(scenario()) == (CaptureMode.ERROR, AUTH_FAILED_MESSAGE)
    assert control.calls == []


def test_error_inside_workflow_still_restores_backend():
    arbiter, control, _ = _arbiter()

    async def scenario():
        async with PhotoCaptureWorkflow(arbiter):
            raise RuntimeError("upload failed")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls[-1] == ("open", SlotId.ENTRANCE)


def test_close_is_idempotent():
    arbiter, control, _ = _arbiter()

    async def scenario():
        flow = PhotoCaptureWorkflow(arbiter)
        await flow.start_live_preview()
        await flow.close()
        await flow.close()

    asyncio.run(scenario())

    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]


def test_second_workflow_cannot_take_a_held_device():
    arbiter, control, provider = _arbiter()

    async def scenario():
        first = PhotoCaptureWorkflow(arbiter)
        second = PhotoCaptureWorkflow(arbiter)
        await first.start_live_preview()
        await second.start_live_preview()
        assert second.mode is CaptureMode.ERROR
        assert second.error_message == DEVICE_BUSY_MESSAGE
        assert await second.take_photo() is None

        await second.close()
        assert arbiter.state is OwnershipState.LOCAL_OWNED
        assert control.calls == [("close", SlotId.ENTRANCE)]

        photo = await first.take_photo()
        await first.close()
        return photo

    photo = asyncio.run(scenario())

    assert photo is not None
    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]
    assert len(provider.sessions) == 1
    assert provider.sessions[0].released is True


def test_encode_jpeg_produces_jpeg_bytes():
    content = encode_jpeg(np.full((8, 8, 3), 127, dtype=np.uint8), quality=80)
    assert content.startswith(b"\xff\xd8")
    assert content.endswith(b"\xff\xd9")


def test_capture_backend_order_from_env(monkeypatch):
    monkeypatch.setenv("MONITOR_CAPTURE_BACKEND_ORDER", "v4l2, bogus, v4l2, any")
    names = [name for name, _ in capture_backends()]
    assert names == ["V4L2", "Auto"]
