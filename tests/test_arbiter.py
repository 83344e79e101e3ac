import asyncio
import itertools

import pytest

from attendance_monitor.arbiter import DeviceArbiter
from attendance_monitor.exceptions import AcquisitionDenied, AlreadyOwned, CameraError
from attendance_monitor.models import OwnershipState, SlotId

from fakes import FakeCaptureProvider, FakeDeviceControl, PhysicalCamera, wait_for


def _build(settle=0.0, error=None, release_probe=None, open_delay=0.0):
    camera = PhysicalCamera()
    control = FakeDeviceControl(camera)
    provider = FakeCaptureProvider(camera, error=error, delay_seconds=open_delay)
    provider.control = control
    arbiter = DeviceArbiter(
        SlotId.ENTRANCE,
        device_control=control,
        capture_provider=provider,
        settle_delay_seconds=settle,
        release_probe=release_probe,
    )
    transitions = []
    arbiter.add_listener(lambda slot, old, new: transitions.append((old, new)))
    return arbiter, control, provider, camera, transitions


def test_acquire_then_release_hands_device_back():
    arbiter, control, provider, camera, transitions = _build()

    async def scenario():
        session = await arbiter.acquire()
        assert arbiter.state is OwnershipState.LOCAL_OWNED
        assert arbiter.session is session
        await arbiter.release()
        return session

    session = asyncio.run(scenario())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert session.released is True
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]
    assert transitions == [
        (OwnershipState.REMOTE_OWNED, OwnershipState.RELEASING),
        (OwnershipState.RELEASING, OwnershipState.LOCAL_OWNED),
        (OwnershipState.LOCAL_OWNED, OwnershipState.RESTORING),
        (OwnershipState.RESTORING, OwnershipState.REMOTE_OWNED),
    ]
    assert camera.violations == []


def test_local_open_failure_restores_backend_once():
    arbiter, control, provider, camera, transitions = _build(error=PermissionError("device busy"))

    with pytest.raises(AcquisitionDenied):
        asyncio.run(arbiter.acquire())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls.count(("open", SlotId.ENTRANCE)) == 1
    assert transitions == [
        (OwnershipState.REMOTE_OWNED, OwnershipState.RELEASING),
        (OwnershipState.RELEASING, OwnershipState.RESTORING),
        (OwnershipState.RESTORING, OwnershipState.REMOTE_OWNED),
    ]


def test_camera_error_is_reported_as_denied():
    arbiter, control, *_ = _build(error=CameraError("no frames"))

    with pytest.raises(AcquisitionDenied) as excinfo:
        asyncio.run(arbiter.acquire())

    assert isinstance(excinfo.value.__cause__, CameraError)
    assert control.calls[-1] == ("open", SlotId.ENTRANCE)


def test_local_open_waits_for_remote_release_and_settle_delay():
    arbiter, control, provider, *_ = _build(settle=0.05)

    async def scenario():
        loop = asyncio.get_running_loop()
        started = loop.time()
        await arbiter.acquire()
        elapsed = loop.time() - started
        await arbiter.release()
        return elapsed

    elapsed = asyncio.run(scenario())

    assert elapsed >= 0.05
    assert provider.control_calls_at_open == [[("close", SlotId.ENTRANCE)]]


def test_second_acquire_while_releasing_is_rejected():
    arbiter, control, *_ = _build(settle=0.05)

    async def scenario():
        first = asyncio.create_task(arbiter.acquire())
        await wait_for(lambda: arbiter.state is OwnershipState.RELEASING)
        with pytest.raises(AlreadyOwned):
            await arbiter.acquire()
        assert arbiter.state is OwnershipState.RELEASING
        await first
        with pytest.raises(AlreadyOwned):
            await arbiter.acquire()
        await arbiter.release()

    asyncio.run(scenario())

    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]


def test_cancelled_acquire_still_restores_backend():
    arbiter, control, provider, *_ = _build(settle=5.0)

    async def scenario():
        task = asyncio.create_task(arbiter.acquire())
        await wait_for(lambda: arbiter.state is OwnershipState.RELEASING)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]
    assert provider.sessions == []


def test_release_during_releasing_aborts_acquire():
    arbiter, control, provider, *_ = _build(settle=5.0)

    async def scenario():
        task = asyncio.create_task(arbiter.acquire())
        await wait_for(lambda: arbiter.state is OwnershipState.RELEASING)
        await arbiter.release()
        assert task.cancelled()

    asyncio.run(scenario())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]


def test_release_during_slow_local_open_waits_before_reopening_backend():
    arbiter, control, provider, camera, _ = _build(open_delay=0.3)

    async def scenario():
        task = asyncio.create_task(arbiter.acquire())
        await wait_for(lambda: provider.control_calls_at_open)
        await asyncio.sleep(0.1)
        await arbiter.release()
        assert task.cancelled()

    asyncio.run(scenario())

    assert camera.violations == []
    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]
    assert len(provider.sessions) == 1
    assert provider.sessions[0].released is True
    assert camera.local_active is False
    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert arbiter.session is None


def test_release_is_idempotent():
    arbiter, control, *_ = _build()

    async def scenario():
        await arbiter.release()
        await arbiter.acquire()
        await arbiter.release()
        await arbiter.release()

    asyncio.run(scenario())

    assert control.calls == [("close", SlotId.ENTRANCE), ("open", SlotId.ENTRANCE)]


def test_local_capture_context_releases_on_error():
    arbiter, control, provider, *_ = _build()

    async def scenario():
        async with arbiter.local_capture() as session:
            assert arbiter.state is OwnershipState.LOCAL_OWNED
            session.frame()
            raise RuntimeError("processing failed")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())

    assert arbiter.state is OwnershipState.REMOTE_OWNED
    assert provider.sessions[0].released is True
    assert control.calls[-1] == ("open", SlotId.ENTRANCE)


def test_unacknowledged_release_still_proceeds():
    camera = PhysicalCamera()
    control = FakeDeviceControl(camera, acknowledge=False)
    provider = FakeCaptureProvider(camera)
    arbiter = DeviceArbiter(SlotId.EXIT, control, provider, settle_delay_seconds=0.0)

    async def scenario():
        await arbiter.acquire()
        assert arbiter.state is OwnershipState.LOCAL_OWNED
        await arbiter.release()

    asyncio.run(scenario())

    assert control.calls == [("close", SlotId.EXIT), ("open", SlotId.EXIT)]


def test_release_probe_shortens_the_wait():
    probes = []

    async def probe(slot_id):
        probes.append(slot_id)
        return len(probes) >= 2

    arbiter, *_ = _build(settle=5.0, release_probe=probe)

    async def scenario():
        await asyncio.wait_for(arbiter.acquire(), timeout=1.0)
        await arbiter.release()

    asyncio.run(scenario())

    assert probes == [SlotId.ENTRANCE, SlotId.ENTRANCE]


def test_remote_and_local_never_hold_device_together():
    for steps in itertools.product(("acquire", "release", "fail"), repeat=4):
        arbiter, control, provider, camera, _ = _build()

        async def scenario():
            for step in steps:
                provider.error = CameraError("busy") if step == "fail" else None
                if step == "release":
                    await arbiter.release()
                    continue
                try:
                    await arbiter.acquire()
                except (AcquisitionDenied, AlreadyOwned):
                    pass
                assert arbiter.state in (OwnershipState.REMOTE_OWNED, OwnershipState.LOCAL_OWNED)
            await arbiter.release()

        asyncio.run(scenario())

        assert camera.violations == [], steps
        assert arbiter.state is OwnershipState.REMOTE_OWNED
        assert camera.remote_active and not camera.local_active
