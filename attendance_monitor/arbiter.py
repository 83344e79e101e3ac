"""Exclusive ownership of one physical camera between the backend and a local capture.

The backend streaming process and a local capture session cannot both hold the
device. ``DeviceArbiter`` walks a per-device state machine::

    RemoteOwned -> Releasing -> LocalOwned -> Restoring -> RemoteOwned
                   Releasing -> Restoring -> RemoteOwned   (local open failed)

and guarantees that every local session, however it ends, hands the device
back to the backend.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Protocol

from .capture import CaptureProvider, CaptureSession
from .exceptions import AcquisitionDenied, AlreadyOwned
from .models import OwnershipState, SlotId

logger = logging.getLogger("attendance_monitor.arbiter")

# Lets the OS drop the device handle before a second process opens it.
DEFAULT_SETTLE_DELAY_SECONDS = 1.0
_PROBE_INTERVAL_SECONDS = 0.1

TransitionListener = Callable[[SlotId, OwnershipState, OwnershipState], None]
ReleaseProbe = Callable[[SlotId], Awaitable[bool]]


class DeviceControl(Protocol):
    async def open_camera(self, slot_id: SlotId) -> bool: ...

    async def close_camera(self, slot_id: SlotId) -> bool: ...


class DeviceArbiter:
    def __init__(
        self,
        slot_id: SlotId,
        device_control: DeviceControl,
        capture_provider: CaptureProvider,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
        release_probe: ReleaseProbe | None = None,
    ):
        self.slot_id = SlotId(slot_id)
        self._device_control = device_control
        self._capture_provider = capture_provider
        self._settle_delay = max(0.0, float(settle_delay_seconds))
        self._release_probe = release_probe
        self._state = OwnershipState.REMOTE_OWNED
        self._session: CaptureSession | None = None
        self._acquire_task: asyncio.Task | None = None
        self._restore_task: asyncio.Task | None = None
        self._listeners: list[TransitionListener] = []

    @property
    def state(self) -> OwnershipState:
        return self._state

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: OwnershipState) -> None:
        previous = self._state
        self._state = new_state
        logger.info("Camera '%s': %s -> %s", self.slot_id.value, previous.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(self.slot_id, previous, new_state)
            except Exception:
                logger.exception("Ownership listener failed for camera '%s'", self.slot_id.value)

    async def acquire(self) -> CaptureSession:
        """Take the device away from the backend and open it locally.

        Raises ``AlreadyOwned`` without touching state when the device is not
        resting with the backend, and ``AcquisitionDenied`` after restoring the
        backend when the local open fails.
        """
        if self._state is not OwnershipState.REMOTE_OWNED:
            raise AlreadyOwned(f"Camera '{self.slot_id.value}' is {self._state.value}; local acquire rejected.")

        self._transition(OwnershipState.RELEASING)
        self._acquire_task = asyncio.current_task()
        opening: asyncio.Future | None = None
        try:
            acknowledged = await self._device_control.close_camera(self.slot_id)
            if not acknowledged:
                # Release is not verified; the settle delay is all we have.
                logger.warning("Backend did not acknowledge release of '%s'; continuing.", self.slot_id.value)
            await self._wait_for_release()
            opening = asyncio.ensure_future(asyncio.to_thread(self._capture_provider.acquire_local_capture))
            session = await asyncio.shield(opening)
        except asyncio.CancelledError:
            logger.info("Local acquire of '%s' cancelled; restoring backend.", self.slot_id.value)
            await self._restore(None, pending=opening)
            raise
        except Exception as exc:
            logger.warning("Local open of camera '%s' failed: %s", self.slot_id.value, exc)
            await self._restore(None)
            raise AcquisitionDenied(f"Camera '{self.slot_id.value}' could not be opened locally: {exc}") from exc
        finally:
            self._acquire_task = None

        self._session = session
        self._transition(OwnershipState.LOCAL_OWNED)
        return session

    async def release(self) -> None:
        """End the local session, if any, and hand the device back. Idempotent."""
        task = self._acquire_task
        if self._state is OwnershipState.RELEASING and task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
            return
        if self._state is not OwnershipState.LOCAL_OWNED:
            return
        session, self._session = self._session, None
        await self._restore(session)

    @asynccontextmanager
    async def local_capture(self) -> AsyncIterator[CaptureSession]:
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release()

    async def _wait_for_release(self) -> None:
        if self._release_probe is None:
            await asyncio.sleep(self._settle_delay)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settle_delay
        while not await self._release_probe(self.slot_id):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(_PROBE_INTERVAL_SECONDS, remaining))

    async def _restore(self, session: CaptureSession | None, pending: asyncio.Future | None = None) -> None:
        # Shielded so a cancelled caller never strands the device in local ownership.
        self._restore_task = asyncio.ensure_future(self._run_restore(session, pending))
        await asyncio.shield(self._restore_task)

    async def _run_restore(self, session: CaptureSession | None, pending: asyncio.Future | None = None) -> None:
        self._transition(OwnershipState.RESTORING)
        try:
            if pending is not None:
                # The backend may only reopen once a local open still running in its thread has ended.
                await asyncio.wait({pending})
                if not pending.cancelled() and pending.exception() is None:
                    session = pending.result()
            if session is not None:
                try:
                    await asyncio.to_thread(session.release)
                except Exception as exc:
                    logger.warning("Releasing local capture of '%s' failed: %s", self.slot_id.value, exc)
            try:
                await self._device_control.open_camera(self.slot_id)
            except Exception as exc:
                logger.warning("Re-opening backend camera '%s' failed: %s", self.slot_id.value, exc)
        finally:
            self._transition(OwnershipState.REMOTE_OWNED)

