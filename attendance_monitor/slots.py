from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .arbiter import DeviceArbiter
from .capture import CaptureProvider
from .exceptions import ConfigurationMissing, MonitorError
from .models import CameraMapping, DiscoveredDevice, OwnershipState, SlotId

logger = logging.getLogger("attendance_monitor.slots")


@dataclass
class CameraSlot:
    slot_id: SlotId
    arbiter: DeviceArbiter = field(repr=False)
    source_key: str = ""

    @property
    def ownership(self) -> OwnershipState:
        return self.arbiter.state


class CameraSlotRegistry:
    """The entrance and exit slots and the backend's source mapping for them.

    Slots are created once and only ever reconfigured. Until the mapping has
    been fetched the registry is unconfigured, which callers render as a
    placeholder rather than an error.
    """

    def __init__(self, client, capture_provider: CaptureProvider, settle_delay_seconds: float = 1.0):
        self.client = client
        self.slots: dict[SlotId, CameraSlot] = {
            slot_id: CameraSlot(
                slot_id=slot_id,
                arbiter=DeviceArbiter(
                    slot_id,
                    device_control=client,
                    capture_provider=capture_provider,
                    settle_delay_seconds=settle_delay_seconds,
                ),
            )
            for slot_id in SlotId
        }
        self._mapping: CameraMapping | None = None

    @property
    def configured(self) -> bool:
        return self._mapping is not None

    @property
    def mapping(self) -> CameraMapping:
        if self._mapping is None:
            raise ConfigurationMissing("Camera mapping has not been loaded yet.")
        return self._mapping

    def __getitem__(self, slot_id: SlotId | str) -> CameraSlot:
        return self.slots[SlotId(slot_id)]

    async def load(self) -> bool:
        try:
            mapping = await self.client.get_camera_mapping()
        except MonitorError as exc:
            logger.error("Failed to fetch camera config: %s", exc)
            return False
        self._apply(mapping)
        return True

    async def reconfigure(self, slot_id: SlotId | str, source_key: str) -> CameraSlot:
        slot = SlotId(slot_id)
        new_mapping = self.mapping.with_source(slot, source_key)
        await self.client.set_camera_mapping(new_mapping)
        self._apply(new_mapping)
        logger.info("Camera '%s' now bound to source '%s'.", slot.value, source_key)
        return self.slots[slot]

    async def discover(self) -> list[DiscoveredDevice]:
        return await self.client.discover_devices()

    async def release_all(self) -> None:
        for slot in self.slots.values():
            await slot.arbiter.release()

    def _apply(self, mapping: CameraMapping) -> None:
        self._mapping = mapping
        for slot_id, slot in self.slots.items():
            slot.source_key = mapping.source_for(slot_id)
