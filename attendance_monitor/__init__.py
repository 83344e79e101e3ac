from .annotations import AnnotationChannel, map_box
from .arbiter import DeviceArbiter
from .log_sync import LogSynchronizer, derive_status
from .session import MonitorSession

__all__ = [
    "AnnotationChannel",
    "DeviceArbiter",
    "LogSynchronizer",
    "MonitorSession",
    "derive_status",
    "map_box",
]
