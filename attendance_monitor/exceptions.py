class MonitorError(Exception):
    """Base exception for the attendance monitor."""


class CameraError(MonitorError):
    """Raised when local webcam access fails."""


class MissingCredentials(MonitorError):
    """Raised when no bearer token can be obtained for a backend call."""


class BackendError(MonitorError):
    """Raised when a backend request fails or returns a non-success status."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class AcquisitionDenied(MonitorError):
    """Raised when the local device could not be opened after the remote owner released it."""


class AlreadyOwned(MonitorError):
    """Raised when a local acquire is requested while the device is not remote-owned."""


class ChannelDisconnected(MonitorError):
    """Raised when the live annotation feed drops."""


class PollFailure(MonitorError):
    """Raised when an incremental log fetch fails."""


class StaleResponseDiscarded(MonitorError):
    """Raised when a response belongs to a selection that is no longer active."""


class ConfigurationMissing(MonitorError):
    """Raised when no camera mapping has been loaded yet."""
