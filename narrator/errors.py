"""Exception types raised across the narration pipeline."""

SIGNAL_PERMISSION_DENIED = "permission-denied"
SIGNAL_POSITION_UNAVAILABLE = "position-unavailable"
SIGNAL_TIMEOUT = "timeout"


class NarratorError(Exception):
    """Base class for pipeline errors"""


class SignalError(NarratorError):
    """Position source failure (permission, availability or timeout)"""

    def __init__(self, kind: str, message: str = ""):
        self.kind = kind
        self.message = message or kind
        super().__init__(f"{kind}: {self.message}")


class MediaError(NarratorError):
    """Audio asset failed to load or play"""


class PlaybackAborted(NarratorError):
    """A pending play was interrupted by pause/stop; never user-visible"""


class PreloadFetchError(NarratorError):
    """A single asset could not be fetched or stored"""


class SyncError(NarratorError):
    """Batch upload of analytics events failed"""
