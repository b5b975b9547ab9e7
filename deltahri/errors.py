"""Exception types raised by the deltahri link and control layers."""


class DeltaHRIError(Exception):
    """Base class for all deltahri errors."""


class PortUnavailable(DeltaHRIError):
    """No matching microcontroller port could be opened."""


class LinkTimeout(DeltaHRIError):
    """A serial read or write did not complete in time."""


class WriteTimeout(LinkTimeout):
    """A command could not be written before the write timeout; it was dropped."""


class ReadTimeout(LinkTimeout):
    """No complete frame arrived before the read timeout."""


class MalformedPacket(DeltaHRIError):
    """A received frame could not be decoded."""

    def __init__(self, message: str, frame: bytes = b""):
        super().__init__(message)
        self.frame = frame


class HeartbeatMissed(DeltaHRIError):
    """The microcontroller heartbeat did not arrive within the watchdog period."""


class ProtocolDesync(DeltaHRIError):
    """A synchronous reply arrived with no command waiting for it."""


class Cancelled(DeltaHRIError):
    """Cooperative shutdown; not a fault."""
