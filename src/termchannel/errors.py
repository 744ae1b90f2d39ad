"""Custom error types for termchannel."""


class TermChannelError(Exception):
    """Base class for all termchannel errors."""


class NoFreeHandlesError(TermChannelError):
    """Raised when every handle pair in the allocation range is already claimed."""

    range_start: int
    range_end: int

    def __init__(self, range_start: int, range_end: int) -> None:
        """Initialize an exhaustion error.

        :param range_start: First read id that was probed.
        :param range_end: Last read id that was probed.
        """
        self.range_start = range_start
        self.range_end = range_end
        super().__init__(f"No free handle pair in read id range {range_start}..{range_end}")


class ChannelUnavailableError(TermChannelError):
    """Raised when a caller insists on a channel that could not be established."""


class DeviceNotOpenError(TermChannelError):
    """Raised for I/O on a device id the device layer has not opened."""


class RendezvousError(TermChannelError):
    """Raised when a single-use rendezvous is published more than once."""
