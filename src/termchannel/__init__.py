"""Public package API for termchannel."""

from termchannel.allocator import HandlePair
from termchannel.allocator import allocate_handle_pair
from termchannel.api import close_terminal
from termchannel.api import open_terminal
from termchannel.api import send_to_terminal
from termchannel.child import ChildSession
from termchannel.devices import DeviceLayer
from termchannel.devices import FifoDeviceLayer
from termchannel.errors import ChannelUnavailableError
from termchannel.errors import DeviceNotOpenError
from termchannel.errors import NoFreeHandlesError
from termchannel.errors import RendezvousError
from termchannel.errors import TermChannelError
from termchannel.launcher import MultiprocessingLauncher
from termchannel.launcher import TerminalLauncher
from termchannel.parent import ChannelHandle
from termchannel.parent import DisabledChannel
from termchannel.parent import ParentSession
from termchannel.parent import close_channel
from termchannel.protocol import NO_CHANNEL
from termchannel.protocol import SHUTDOWN_SIGNAL
from termchannel.rendezvous import Rendezvous

__all__: list[str] = [
    "close_terminal",
    "open_terminal",
    "send_to_terminal",
    "allocate_handle_pair",
    "close_channel",
    "ChannelHandle",
    "ChildSession",
    "DeviceLayer",
    "DisabledChannel",
    "FifoDeviceLayer",
    "HandlePair",
    "MultiprocessingLauncher",
    "ParentSession",
    "Rendezvous",
    "TerminalLauncher",
    "NO_CHANNEL",
    "SHUTDOWN_SIGNAL",
    "ChannelUnavailableError",
    "DeviceNotOpenError",
    "NoFreeHandlesError",
    "RendezvousError",
    "TermChannelError",
]
