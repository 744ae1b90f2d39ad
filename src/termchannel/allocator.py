"""Handle-pair allocation over a bounded range of device ids."""

import logging

from termchannel.devices import DeviceLayer
from termchannel.errors import NoFreeHandlesError

DEFAULT_RANGE_START: int = 224
DEFAULT_PAIR_COUNT: int = 16
PAIR_STEP: int = 2

logger: logging.Logger = logging.getLogger(__name__)


class HandlePair:
    """Read and write ids of one duplex channel."""

    read_id: int
    write_id: int

    def __init__(self, read_id: int) -> None:
        """Initialize a pair from its read id.

        :param read_id: Even read-side id. The write id is the next odd id.
        """
        self.read_id = read_id
        self.write_id = read_id + 1

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HandlePair) is False:
            return NotImplemented
        return self.read_id == other.read_id

    def __hash__(self) -> int:
        return hash(self.read_id)

    def __repr__(self) -> str:
        return f"HandlePair(read_id={self.read_id}, write_id={self.write_id})"


def pair_range(range_start: int = DEFAULT_RANGE_START, pair_count: int = DEFAULT_PAIR_COUNT) -> tuple[int, int]:
    """Translate a pair count into an inclusive read id range.

    :param range_start: First read id.
    :param pair_count: Number of pairs to cover.
    :returns: Tuple of ``(range_start, range_end)``.
    :raises ValueError: If ``pair_count`` is smaller than ``1``.
    """
    if pair_count < 1:
        raise ValueError("pair_count must be >= 1")
    range_end: int = range_start + (pair_count - 1) * PAIR_STEP
    return range_start, range_end


def allocate_handle_pair(
    devices: DeviceLayer,
    range_start: int,
    range_end: int,
    step: int = PAIR_STEP,
) -> HandlePair:
    """Claim the first free handle pair in ``range_start..range_end``.

    On success the read side is left open and owned by the caller.

    :param devices: Device layer used for non-blocking probes.
    :param range_start: First candidate read id.
    :param range_end: Last candidate read id, inclusive.
    :param step: Distance between candidate read ids.
    :returns: Claimed handle pair.
    :raises ValueError: If the range would break the even/odd pairing.
    :raises NoFreeHandlesError: If every candidate is already claimed.
    """
    if step < 1 or step % 2 != 0:
        raise ValueError("step must be a positive even number")
    if range_start % 2 != 0:
        raise ValueError("range_start must be an even read id")

    for candidate in range(range_start, range_end + 1, step):
        opened: bool = devices.open_for_read(candidate, timeout=0.0)
        if opened is True:
            pair: HandlePair = HandlePair(candidate)
            logger.debug("Claimed %r", pair)
            return pair

    raise NoFreeHandlesError(range_start, range_end)
