"""Child-side session: claim a handle pair, publish it, relay until shutdown."""

import argparse
import logging
import sys
from multiprocessing.connection import Connection
from typing import BinaryIO

from termchannel.allocator import DEFAULT_PAIR_COUNT
from termchannel.allocator import DEFAULT_RANGE_START
from termchannel.allocator import HandlePair
from termchannel.allocator import allocate_handle_pair
from termchannel.allocator import pair_range
from termchannel.devices import DeviceLayer
from termchannel.devices import FifoDeviceLayer
from termchannel.errors import NoFreeHandlesError
from termchannel.protocol import NO_CHANNEL
from termchannel.protocol import SHUTDOWN_SIGNAL
from termchannel.protocol import build_startup_message
from termchannel.rendezvous import publish_on

logger: logging.Logger = logging.getLogger(__name__)


class ChildSession:
    """Run inside the spawned process and mirror channel bytes to ``output``."""

    _devices: DeviceLayer
    _rendezvous_writer: Connection
    _token: str
    _output: BinaryIO
    _range_start: int
    _pair_count: int
    _pair: HandlePair | None

    def __init__(
        self,
        devices: DeviceLayer,
        rendezvous_writer: Connection,
        token: str,
        output: BinaryIO,
        range_start: int = DEFAULT_RANGE_START,
        pair_count: int = DEFAULT_PAIR_COUNT,
    ) -> None:
        """Initialize a child session.

        :param devices: Device layer the handle pair is claimed from.
        :param rendezvous_writer: Endpoint used to publish the write id once.
        :param token: Session token echoed back to the parent.
        :param output: This session's default output device.
        :param range_start: First read id to probe.
        :param pair_count: Number of pairs to probe.
        """
        self._devices = devices
        self._rendezvous_writer = rendezvous_writer
        self._token = token
        self._output = output
        self._range_start = range_start
        self._pair_count = pair_count
        self._pair = None

    @property
    def pair(self) -> HandlePair | None:
        """Return the claimed pair while the session holds one.

        :returns: Claimed pair or ``None``.
        """
        return self._pair

    def run(self) -> int:
        """Allocate, publish, and relay until the shutdown signal arrives.

        Allocation failure is reported to the parent as ``NO_CHANNEL`` and
        never raised.

        :returns: Number of bytes relayed to the default output.
        """
        range_start, range_end = pair_range(self._range_start, self._pair_count)
        try:
            pair: HandlePair = allocate_handle_pair(self._devices, range_start, range_end)
        except NoFreeHandlesError as exc:
            logger.info("%s; reporting no channel", exc)
            publish_on(self._rendezvous_writer, build_startup_message(self._token, NO_CHANNEL))
            return 0

        self._pair = pair
        try:
            published: bool = publish_on(self._rendezvous_writer, build_startup_message(self._token, pair.write_id))
            if published is False:
                # Nobody learned the write id, so no shutdown signal can arrive.
                return 0
            return self._relay(pair)
        finally:
            self._devices.close(pair.read_id)
            self._pair = None

    def _relay(self, pair: HandlePair) -> int:
        relayed: int = 0
        while True:
            try:
                unit: bytes = self._devices.read_one(pair.read_id)
            except OSError as exc:
                logger.warning("Read failed on device %d: %s", pair.read_id, exc)
                break

            if unit == b"":
                logger.warning("Device %d reached end of stream", pair.read_id)
                break
            if unit == SHUTDOWN_SIGNAL:
                logger.debug("Shutdown signal received on device %d", pair.read_id)
                break

            self._output.write(unit)
            self._output.flush()
            relayed += 1
        return relayed


def build_child_args(
    device_root: str,
    token: str,
    x: int,
    y: int,
    rows: int,
    cols: int,
    range_start: int = DEFAULT_RANGE_START,
    pair_count: int = DEFAULT_PAIR_COUNT,
    output_path: str | None = None,
) -> list[str]:
    """Encode launch parameters as a child argument list.

    :param device_root: Directory of the FIFO device layer.
    :param token: Session token.
    :param x: Terminal left position in pixels.
    :param y: Terminal top position in pixels.
    :param rows: Terminal height in rows.
    :param cols: Terminal width in columns.
    :param range_start: First read id to probe.
    :param pair_count: Number of pairs to probe.
    :param output_path: Optional file that replaces stdout as default output.
    :returns: Argument list understood by ``parse_child_args``.
    """
    args: list[str] = [
        "--device-root",
        device_root,
        "--token",
        token,
        "--x",
        str(x),
        "--y",
        str(y),
        "--rows",
        str(rows),
        "--cols",
        str(cols),
        "--range-start",
        str(range_start),
        "--pair-count",
        str(pair_count),
    ]
    if output_path is not None:
        args.extend(["--output", output_path])
    return args


def parse_child_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse child arguments.

    :param argv: Argument list, defaulting to ``sys.argv[1:]``.
    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="python -m termchannel",
        description="Relay bytes from a claimed handle pair to this terminal until shutdown.",
    )
    parser.add_argument("--device-root", required=True, help="Directory of the FIFO device layer.")
    parser.add_argument("--token", required=True, help="Session token echoed to the parent.")
    parser.add_argument("--x", type=int, default=0, help="Terminal left position.")
    parser.add_argument("--y", type=int, default=0, help="Terminal top position.")
    parser.add_argument("--rows", type=int, default=24, help="Terminal height in rows.")
    parser.add_argument("--cols", type=int, default=80, help="Terminal width in columns.")
    parser.add_argument("--range-start", type=int, default=DEFAULT_RANGE_START, help="First read id to probe.")
    parser.add_argument("--pair-count", type=int, default=DEFAULT_PAIR_COUNT, help="Number of pairs to probe.")
    parser.add_argument("--output", default=None, help="Append relayed bytes here instead of stdout.")
    parser.add_argument("--rendezvous-fd", type=int, default=None, help="Inherited rendezvous descriptor.")
    parser.add_argument("--log-level", default="WARNING", help="Logging level for stderr.")
    return parser.parse_args(argv)


def _run_session(args: argparse.Namespace, rendezvous_writer: Connection) -> int:
    """Run one child session from parsed arguments.

    :param args: Parsed child arguments.
    :param rendezvous_writer: Endpoint used to publish the write id.
    :returns: Number of bytes relayed.
    """
    logger.debug(
        "Child session at (%d, %d) size %dx%d",
        args.x,
        args.y,
        args.rows,
        args.cols,
    )
    devices: FifoDeviceLayer = FifoDeviceLayer(args.device_root)
    output_path: str | None = args.output
    if output_path is None:
        session = ChildSession(
            devices,
            rendezvous_writer,
            args.token,
            sys.stdout.buffer,
            range_start=args.range_start,
            pair_count=args.pair_count,
        )
        return session.run()

    with open(output_path, "ab") as output:
        session = ChildSession(
            devices,
            rendezvous_writer,
            args.token,
            output,
            range_start=args.range_start,
            pair_count=args.pair_count,
        )
        return session.run()


def child_entry(argv: list[str], rendezvous_writer: Connection) -> None:
    """Run a child session as a multiprocessing target.

    :param argv: Argument list built by ``build_child_args``.
    :param rendezvous_writer: Endpoint inherited from the parent.
    """
    args: argparse.Namespace = parse_child_args(argv)
    _run_session(args, rendezvous_writer)


def main(argv: list[str] | None = None) -> int:
    """Run a child session from the command line.

    :param argv: Argument list, defaulting to ``sys.argv[1:]``.
    :returns: Process exit code.
    """
    args: argparse.Namespace = parse_child_args(argv)
    logging.basicConfig(level=args.log_level.upper(), stream=sys.stderr)
    rendezvous_fd: int | None = args.rendezvous_fd
    if rendezvous_fd is None:
        logger.error("--rendezvous-fd is required when running from the command line")
        return 2

    rendezvous_writer: Connection = Connection(rendezvous_fd, readable=False)
    _run_session(args, rendezvous_writer)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

