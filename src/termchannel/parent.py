"""Parent-side session: launch a child terminal and report progress to it."""

import contextlib
import logging
import sys
import threading
import uuid
from collections.abc import Iterator
from typing import BinaryIO
from typing import Literal

from termchannel.allocator import DEFAULT_PAIR_COUNT
from termchannel.allocator import DEFAULT_RANGE_START
from termchannel.child import build_child_args
from termchannel.devices import DeviceLayer
from termchannel.errors import ChannelUnavailableError
from termchannel.launcher import LaunchResult
from termchannel.launcher import MultiprocessingLauncher
from termchannel.launcher import ProcessLauncher
from termchannel.protocol import NO_CHANNEL
from termchannel.protocol import SHUTDOWN_SIGNAL
from termchannel.protocol import parse_startup_message
from termchannel.rendezvous import Rendezvous

DEFAULT_OPEN_TIMEOUT: float = 10.0
DEFAULT_CLAIM_TIMEOUT: float = 1.0
ChannelState = Literal["open", "closed"]

logger: logging.Logger = logging.getLogger(__name__)


class DisabledChannel:
    """Result of an ``open`` that could not establish a channel.

    Output addressed to it goes to the session's default output.
    """

    reason: str

    def __init__(self, reason: str) -> None:
        """Initialize a disabled result.

        :param reason: Human-readable cause.
        """
        self.reason = reason

    @property
    def is_open(self) -> bool:
        """Report whether the channel is usable.

        :returns: Always ``False``.
        """
        return False

    def require(self) -> "ChannelHandle":
        """Raise for callers that cannot work without a channel.

        :raises ChannelUnavailableError: Always.
        """
        raise ChannelUnavailableError(self.reason)

    def __repr__(self) -> str:
        return f"DisabledChannel(reason={self.reason!r})"


class ChannelHandle:
    """Live write side of an established channel."""

    write_id: int
    process: LaunchResult
    _state: ChannelState

    def __init__(self, write_id: int, process: LaunchResult) -> None:
        """Initialize an open handle.

        :param write_id: Claimed write id.
        :param process: Launched child session.
        """
        self.write_id = write_id
        self.process = process
        self._state = "open"

    @property
    def state(self) -> ChannelState:
        """Return the handle state.

        :returns: ``"open"`` or ``"closed"``.
        """
        return self._state

    @property
    def is_open(self) -> bool:
        """Report whether the channel is usable.

        :returns: ``True`` while open.
        """
        return self._state == "open"

    def require(self) -> "ChannelHandle":
        """Return this handle for callers that insist on a live channel.

        :returns: This handle.
        :raises ChannelUnavailableError: If the handle was closed.
        """
        if self.is_open is False:
            raise ChannelUnavailableError(f"Channel {self.write_id} is closed")
        return self

    def _mark_closed(self) -> None:
        self._state = "closed"

    def __repr__(self) -> str:
        return f"ChannelHandle(write_id={self.write_id}, state={self._state!r})"


OutputTarget = ChannelHandle | DisabledChannel | None


class ParentSession:
    """Own the default output and any channels opened to child terminals."""

    _devices: DeviceLayer
    _launcher: ProcessLauncher
    _default_output: BinaryIO
    _open_timeout: float
    _claim_timeout: float
    _range_start: int
    _pair_count: int
    _current_target: OutputTarget
    _switch_count: int
    _handles: list[ChannelHandle]
    _lock: threading.RLock

    def __init__(
        self,
        devices: DeviceLayer,
        launcher: ProcessLauncher | None = None,
        default_output: BinaryIO | None = None,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
        range_start: int = DEFAULT_RANGE_START,
        pair_count: int = DEFAULT_PAIR_COUNT,
    ) -> None:
        """Initialize a parent session.

        :param devices: Device layer shared with launched children.
        :param launcher: Process launcher, defaulting to multiprocessing spawn.
        :param default_output: Fallback output, defaulting to ``sys.stdout``.
        :param open_timeout: Seconds to wait for a child to publish its write id.
        :param claim_timeout: Seconds to wait when claiming the write id.
        :param range_start: First read id children probe.
        :param pair_count: Number of pairs children probe.
        """
        self._devices = devices
        if launcher is None:
            launcher = MultiprocessingLauncher()
        self._launcher = launcher
        if default_output is None:
            default_output = sys.stdout.buffer
        self._default_output = default_output
        self._open_timeout = open_timeout
        self._claim_timeout = claim_timeout
        self._range_start = range_start
        self._pair_count = pair_count
        self._current_target = None
        self._switch_count = 0
        self._handles = []
        self._lock = threading.RLock()

    @property
    def devices(self) -> DeviceLayer:
        """Return the device layer channels are opened on.

        :returns: Device layer.
        """
        return self._devices

    @property
    def current_target(self) -> OutputTarget:
        """Return the target ``write`` currently addresses.

        :returns: Handle, disabled result, or ``None`` for the default output.
        """
        with self._lock:
            return self._current_target

    @property
    def switch_count(self) -> int:
        """Return how many times the output target actually changed.

        :returns: Number of target switches.
        """
        with self._lock:
            return self._switch_count

    def open(
        self,
        x: int,
        y: int,
        rows: int,
        cols: int,
        output_path: str | None = None,
    ) -> ChannelHandle | DisabledChannel:
        """Launch a child terminal and establish a channel to it.

        Every failure yields a ``DisabledChannel`` rather than an exception.

        :param x: Terminal left position.
        :param y: Terminal top position.
        :param rows: Terminal height in rows.
        :param cols: Terminal width in columns.
        :param output_path: Optional file the child relays to instead of stdout.
        :returns: Live handle or disabled result.
        """
        self._release_exited()
        token: str = uuid.uuid4().hex
        args: list[str] = build_child_args(
            self._devices.address,
            token,
            x,
            y,
            rows,
            cols,
            range_start=self._range_start,
            pair_count=self._pair_count,
            output_path=output_path,
        )
        rendezvous: Rendezvous = Rendezvous()
        try:
            try:
                process: LaunchResult = self._launcher.launch(args, rendezvous.writer)
            except OSError as exc:
                return self._disabled(f"launch failed: {exc}")
            rendezvous.close_writer()
            message: object | None = rendezvous.wait_and_consume(self._open_timeout)
        finally:
            rendezvous.close()

        if message is None:
            if process.is_alive() is True:
                process.terminate()
            return self._disabled("child did not publish a write id")

        write_id: int = parse_startup_message(message, token)
        if write_id == NO_CHANNEL:
            # An exhausted child exits by itself; any other child still holds a pair.
            process.wait(timeout=self._claim_timeout)
            if process.is_alive() is True:
                process.terminate()
            return self._disabled("child did not publish a usable write id")

        claimed: bool = self._devices.open_for_write(write_id, timeout=self._claim_timeout)
        if claimed is False:
            process.terminate()
            return self._disabled(f"write id {write_id} could not be claimed")

        handle: ChannelHandle = ChannelHandle(write_id, process)
        with self._lock:
            self._handles.append(handle)
        logger.info("Channel established on write id %d (pid=%s)", write_id, process.pid)
        return handle

    def _disabled(self, reason: str) -> DisabledChannel:
        logger.info("Terminal channel unavailable (%s); output stays on the default device", reason)
        return DisabledChannel(reason)

    def select_output(self, target: OutputTarget) -> None:
        """Point ``write`` at ``target``.

        Switching is stateful and not free; batch writes per switch.

        :param target: Handle, disabled result, or ``None`` for the default output.
        """
        with self._lock:
            if target is self._current_target:
                return
            logger.debug("Output target %r -> %r", self._current_target, target)
            self._current_target = target
            self._switch_count += 1

    @contextlib.contextmanager
    def redirect(self, target: OutputTarget) -> Iterator[None]:
        """Select ``target`` for the duration of a block.

        :param target: Handle, disabled result, or ``None``.
        :yields: Control to the block.
        """
        with self._lock:
            previous: OutputTarget = self._current_target
        self.select_output(target)
        try:
            yield
        finally:
            self.select_output(previous)

    def write(self, data: bytes | str) -> None:
        """Write ``data`` to the current target.

        :param data: Bytes, or text encoded as UTF-8.
        """
        payload: bytes = _as_bytes(data)
        with self._lock:
            target: OutputTarget = self._current_target
            if isinstance(target, ChannelHandle) is True and self._is_live(target) is True:
                try:
                    self._devices.write(target.write_id, payload)
                    return
                except OSError as exc:
                    logger.warning("Channel %d failed (%s); treating it as shut down", target.write_id, exc)
                    self._release(target)
            self._default_output.write(payload)
            self._default_output.flush()

    def send(self, handle: OutputTarget, data: bytes | str) -> None:
        """Select ``handle`` and write ``data`` to it.

        :param handle: Handle, disabled result, or ``None``.
        :param data: Bytes, or text encoded as UTF-8.
        """
        with self._lock:
            self.select_output(handle)
            self.write(data)

    def close(self, handle: OutputTarget) -> None:
        """Send the shutdown signal on ``handle`` and release it.

        Disabled results and handles that are already closed are ignored.

        :param handle: Handle to close.
        """
        with self._lock:
            if isinstance(handle, ChannelHandle) is False or self.owns(handle) is False:
                logger.debug("Ignoring close of %r", handle)
                return
            if handle.process.is_alive() is False:
                logger.debug("Child behind channel %d already exited", handle.write_id)
                self._release(handle)
                return
            try:
                self._devices.write_one(handle.write_id, SHUTDOWN_SIGNAL)
            except OSError as exc:
                logger.debug("Shutdown signal on %d not delivered: %s", handle.write_id, exc)
            self._release(handle)

    def close_write_id(self, write_id: int) -> bool:
        """Close a channel identified only by its write id.

        Handles owned by this session are closed directly. Other ids are
        claimed without blocking and ignored when that fails.

        :param write_id: Write id published by a child session.
        :returns: ``True`` when the shutdown signal was written.
        """
        with self._lock:
            for handle in self._handles:
                if handle.write_id == write_id:
                    self.close(handle)
                    return True
        return close_channel(self._devices, write_id)

    def owns(self, handle: OutputTarget) -> bool:
        """Report whether ``handle`` is an open channel of this session.

        :param handle: Handle, disabled result, or ``None``.
        :returns: ``True`` for open handles returned by this session's ``open``.
        """
        with self._lock:
            return isinstance(handle, ChannelHandle) is True and handle.is_open is True and handle in self._handles

    def _is_live(self, handle: ChannelHandle) -> bool:
        """Check that ``handle`` is owned here and its child still runs.

        A handle whose child exited is released so a later child can claim
        the same pair without receiving stale output.

        :param handle: Channel handle.
        :returns: ``True`` when writes may go to the channel.
        """
        if self.owns(handle) is False:
            return False
        if handle.process.is_alive() is False:
            logger.warning("Child behind channel %d exited; treating it as shut down", handle.write_id)
            self._release(handle)
            return False
        return True

    def _release_exited(self) -> None:
        with self._lock:
            for handle in list(self._handles):
                if handle.process.is_alive() is False:
                    logger.info("Releasing channel %d; its child exited", handle.write_id)
                    self._release(handle)

    def _release(self, handle: ChannelHandle) -> None:
        self._devices.close(handle.write_id)
        handle._mark_closed()
        if self._current_target is handle:
            self._current_target = None
            self._switch_count += 1
        if handle in self._handles:
            self._handles.remove(handle)

    def close_all(self) -> None:
        """Close every channel this session still has open."""
        with self._lock:
            handles: list[ChannelHandle] = list(self._handles)
        for handle in handles:
            self.close(handle)

    def __enter__(self) -> "ParentSession":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close_all()


def close_channel(devices: DeviceLayer, write_id: int) -> bool:
    """Shut a channel down by write id.

    The write side is claimed without blocking. If it cannot be claimed the
    call does nothing.

    :param devices: Device layer.
    :param write_id: Write id published by a child session.
    :returns: ``True`` when the shutdown signal was written.
    """
    if write_id == NO_CHANNEL:
        return False
    claimed: bool = devices.open_for_write(write_id, timeout=0.0)
    if claimed is False:
        logger.debug("Write id %d is gone or owned elsewhere; nothing to close", write_id)
        return False
    try:
        devices.write_one(write_id, SHUTDOWN_SIGNAL)
    except OSError as exc:
        logger.debug("Shutdown signal on %d not delivered: %s", write_id, exc)
        return False
    finally:
        devices.close(write_id)
    return True


def _as_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str) is True:
        return data.encode("utf-8")
    return bytes(data)
