"""Tests for the parent-side session routing and lifecycle."""

import io
import time
from collections.abc import Iterator

import pytest

from termchannel.child import build_child_args
from termchannel.errors import ChannelUnavailableError
from termchannel.launcher import LaunchResult
from termchannel.parent import ChannelHandle
from termchannel.parent import DisabledChannel
from termchannel.parent import ParentSession
from termchannel.parent import close_channel
from termchannel.protocol import parse_startup_message
from termchannel.rendezvous import Rendezvous
from tests.fixtures.memory_devices import FailingLauncher
from tests.fixtures.memory_devices import ForgedTokenLauncher
from tests.fixtures.memory_devices import MemoryDeviceLayer
from tests.fixtures.memory_devices import MemoryDeviceTable
from tests.fixtures.memory_devices import SilentLauncher
from tests.fixtures.memory_devices import ThreadLaunchResult
from tests.fixtures.memory_devices import ThreadLauncher


class Harness:
    """Parent session wired to in-memory children."""

    table: MemoryDeviceTable
    child_output: io.BytesIO
    default_output: io.BytesIO
    launcher: ThreadLauncher
    session: ParentSession

    def __init__(self, pair_count: int = 4) -> None:
        """Build the harness.

        :param pair_count: Number of pairs children probe.
        """
        self.table = MemoryDeviceTable()
        self.child_output = io.BytesIO()
        self.default_output = io.BytesIO()
        self.launcher = ThreadLauncher(self.table, self.child_output)
        self.session = ParentSession(
            MemoryDeviceLayer(self.table),
            launcher=self.launcher,
            default_output=self.default_output,
            open_timeout=5.0,
            range_start=224,
            pair_count=pair_count,
        )


@pytest.fixture()
def harness() -> Iterator[Harness]:
    """Provide a harness and close any channel a test leaves open.

    :yields: Harness instance.
    """
    created: Harness = Harness()
    yield created
    created.session.close_all()


def _open(harness: Harness) -> ChannelHandle:
    handle: ChannelHandle | DisabledChannel = harness.session.open(0, 0, 24, 80)
    assert isinstance(handle, ChannelHandle) is True
    return handle


def test_send_then_close_delivers_in_order_and_stops_child(harness: Harness) -> None:
    """Open, send "A", send "B", close: the child sees A then B and exits."""
    handle: ChannelHandle = _open(harness)
    assert handle.write_id == 225

    harness.session.send(handle, "A")
    harness.session.send(handle, b"B")
    harness.session.close(handle)

    assert handle.process.wait(timeout=5.0) == 0
    assert harness.child_output.getvalue() == b"AB"
    assert harness.default_output.getvalue() == b""
    assert handle.state == "closed"
    assert harness.session.current_target is None


def test_launch_args_carry_position_and_size(harness: Harness) -> None:
    """Geometry reaches the launcher in the child argument list."""
    handle: ChannelHandle = _open(harness)
    args: list[str] | None = harness.launcher.last_args
    assert args is not None
    geometry: dict[str, str] = {args[i]: args[i + 1] for i in range(0, len(args) - 1, 2)}
    assert geometry["--x"] == "0"
    assert geometry["--rows"] == "24"
    assert geometry["--cols"] == "80"
    harness.session.close(handle)


def test_close_twice_is_idempotent(harness: Harness) -> None:
    """A second close neither fails nor sends another signal."""
    handle: ChannelHandle = _open(harness)
    harness.session.close(handle)
    assert handle.process.wait(timeout=5.0) == 0

    harness.session.close(handle)
    assert handle.state == "closed"


def test_send_after_close_goes_to_default_output(harness: Harness) -> None:
    """A closed channel degrades to the default device."""
    handle: ChannelHandle = _open(harness)
    harness.session.close(handle)
    harness.session.send(handle, "late")
    assert harness.default_output.getvalue() == b"late"


def test_exhausted_range_returns_disabled_and_routes_to_default() -> None:
    """No free pair means a disabled result that behaves like the default device."""
    harness: Harness = Harness(pair_count=2)
    external: MemoryDeviceLayer = MemoryDeviceLayer(harness.table)
    for read_id in (224, 226):
        assert external.open_for_read(read_id) is True

    started: float = time.monotonic()
    result: ChannelHandle | DisabledChannel = harness.session.open(0, 0, 24, 80)
    elapsed: float = time.monotonic() - started

    assert isinstance(result, DisabledChannel) is True
    assert result.is_open is False
    assert elapsed < 5.0

    harness.session.send(result, "progress")
    harness.session.close(result)
    assert harness.default_output.getvalue() == b"progress"
    assert harness.child_output.getvalue() == b""
    with pytest.raises(ChannelUnavailableError):
        result.require()


def test_silent_child_times_out_and_is_terminated() -> None:
    """A child that never publishes is bounded by the open timeout."""
    launcher: SilentLauncher = SilentLauncher()
    session: ParentSession = ParentSession(
        MemoryDeviceLayer(MemoryDeviceTable()),
        launcher=launcher,
        default_output=io.BytesIO(),
        open_timeout=0.2,
    )
    try:
        started: float = time.monotonic()
        result: ChannelHandle | DisabledChannel = session.open(0, 0, 24, 80)
        elapsed: float = time.monotonic() - started

        assert isinstance(result, DisabledChannel) is True
        assert elapsed < 3.0
        launched: ThreadLaunchResult = launcher.launched[0]
        assert launched.terminated is True
    finally:
        launcher.release()


def test_foreign_token_is_not_trusted_and_child_is_stopped() -> None:
    """A write id published for another session is ignored and its child stopped."""
    launcher: ForgedTokenLauncher = ForgedTokenLauncher()
    session: ParentSession = ParentSession(
        MemoryDeviceLayer(MemoryDeviceTable()),
        launcher=launcher,
        default_output=io.BytesIO(),
        open_timeout=1.0,
        claim_timeout=0.1,
    )
    result: ChannelHandle | DisabledChannel = session.open(0, 0, 24, 80)

    assert isinstance(result, DisabledChannel) is True
    launched: ThreadLaunchResult = launcher.launched[0]
    assert launched.terminated is True
    assert launched.wait(timeout=5.0) == 0


def test_exhausted_child_is_left_to_exit_by_itself() -> None:
    """A child reporting no free pair is not killed."""
    harness: Harness = Harness(pair_count=1)
    external: MemoryDeviceLayer = MemoryDeviceLayer(harness.table)
    assert external.open_for_read(224) is True

    result: ChannelHandle | DisabledChannel = harness.session.open(0, 0, 24, 80)

    assert isinstance(result, DisabledChannel) is True
    assert harness.launcher.launched[0].terminated is False


def test_launch_failure_returns_disabled() -> None:
    """A launcher that cannot start the child degrades to the default device."""
    session: ParentSession = ParentSession(
        MemoryDeviceLayer(MemoryDeviceTable()),
        launcher=FailingLauncher(),
        default_output=io.BytesIO(),
    )
    result: ChannelHandle | DisabledChannel = session.open(0, 0, 24, 80)
    assert isinstance(result, DisabledChannel) is True
    assert "launch failed" in result.reason


def test_dead_child_is_treated_as_shutdown(harness: Harness) -> None:
    """A write failure closes the handle and falls back to the default output."""
    handle: ChannelHandle = _open(harness)
    pipe = harness.table.queues[handle.write_id - 1]
    harness.table.drop_reader(handle.write_id - 1)

    harness.session.send(handle, "lost")

    assert handle.state == "closed"
    assert harness.default_output.getvalue() == b"lost"
    assert harness.session.current_target is None
    pipe.put(b"\xff")
    handle.process.wait(timeout=5.0)


def test_target_switches_are_counted_once_per_change(harness: Harness) -> None:
    """Repeated sends to the same target do not count as switches."""
    handle: ChannelHandle = _open(harness)
    for _ in range(5):
        harness.session.send(handle, ".")
    assert harness.session.switch_count == 1

    harness.session.select_output(None)
    harness.session.write("local")
    assert harness.session.switch_count == 2
    assert harness.default_output.getvalue() == b"local"
    harness.session.close(handle)


def test_redirect_restores_previous_target(harness: Harness) -> None:
    """``redirect`` selects a target for one block only."""
    handle: ChannelHandle = _open(harness)
    with harness.session.redirect(handle):
        harness.session.write("in")
        assert harness.session.current_target is handle
    harness.session.write("out")
    assert harness.session.current_target is None
    assert harness.default_output.getvalue() == b"out"

    harness.session.close(handle)
    handle.process.wait(timeout=5.0)
    assert harness.child_output.getvalue() == b"in"


def test_close_write_id_closes_owned_handle(harness: Harness) -> None:
    """The integer surface closes a handle this session owns."""
    handle: ChannelHandle = _open(harness)
    assert harness.session.close_write_id(handle.write_id) is True
    assert handle.state == "closed"
    assert handle.process.wait(timeout=5.0) == 0
    assert harness.session.close_write_id(handle.write_id) is False
    assert harness.session.close_write_id(0) is False


def test_close_channel_by_id_signals_unowned_child(harness: Harness) -> None:
    """An id-based close claims the write side, signals, and releases it."""
    rendezvous: Rendezvous = Rendezvous()
    try:
        args: list[str] = build_child_args("memory", "by-id", 0, 0, 24, 80, range_start=224, pair_count=4)
        launched: LaunchResult = harness.launcher.launch(args, rendezvous.writer)
        rendezvous.close_writer()
        write_id: int = parse_startup_message(rendezvous.wait_and_consume(5.0), "by-id")
    finally:
        rendezvous.close()

    other: MemoryDeviceLayer = MemoryDeviceLayer(harness.table)
    assert close_channel(other, write_id) is True
    assert launched.wait(timeout=5.0) == 0
    assert close_channel(other, write_id) is False
    assert other.is_open(write_id) is False


def test_close_all_shuts_down_every_channel(harness: Harness) -> None:
    """Leaving the session context closes what it opened."""
    first: ChannelHandle = _open(harness)
    second: ChannelHandle = _open(harness)
    assert second.write_id == 227

    with harness.session:
        pass

    assert first.state == "closed"
    assert second.state == "closed"
    assert first.process.wait(timeout=5.0) == 0
    assert second.process.wait(timeout=5.0) == 0


def test_exited_child_frees_its_pair_for_the_next_open(harness: Harness) -> None:
    """A child that died unnoticed does not keep its pair or receive stale output."""
    stale: ChannelHandle = _open(harness)
    harness.table.inject(stale.write_id - 1, b"")
    assert stale.process.wait(timeout=5.0) == 0

    fresh: ChannelHandle = _open(harness)
    assert fresh.write_id == stale.write_id
    assert stale.state == "closed"

    harness.session.send(stale, "old")
    harness.session.send(fresh, "new")
    harness.session.close(fresh)

    assert fresh.process.wait(timeout=5.0) == 0
    assert harness.child_output.getvalue() == b"new"
    assert harness.default_output.getvalue() == b"old"


def test_send_to_exited_child_falls_back_without_writing(harness: Harness) -> None:
    """Writes addressed to a child that already exited go to the default output."""
    handle: ChannelHandle = _open(harness)
    harness.table.inject(handle.write_id - 1, b"")
    assert handle.process.wait(timeout=5.0) == 0

    harness.session.send(handle, "late")

    assert handle.state == "closed"
    assert harness.default_output.getvalue() == b"late"
    assert harness.table.claimed == set()


def test_handle_from_another_session_is_not_written(harness: Harness) -> None:
    """A session never writes through a channel it did not open."""
    handle: ChannelHandle = _open(harness)
    other_output: io.BytesIO = io.BytesIO()
    other: ParentSession = ParentSession(
        MemoryDeviceLayer(harness.table),
        launcher=harness.launcher,
        default_output=other_output,
    )

    assert other.owns(handle) is False
    other.send(handle, "elsewhere")
    other.close(handle)

    assert other_output.getvalue() == b"elsewhere"
    assert handle.state == "open"
    harness.session.close(handle)
    assert handle.process.wait(timeout=5.0) == 0
    assert harness.child_output.getvalue() == b""
