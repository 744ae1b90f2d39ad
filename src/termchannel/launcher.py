"""Process launchers that start a child session and hand it the rendezvous."""

import logging
import multiprocessing
import subprocess
import sys
from collections.abc import Callable
from multiprocessing.connection import Connection

from termchannel.child import child_entry

DEFAULT_TERMINAL: str = "xterm"

logger: logging.Logger = logging.getLogger(__name__)


class LaunchResult:
    """Uniform view of a launched child, whatever started it."""

    pid: int | None

    def is_alive(self) -> bool:
        """Report whether the child is still running.

        :returns: ``True`` while the child runs.
        """
        raise NotImplementedError

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the child to exit.

        :param timeout: Maximum number of seconds to wait.
        :returns: Exit code, or ``None`` if it is still running.
        """
        raise NotImplementedError

    def terminate(self) -> None:
        """Stop the child forcibly."""
        raise NotImplementedError


class ProcessLaunchResult(LaunchResult):
    """Launch result wrapping a ``multiprocessing.Process``."""

    _process: multiprocessing.process.BaseProcess

    def __init__(self, process: multiprocessing.process.BaseProcess) -> None:
        """Wrap a started process.

        :param process: Started process.
        """
        self._process = process
        self.pid = process.pid

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def wait(self, timeout: float | None = None) -> int | None:
        self._process.join(timeout=timeout)
        return self._process.exitcode

    def terminate(self) -> None:
        if self._process.is_alive() is True:
            self._process.terminate()
            self._process.join(timeout=2.0)


class PopenLaunchResult(LaunchResult):
    """Launch result wrapping a ``subprocess.Popen``."""

    _popen: subprocess.Popen

    def __init__(self, popen: subprocess.Popen) -> None:
        """Wrap a started subprocess.

        :param popen: Started subprocess.
        """
        self._popen = popen
        self.pid = popen.pid

    def is_alive(self) -> bool:
        return self._popen.poll() is None

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        if self._popen.poll() is None:
            self._popen.terminate()
            try:
                self._popen.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                self._popen.kill()


class ProcessLauncher:
    """Start a child session with encoded launch arguments."""

    def launch(self, args: list[str], rendezvous_writer: Connection) -> LaunchResult:
        """Start a child session.

        :param args: Child arguments from ``build_child_args``.
        :param rendezvous_writer: Endpoint the child publishes its write id on.
        :returns: Handle on the started child.
        """
        raise NotImplementedError


class MultiprocessingLauncher(ProcessLauncher):
    """Run the child session in a fresh interpreter via ``multiprocessing``.

    The child shares the parent's terminal, so position and size are carried
    through but not applied.
    """

    _context_name: str

    def __init__(self, context_name: str = "spawn") -> None:
        """Initialize the launcher.

        :param context_name: Multiprocessing start method.
        """
        self._context_name = context_name

    def launch(self, args: list[str], rendezvous_writer: Connection) -> LaunchResult:
        context = multiprocessing.get_context(self._context_name)
        process = context.Process(
            target=child_entry,
            args=(list(args), rendezvous_writer),
        )
        process.daemon = True
        process.start()
        logger.info("Launched child session pid=%s", process.pid)
        return ProcessLaunchResult(process)


class TerminalLauncher(ProcessLauncher):
    """Open the child session in its own terminal emulator window."""

    _terminal: str
    _python: str
    _popen: Callable[..., subprocess.Popen]

    def __init__(
        self,
        terminal: str = DEFAULT_TERMINAL,
        python: str | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        """Initialize the launcher.

        :param terminal: Terminal emulator accepting ``-geometry`` and ``-e``.
        :param python: Interpreter used inside the terminal.
        :param popen: Process factory, replaceable in tests.
        """
        self._terminal = terminal
        if python is None:
            python = sys.executable
        self._python = python
        self._popen = popen

    def build_command(self, args: list[str], rendezvous_fd: int) -> list[str]:
        """Build the terminal command line for one child session.

        :param args: Child arguments from ``build_child_args``.
        :param rendezvous_fd: Descriptor the child inherits for the rendezvous.
        :returns: Full command line.
        """
        geometry: str = _geometry_from_args(args)
        command: list[str] = [
            self._terminal,
            "-geometry",
            geometry,
            "-e",
            self._python,
            "-m",
            "termchannel",
        ]
        command.extend(args)
        command.extend(["--rendezvous-fd", str(rendezvous_fd)])
        return command

    def launch(self, args: list[str], rendezvous_writer: Connection) -> LaunchResult:
        rendezvous_fd: int = rendezvous_writer.fileno()
        command: list[str] = self.build_command(args, rendezvous_fd)
        popen: subprocess.Popen = self._popen(command, pass_fds=(rendezvous_fd,))
        logger.info("Launched %s child session pid=%s", self._terminal, popen.pid)
        return PopenLaunchResult(popen)


def _geometry_from_args(args: list[str]) -> str:
    """Render X11 geometry ``COLSxROWS+X+Y`` from child arguments.

    :param args: Child arguments from ``build_child_args``.
    :returns: Geometry string.
    """
    values: dict[str, str] = {}
    for index in range(len(args) - 1):
        flag: str = args[index]
        if flag in ("--x", "--y", "--rows", "--cols"):
            values[flag] = args[index + 1]
    cols: str = values.get("--cols", "80")
    rows: str = values.get("--rows", "24")
    x: str = values.get("--x", "0")
    y: str = values.get("--y", "0")
    return f"{cols}x{rows}+{x}+{y}"
