"""User-facing API entrypoints for termchannel."""

import atexit
import os
import pathlib
import tempfile
import threading

from termchannel.devices import FifoDeviceLayer
from termchannel.parent import ChannelHandle
from termchannel.parent import DisabledChannel
from termchannel.parent import ParentSession

DEVICE_ROOT_ENV: str = "TERMCHANNEL_DEVICE_ROOT"

_DEFAULT_SESSION_LOCK: threading.Lock = threading.Lock()
_DEFAULT_SESSIONS_BY_ROOT: dict[str, ParentSession] = {}


def default_device_root() -> pathlib.Path:
    """Return the device directory used when none is given.

    :returns: ``$TERMCHANNEL_DEVICE_ROOT`` or a per-user temp directory.
    """
    configured: str | None = os.environ.get(DEVICE_ROOT_ENV)
    if configured:
        return pathlib.Path(configured)
    return pathlib.Path(tempfile.gettempdir()) / f"termchannel-{os.getuid()}"


def _get_default_session(device_root: str | os.PathLike[str] | None) -> ParentSession:
    """Get or create the process-wide session for one device directory.

    :param device_root: Optional device directory.
    :returns: Parent session.
    """
    root: pathlib.Path = default_device_root() if device_root is None else pathlib.Path(device_root)
    key: str = str(root)
    with _DEFAULT_SESSION_LOCK:
        existing: ParentSession | None = _DEFAULT_SESSIONS_BY_ROOT.get(key)
        if existing is not None:
            return existing

        session: ParentSession = ParentSession(FifoDeviceLayer(root))
        _DEFAULT_SESSIONS_BY_ROOT[key] = session
        atexit.register(session.close_all)
        return session


def _session_for(
    handle: ChannelHandle | DisabledChannel | int,
    device_root: str | os.PathLike[str] | None,
) -> ParentSession:
    """Return the session that opened ``handle``, whatever ``device_root`` says.

    :param handle: Handle, disabled result, or raw write id.
    :param device_root: Device directory used when no session owns ``handle``.
    :returns: Parent session.
    """
    if isinstance(handle, ChannelHandle) is True:
        with _DEFAULT_SESSION_LOCK:
            sessions: list[ParentSession] = list(_DEFAULT_SESSIONS_BY_ROOT.values())
        for session in sessions:
            if session.owns(handle) is True:
                return session
    return _get_default_session(device_root)


def open_terminal(
    x: int,
    y: int,
    rows: int,
    cols: int,
    device_root: str | os.PathLike[str] | None = None,
) -> ChannelHandle | DisabledChannel:
    """Launch a child terminal and return a channel to it.

    :param x: Terminal left position.
    :param y: Terminal top position.
    :param rows: Terminal height in rows.
    :param cols: Terminal width in columns.
    :param device_root: Optional device directory.
    :returns: Live handle, or ``DisabledChannel`` meaning "use the default output".
    """
    session: ParentSession = _get_default_session(device_root)
    return session.open(x, y, rows, cols)


def send_to_terminal(
    handle: ChannelHandle | DisabledChannel,
    data: bytes | str,
    device_root: str | os.PathLike[str] | None = None,
) -> None:
    """Write ``data`` to ``handle``, falling back to stdout.

    :param handle: Result of ``open_terminal``.
    :param data: Bytes, or text encoded as UTF-8.
    :param device_root: Fallback device directory for handles no session owns.
    """
    session: ParentSession = _session_for(handle, device_root)
    session.send(handle, data)


def close_terminal(
    handle: ChannelHandle | DisabledChannel | int,
    device_root: str | os.PathLike[str] | None = None,
) -> None:
    """Ask a child terminal to shut down.

    Accepts a handle object or a raw write id. ``0``, disabled results and
    handles that are already closed are ignored.

    :param handle: Handle or write id.
    :param device_root: Device directory used for raw write ids.
    """
    session: ParentSession = _session_for(handle, device_root)
    if isinstance(handle, int) is True:
        session.close_write_id(handle)
        return
    session.close(handle)
