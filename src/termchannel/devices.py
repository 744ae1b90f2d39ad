"""Numbered device layer backed by named pipes and advisory lock files."""

import fcntl
import logging
import os
import pathlib
import threading
import time

from termchannel.errors import DeviceNotOpenError

DEFAULT_POLL_INTERVAL: float = 0.01

logger: logging.Logger = logging.getLogger(__name__)


class DeviceLayer:
    """Interface for claiming and using numbered duplex devices.

    Device ids come in pairs: an even read id and the odd write id after it.
    A ``timeout`` of ``0`` means try once and never block on a claimed id.
    """

    @property
    def address(self) -> str:
        """Return the string a child process uses to reach the same devices.

        :returns: Device address passed to launched children.
        """
        raise NotImplementedError

    def open_for_read(self, device_id: int, timeout: float = 0.0) -> bool:
        """Claim ``device_id`` exclusively for reading.

        :param device_id: Read-side device id.
        :param timeout: Seconds to keep retrying a claimed id.
        :returns: ``True`` when the id is now open for reading.
        """
        raise NotImplementedError

    def open_for_write(self, device_id: int, timeout: float = 0.0) -> bool:
        """Claim ``device_id`` exclusively for writing.

        :param device_id: Write-side device id.
        :param timeout: Seconds to keep retrying a claimed id.
        :returns: ``True`` when the id is now open for writing.
        """
        raise NotImplementedError

    def close(self, device_id: int) -> None:
        """Release ``device_id``. Unknown ids are ignored.

        :param device_id: Device id to release.
        """
        raise NotImplementedError

    def is_open(self, device_id: int) -> bool:
        """Report whether this layer currently holds ``device_id``.

        :param device_id: Device id.
        :returns: ``True`` when open through this layer.
        """
        raise NotImplementedError

    def read_one(self, device_id: int) -> bytes:
        """Block until one byte arrives.

        :param device_id: Read-side device id.
        :returns: One byte, or ``b""`` at end of stream.
        """
        raise NotImplementedError

    def write_one(self, device_id: int, unit: bytes) -> None:
        """Write a single byte.

        :param device_id: Write-side device id.
        :param unit: One byte.
        """
        raise NotImplementedError

    def write(self, device_id: int, data: bytes) -> None:
        """Write ``data`` one unit at a time.

        :param device_id: Write-side device id.
        :param data: Bytes to write.
        """
        for index in range(len(data)):
            self.write_one(device_id, data[index : index + 1])


class FifoDeviceLayer(DeviceLayer):
    """Device layer mapping each pair of ids onto one named pipe under ``root``."""

    _root: pathlib.Path
    _poll_interval: float
    _lock: threading.Lock
    _lock_fds: dict[int, int]
    _io_fds: dict[int, int]

    def __init__(self, root: str | os.PathLike[str], poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Initialize the layer and create ``root`` when missing.

        :param root: Directory holding FIFOs and lock files.
        :param poll_interval: Retry interval used while waiting on a claimed id.
        """
        self._root = pathlib.Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._lock_fds = {}
        self._io_fds = {}

    @property
    def root(self) -> pathlib.Path:
        """Return the device directory.

        :returns: Directory holding FIFOs and lock files.
        """
        return self._root

    @property
    def address(self) -> str:
        """Return the device directory as a launch argument.

        :returns: Directory path string.
        """
        return str(self._root)

    def fifo_path(self, device_id: int) -> pathlib.Path:
        """Return the named pipe shared by ``device_id`` and its pair partner.

        :param device_id: Read or write id.
        :returns: FIFO path.
        """
        read_id: int = device_id - (device_id % 2)
        return self._root / f"pair-{read_id}.fifo"

    def lock_path(self, device_id: int) -> pathlib.Path:
        """Return the lock file guarding ``device_id``.

        :param device_id: Read or write id.
        :returns: Lock file path.
        """
        return self._root / f"device-{device_id}.lock"

    def _try_claim(self, device_id: int) -> int | None:
        """Take the lock for ``device_id`` without blocking.

        :param device_id: Device id.
        :returns: Locked file descriptor, or ``None`` when claimed elsewhere.
        """
        lock_fd: int = os.open(self.lock_path(device_id), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(lock_fd)
            return None
        return lock_fd

    def _claim(self, device_id: int, timeout: float) -> int | None:
        """Take the lock for ``device_id``, retrying until ``timeout`` elapses.

        :param device_id: Device id.
        :param timeout: Seconds to keep retrying.
        :returns: Locked file descriptor, or ``None``.
        """
        deadline: float = time.monotonic() + timeout
        while True:
            lock_fd: int | None = self._try_claim(device_id)
            if lock_fd is not None:
                return lock_fd
            if time.monotonic() >= deadline:
                return None
            time.sleep(self._poll_interval)

    def _ensure_fifo(self, device_id: int) -> pathlib.Path:
        path: pathlib.Path = self.fifo_path(device_id)
        try:
            os.mkfifo(path, 0o600)
        except FileExistsError:
            pass
        return path

    def _register(self, device_id: int, lock_fd: int, io_fd: int) -> None:
        with self._lock:
            self._lock_fds[device_id] = lock_fd
            self._io_fds[device_id] = io_fd

    def open_for_read(self, device_id: int, timeout: float = 0.0) -> bool:
        """Claim ``device_id`` and open its FIFO for reading.

        The FIFO is opened read-write so the pipe stays alive while writers
        come and go.

        :param device_id: Read-side device id.
        :param timeout: Seconds to keep retrying a claimed id.
        :returns: ``True`` when the id is now open for reading.
        """
        if self.is_open(device_id) is True:
            return False

        lock_fd: int | None = self._claim(device_id, timeout)
        if lock_fd is None:
            logger.debug("Device %d is claimed elsewhere", device_id)
            return False

        try:
            path: pathlib.Path = self._ensure_fifo(device_id)
            io_fd: int = os.open(path, os.O_RDWR)
        except OSError:
            os.close(lock_fd)
            raise
        self._register(device_id, lock_fd, io_fd)
        return True

    def open_for_write(self, device_id: int, timeout: float = 0.0) -> bool:
        """Claim ``device_id`` and open its FIFO for writing.

        Fails without blocking when nobody holds the read side.

        :param device_id: Write-side device id.
        :param timeout: Seconds to keep retrying a claimed id.
        :returns: ``True`` when the id is now open for writing.
        """
        if self.is_open(device_id) is True:
            return False

        lock_fd: int | None = self._claim(device_id, timeout)
        if lock_fd is None:
            logger.debug("Device %d is claimed elsewhere", device_id)
            return False

        path: pathlib.Path = self.fifo_path(device_id)
        try:
            io_fd: int = os.open(path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as exc:
            # ENXIO: no reader, ENOENT: pair never allocated.
            logger.debug("Device %d has no reader: %s", device_id, exc)
            os.close(lock_fd)
            return False
        os.set_blocking(io_fd, True)
        self._register(device_id, lock_fd, io_fd)
        return True

    def close(self, device_id: int) -> None:
        """Close the FIFO and release the lock for ``device_id``.

        :param device_id: Device id to release.
        """
        with self._lock:
            io_fd: int | None = self._io_fds.pop(device_id, None)
            lock_fd: int | None = self._lock_fds.pop(device_id, None)
        if io_fd is not None:
            os.close(io_fd)
        if lock_fd is not None:
            os.close(lock_fd)

    def close_all(self) -> None:
        """Release every id held by this layer."""
        with self._lock:
            device_ids: list[int] = list(self._io_fds.keys())
        for device_id in device_ids:
            self.close(device_id)

    def is_open(self, device_id: int) -> bool:
        """Report whether this layer currently holds ``device_id``.

        :param device_id: Device id.
        :returns: ``True`` when open through this layer.
        """
        with self._lock:
            return device_id in self._io_fds

    def _require_fd(self, device_id: int) -> int:
        with self._lock:
            io_fd: int | None = self._io_fds.get(device_id)
        if io_fd is None:
            raise DeviceNotOpenError(f"Device {device_id} is not open")
        return io_fd

    def read_one(self, device_id: int) -> bytes:
        """Block until one byte arrives on ``device_id``.

        :param device_id: Read-side device id.
        :returns: One byte, or ``b""`` at end of stream.
        :raises DeviceNotOpenError: If the id is not open.
        """
        io_fd: int = self._require_fd(device_id)
        return os.read(io_fd, 1)

    def write_one(self, device_id: int, unit: bytes) -> None:
        """Write one byte to ``device_id``.

        :param device_id: Write-side device id.
        :param unit: One byte.
        :raises DeviceNotOpenError: If the id is not open.
        :raises ValueError: If ``unit`` is not exactly one byte.
        """
        if len(unit) != 1:
            raise ValueError("unit must be exactly one byte")
        self.write(device_id, unit)

    def write(self, device_id: int, data: bytes) -> None:
        """Write all of ``data`` to ``device_id``.

        :param device_id: Write-side device id.
        :param data: Bytes to write.
        :raises DeviceNotOpenError: If the id is not open.
        :raises BrokenPipeError: If the reader went away.
        """
        io_fd: int = self._require_fd(device_id)
        view: memoryview = memoryview(data)
        while len(view) > 0:
            written: int = os.write(io_fd, view)
            view = view[written:]
