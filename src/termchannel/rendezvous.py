"""Single-use child-to-parent handoff of the discovered write id."""

import logging
import multiprocessing
import multiprocessing.context
from multiprocessing.connection import Connection

from termchannel.errors import RendezvousError

logger: logging.Logger = logging.getLogger(__name__)


class Rendezvous:
    """Mailbox of capacity one, private to a single launch.

    The parent keeps the reading end and hands ``writer`` to the child. The
    child publishes exactly once; the parent consumes exactly once.
    """

    _reader: Connection
    _writer: Connection | None
    _published: bool
    _consumed: bool
    _pending: list[object]
    _at_eof: bool

    def __init__(self, context: multiprocessing.context.BaseContext | None = None) -> None:
        """Create the underlying one-way pipe.

        :param context: Optional multiprocessing context used to build the pipe.
        """
        if context is None:
            context = multiprocessing.get_context("spawn")
        reader, writer = context.Pipe(duplex=False)
        self._reader = reader
        self._writer = writer
        self._published = False
        self._consumed = False
        self._pending = []
        self._at_eof = False

    @property
    def writer(self) -> Connection:
        """Return the endpoint the child publishes through.

        :returns: Writable connection.
        :raises RendezvousError: If the parent already dropped its copy.
        """
        if self._writer is None:
            raise RendezvousError("Rendezvous writer was already handed off")
        return self._writer

    def close_writer(self) -> None:
        """Drop this process's copy of the writer once the child holds it."""
        writer: Connection | None = self._writer
        self._writer = None
        if writer is not None:
            writer.close()

    def publish(self, message: object) -> bool:
        """Publish the single value for this session.

        :param message: Startup message.
        :returns: ``True`` when the value reached the reading end.
        :raises RendezvousError: If a value was already published here.
        """
        if self._published is True:
            raise RendezvousError("Rendezvous is single-use; a value was already published")
        writer: Connection = self.writer
        self._writer = None
        self._published = True
        return publish_on(writer, message)

    def is_empty(self) -> bool:
        """Report whether nothing is waiting to be consumed.

        :returns: ``True`` when no published value is pending.
        """
        if self._consumed is True or self._at_eof is True:
            return True
        if len(self._pending) > 0:
            return False
        try:
            if self._reader.poll(0) is False:
                return True
            # Readable also means end of stream; only a received value counts.
            self._pending.append(self._reader.recv())
        except (EOFError, OSError):
            self._at_eof = True
            return True
        return False

    def wait_and_consume(self, timeout: float) -> object | None:
        """Block until the child publishes, then take the value.

        :param timeout: Maximum number of seconds to wait.
        :returns: Published message, or ``None`` on timeout or when the child
            side closed without publishing.
        """
        if self._consumed is True:
            return None
        if len(self._pending) > 0:
            self._consumed = True
            return self._pending.pop()
        if self._at_eof is True:
            self._consumed = True
            return None

        try:
            ready: bool = self._reader.poll(timeout)
        except (EOFError, OSError):
            ready = False
        if ready is False:
            logger.warning("No rendezvous value within %.2f seconds", timeout)
            return None

        try:
            message: object = self._reader.recv()
        except (EOFError, OSError):
            logger.warning("Child closed the rendezvous without publishing")
            self._at_eof = True
            return None
        finally:
            self._consumed = True
        return message

    def close(self) -> None:
        """Close both endpoints held by this process."""
        self.close_writer()
        self._reader.close()


def publish_on(writer: Connection, message: object) -> bool:
    """Publish ``message`` on a rendezvous endpoint received from the parent.

    The endpoint is closed afterwards so the parent sees end of stream if it
    polls again.

    :param writer: Writable rendezvous connection.
    :param message: Startup message.
    :returns: ``True`` when the message was handed to the parent.
    """
    try:
        writer.send(message)
    except (BrokenPipeError, EOFError, OSError) as exc:
        logger.warning("Parent went away before the rendezvous: %s", exc)
        return False
    finally:
        writer.close()
    return True
