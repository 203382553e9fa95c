"""Channel protocol and the pipe-backed channel adapter."""

import logging
import multiprocessing
import pickle
import threading
from multiprocessing.connection import Connection
from typing import Protocol

from workerlink.errors import ChannelClosedError
from workerlink.errors import ChannelProtocolError
from workerlink.errors import ChannelSendError
from workerlink.events import ERROR_EVENT
from workerlink.events import MESSAGE_EVENT
from workerlink.events import EventEmitter
from workerlink.events import Listener
from workerlink.events import Subscription

logger: logging.Logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_SECONDS: float = 2.0


class Channel(Protocol):
    """Capabilities a worker needs from its child-process endpoint."""

    def send(self, message: object) -> None:
        """Queue ``message`` for the remote side without waiting for delivery."""

    def on(self, event: str, listener: Listener) -> Subscription | None:
        """Register ``listener`` for ``message`` or ``error`` events."""

    def remove_listener(self, event: str, listener: Listener) -> None:
        """Remove one registration made with :meth:`on`."""

    def kill(self) -> None:
        """Terminate the remote side."""


class ConnectionChannel(EventEmitter):
    """Expose a ``multiprocessing`` connection as an event-driven channel.

    The connection and the optional process are created by the caller. A
    daemon thread polls the connection and emits ``message`` for every
    received object. Transport failures surface as ``error`` events; the
    channel emits at most one :class:`ChannelClosedError`.
    """

    _connection: Connection
    _process: multiprocessing.process.BaseProcess | None
    _poll_interval: float
    _send_lock: threading.Lock
    _state_lock: threading.Lock
    _stop_event: threading.Event
    _is_closed: bool
    _reader: threading.Thread

    def __init__(
        self,
        connection: Connection,
        process: multiprocessing.process.BaseProcess | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialize the channel and start its reader thread.

        :param connection: Parent end of a duplex pipe.
        :param process: Optional child process terminated by :meth:`kill`.
        :param poll_interval: Seconds between checks for a kill request.
        :raises ValueError: If ``poll_interval`` is not positive.
        """
        super().__init__()
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._connection = connection
        self._process = process
        self._poll_interval = poll_interval
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._is_closed = False
        self._reader = threading.Thread(
            target=self._read_loop,
            name="workerlink-channel-reader",
            daemon=True,
        )
        self._reader.start()

    @property
    def is_closed(self) -> bool:
        """Report whether the channel stopped delivering messages.

        :returns: ``True`` once the terminal error has been emitted.
        """
        with self._state_lock:
            return self._is_closed

    def send(self, message: object) -> None:
        """Write ``message`` to the connection.

        Transport failures are emitted as ``error`` events instead of being
        raised. A message that cannot be pickled raises to the caller.

        :param message: Picklable message.
        """
        try:
            with self._send_lock:
                self._connection.send(message)
        except (BrokenPipeError, EOFError, OSError, ValueError) as exc:
            logger.warning("Failed to send message to child process: %s", exc)
            error: ChannelSendError = ChannelSendError("Failed to send message to child process", message)
            error.__cause__ = exc
            self.emit(ERROR_EVENT, error)

    def kill(self) -> None:
        """Terminate the child process and stop the reader thread."""
        logger.debug("Killing channel")
        self._stop_event.set()
        process: multiprocessing.process.BaseProcess | None = self._process
        if process is not None:
            is_alive: bool = process.is_alive()
            if is_alive is True:
                process.terminate()
                process.join(timeout=_JOIN_TIMEOUT_SECONDS)

    def _mark_closed(self) -> bool:
        """Flip the channel into its closed state.

        :returns: ``True`` for the caller that performed the transition.
        """
        with self._state_lock:
            if self._is_closed is True:
                return False
            self._is_closed = True
            return True

    def _close_with(self, error: ChannelClosedError) -> None:
        """Close the connection and emit the terminal error once.

        :param error: Terminal error value.
        """
        transitioned: bool = self._mark_closed()
        if transitioned is False:
            return
        try:
            self._connection.close()
        except OSError:
            pass
        logger.debug("Channel closed: %s", error)
        self.emit(ERROR_EVENT, error)

    def _closed_error(self, message: str, cause: BaseException | None) -> ChannelClosedError:
        """Build the terminal error for the current shutdown path.

        :param message: Description used when the channel was not killed.
        :param cause: Underlying transport exception, when any.
        :returns: Terminal error value.
        """
        error: ChannelClosedError
        if self._stop_event.is_set() is True:
            error = ChannelClosedError("channel was killed")
        else:
            error = ChannelClosedError(message)
        error.__cause__ = cause
        return error

    def _read_loop(self) -> None:
        """Deliver received messages until the channel closes."""
        while True:
            if self._stop_event.is_set() is True:
                self._close_with(self._closed_error("channel was killed", None))
                return

            has_data: bool
            try:
                has_data = self._connection.poll(self._poll_interval)
            except (EOFError, OSError, ValueError) as exc:
                self._close_with(self._closed_error("Failed to poll child process connection", exc))
                return
            if has_data is False:
                continue

            incoming: object
            try:
                incoming = self._connection.recv()
            except EOFError as exc:
                self._close_with(self._closed_error("Child process closed the connection", exc))
                return
            except (OSError, ValueError) as exc:
                self._close_with(self._closed_error("Failed to receive message from child process", exc))
                return
            except (pickle.UnpicklingError, AttributeError, ImportError, IndexError, TypeError) as exc:
                logger.warning("Dropping undecodable message from child process: %s", exc)
                protocol_error: ChannelProtocolError = ChannelProtocolError(
                    "Failed to decode message from child process"
                )
                protocol_error.__cause__ = exc
                self.emit(ERROR_EVENT, protocol_error)
                continue

            self.emit(MESSAGE_EVENT, incoming)
