"""Custom error types for workerlink."""


class WorkerLinkError(Exception):
    """Base class for all workerlink errors."""


class WorkerKilledError(WorkerLinkError):
    """Raised when a request is issued to a worker that has been killed."""


class ChannelError(WorkerLinkError):
    """Base class for faults reported by a channel as ``error`` events."""


class ChannelClosedError(ChannelError):
    """Reported once when a channel stops delivering messages."""


class ChannelSendError(ChannelError):
    """Reported when a message could not be written to the channel."""

    undelivered: object

    def __init__(self, message: str, undelivered: object) -> None:
        """Initialize a send failure.

        :param message: Human-readable description.
        :param undelivered: Message that failed to send.
        """
        self.undelivered = undelivered
        super().__init__(message)


class ChannelProtocolError(ChannelError):
    """Reported when a received message cannot be decoded."""
