"""User-facing API entrypoints for workerlink."""

from workerlink.channel import Channel
from workerlink.worker import REQUEST_ID_FIELD
from workerlink.worker import Clock
from workerlink.worker import Worker


def create_worker(
    channel: Channel,
    request_id_field: str = REQUEST_ID_FIELD,
    clock: Clock | None = None,
) -> Worker:
    """Wrap a child-process channel in a request/response worker handle.

    :param channel: Channel created and owned by the caller.
    :param request_id_field: Message field carrying the request identifier.
    :param clock: Optional ``(whole, fraction)`` clock used for request identifiers.
    :returns: Worker bound to ``channel``.
    """
    return Worker(channel, request_id_field=request_id_field, clock=clock)
