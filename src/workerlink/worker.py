"""Request/response correlation over an uncorrelated child-process channel."""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from collections.abc import Mapping
from concurrent.futures import Future
from concurrent.futures import InvalidStateError

from workerlink.channel import Channel
from workerlink.errors import WorkerKilledError
from workerlink.events import ERROR_EVENT
from workerlink.events import MESSAGE_EVENT
from workerlink.events import Listener
from workerlink.events import Subscription

logger: logging.Logger = logging.getLogger(__name__)

REQUEST_ID_FIELD: str = "requestId"
_NANOSECONDS_PER_SECOND: int = 1_000_000_000
Clock = Callable[[], tuple[int, int]]


def hrtime() -> tuple[int, int]:
    """Sample the monotonic clock as whole seconds plus a nanosecond remainder.

    :returns: Tuple of ``(seconds, nanoseconds)``.
    """
    seconds, nanoseconds = divmod(time.monotonic_ns(), _NANOSECONDS_PER_SECOND)
    return seconds, nanoseconds


def make_request_id(clock: Clock) -> str:
    """Concatenate both clock components into one request token.

    :param clock: Clock returning ``(whole, fraction)`` integers.
    :returns: Token such as ``"201"`` for components ``20`` and ``1``.
    """
    whole, fraction = clock()
    return f"{whole}{fraction}"


def _subscribe(channel: Channel, event: str, listener: Listener) -> Subscription:
    """Register ``listener`` and return a handle that removes it.

    Channels whose ``on`` returns nothing are released through
    ``remove_listener``.

    :param channel: Target channel.
    :param event: Event name.
    :param listener: Listener callable.
    :returns: Subscription handle.
    """
    subscription: object = channel.on(event, listener)
    if isinstance(subscription, Subscription) is True:
        return subscription
    return Subscription(lambda: channel.remove_listener(event, listener))


class _PendingRequest:
    """State of one in-flight request."""

    request_id: str
    future: "Future[Mapping[str, object]]"
    message_subscription: Subscription | None
    error_subscription: Subscription | None
    settled: bool

    def __init__(self, request_id: str) -> None:
        """Initialize pending state.

        :param request_id: Correlation token of the request.
        """
        self.request_id = request_id
        self.future = Future()
        self.message_subscription = None
        self.error_subscription = None
        self.settled = False


class Worker:
    """Turn a child-process channel into a request/response API.

    Every :meth:`run` call tags its payload with a fresh request identifier
    and completes with the first inbound message echoing that identifier, or
    fails with the first error event the channel emits. Both listeners of a
    request are released together, message listener first.
    """

    _channel: Channel
    _request_id_field: str
    _clock: Clock
    _pending_by_id: dict[str, _PendingRequest]
    _collision_counter: int
    _is_killed: bool
    _lock: threading.RLock

    def __init__(
        self,
        channel: Channel,
        request_id_field: str = REQUEST_ID_FIELD,
        clock: Clock | None = None,
    ) -> None:
        """Initialize a worker around an existing channel.

        :param channel: Channel owned by the caller.
        :param request_id_field: Message field carrying the request identifier.
        :param clock: Optional ``(whole, fraction)`` clock for request identifiers.
        """
        self._channel = channel
        self._request_id_field = request_id_field
        if clock is None:
            self._clock = hrtime
        else:
            self._clock = clock
        self._pending_by_id = {}
        self._collision_counter = 0
        self._is_killed = False
        self._lock = threading.RLock()

    @property
    def is_killed(self) -> bool:
        """Report whether :meth:`kill` has been called.

        :returns: ``True`` after the channel was terminated through this worker.
        """
        with self._lock:
            return self._is_killed

    @property
    def pending_count(self) -> int:
        """Return the number of requests still waiting for an outcome.

        :returns: In-flight request count.
        """
        with self._lock:
            return len(self._pending_by_id)

    def run(self, payload: Mapping[str, object]) -> "Future[Mapping[str, object]]":
        """Send ``payload`` to the child and return a future for its response.

        :param payload: Serializable mapping without the request identifier field.
        :returns: Future resolved with the correlated response object, or failed
            with the error value the channel emitted. A channel that raises
            while subscribing or sending fails the future with that exception.
        :raises TypeError: If ``payload`` is not a mapping.
        :raises ValueError: If ``payload`` already carries the identifier field.
        """
        if isinstance(payload, Mapping) is False:
            raise TypeError("payload must be a mapping")
        if self._request_id_field in payload:
            raise ValueError(f"payload must not contain the reserved {self._request_id_field!r} field")

        with self._lock:
            if self._is_killed is True:
                killed: "Future[Mapping[str, object]]" = Future()
                killed.set_exception(WorkerKilledError("Worker has been killed"))
                return killed
            request_id: str = self._allocate_request_id()
            pending: _PendingRequest = _PendingRequest(request_id)
            self._pending_by_id[request_id] = pending

        message: dict[str, object] = dict(payload)
        message[self._request_id_field] = request_id

        def on_message(incoming: object) -> None:
            if isinstance(incoming, Mapping) is False:
                return
            if incoming.get(self._request_id_field) != request_id:
                return
            self._settle(pending, incoming, None)

        def on_error(error: BaseException) -> None:
            self._settle(pending, None, error)

        pending.future.add_done_callback(lambda _future: self._release_if_cancelled(pending))

        try:
            message_subscription: Subscription = _subscribe(self._channel, MESSAGE_EVENT, on_message)
            self._attach(pending, message_subscription, is_message=True)
            error_subscription: Subscription = _subscribe(self._channel, ERROR_EVENT, on_error)
            self._attach(pending, error_subscription, is_message=False)

            logger.debug("Sending request %s", request_id)
            self._channel.send(message)
        except Exception as exc:
            first: bool = self._detach(pending)
            if first is True:
                logger.debug("Request %s failed before reaching the channel: %r", request_id, exc)
                pending.future.set_exception(exc)
        return pending.future

    async def run_async(self, payload: Mapping[str, object]) -> Mapping[str, object]:
        """Await the response to ``payload`` from a running event loop.

        Cancelling the awaiting task releases the request's listeners.

        :param payload: Serializable mapping without the request identifier field.
        :returns: Correlated response object.
        """
        future: "Future[Mapping[str, object]]" = self.run(payload)
        return await asyncio.wrap_future(future)

    def kill(self) -> None:
        """Terminate the underlying channel.

        In-flight requests are left to the channel's terminal error event;
        requests issued afterwards fail with :class:`WorkerKilledError`.
        """
        with self._lock:
            self._is_killed = True
            pending_count: int = len(self._pending_by_id)
        logger.debug("Killing worker with %d pending request(s)", pending_count)
        self._channel.kill()

    def _allocate_request_id(self) -> str:
        """Generate a request identifier not used by any pending request.

        :returns: Unique request token.
        """
        request_id: str = make_request_id(self._clock)
        if request_id not in self._pending_by_id:
            return request_id
        while True:
            self._collision_counter += 1
            candidate: str = f"{request_id}-{self._collision_counter}"
            if candidate not in self._pending_by_id:
                return candidate

    def _attach(self, pending: _PendingRequest, subscription: Subscription, is_message: bool) -> None:
        """Record a subscription, releasing it at once when already settled.

        :param pending: Pending request state.
        :param subscription: Newly registered subscription.
        :param is_message: ``True`` for the message listener.
        """
        with self._lock:
            settled: bool = pending.settled
            if settled is False:
                if is_message is True:
                    pending.message_subscription = subscription
                else:
                    pending.error_subscription = subscription
        if settled is True:
            subscription.release()

    def _detach(self, pending: _PendingRequest) -> bool:
        """Mark ``pending`` settled and release both of its subscriptions.

        :param pending: Pending request state.
        :returns: ``True`` for the first caller only.
        """
        with self._lock:
            if pending.settled is True:
                return False
            pending.settled = True
            self._pending_by_id.pop(pending.request_id, None)
            message_subscription: Subscription | None = pending.message_subscription
            error_subscription: Subscription | None = pending.error_subscription
            pending.message_subscription = None
            pending.error_subscription = None
        if message_subscription is not None:
            message_subscription.release()
        if error_subscription is not None:
            error_subscription.release()
        return True

    def _settle(
        self,
        pending: _PendingRequest,
        response: Mapping[str, object] | None,
        error: BaseException | None,
    ) -> None:
        """Complete ``pending`` with a response or an error, first event wins.

        :param pending: Pending request state.
        :param response: Matching response message.
        :param error: Error value emitted by the channel.
        """
        first: bool = self._detach(pending)
        if first is False:
            return
        try:
            if error is not None:
                logger.debug("Request %s failed: %r", pending.request_id, error)
                pending.future.set_exception(error)
                return
            logger.debug("Request %s completed", pending.request_id)
            pending.future.set_result(response)
        except InvalidStateError:
            logger.debug("Request %s was cancelled before completion", pending.request_id)

    def _release_if_cancelled(self, pending: _PendingRequest) -> None:
        """Drop the listeners of a request whose future was cancelled.

        :param pending: Pending request state.
        """
        if pending.future.cancelled() is False:
            return
        released: bool = self._detach(pending)
        if released is True:
            logger.debug("Request %s cancelled", pending.request_id)
