"""Child-side message loop that answers worker requests."""

import logging
import pickle
import traceback
from collections.abc import Callable
from collections.abc import Mapping
from multiprocessing.connection import Connection
from multiprocessing.reduction import ForkingPickler

from workerlink.worker import REQUEST_ID_FIELD

logger: logging.Logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, object]], Mapping[str, object]]


def _encode_response(response: dict[str, object]) -> bytes | memoryview:
    """Pickle one response the same way ``Connection.send`` does.

    :param response: Response message.
    :returns: Encoded payload for ``Connection.send_bytes``.
    """
    return ForkingPickler.dumps(response)


def _send_response(connection: Connection, encoded: bytes | memoryview) -> bool:
    """Send one encoded response to the parent.

    :param connection: IPC connection.
    :param encoded: Pickled response message.
    :returns: ``False`` when the parent end is gone.
    """
    try:
        connection.send_bytes(encoded)
    except (BrokenPipeError, EOFError, OSError):
        return False
    return True


def _error_response(request_id_field: str, request_id: str, exc: BaseException) -> dict[str, object]:
    """Describe a handler failure in a picklable response.

    :param request_id_field: Field carrying the request identifier.
    :param request_id: Identifier echoed back to the parent.
    :param exc: Exception raised by the handler.
    :returns: Error response message.
    """
    return {
        request_id_field: request_id,
        "error": {
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "stacktrace": traceback.format_exc(),
        },
    }


def serve(
    connection: Connection,
    handler: Handler,
    request_id_field: str = REQUEST_ID_FIELD,
) -> None:
    """Answer requests from the parent until the connection closes.

    Each request is passed to ``handler`` without its identifier field and the
    handler's mapping is sent back with the identifier added. Handler
    exceptions and responses that cannot be pickled are answered with an
    ``error`` mapping for that request only.

    :param connection: Child end of a duplex pipe.
    :param handler: Callable producing a response mapping for one payload.
    :param request_id_field: Field carrying the request identifier.
    """
    while True:
        incoming: object
        try:
            incoming = connection.recv()
        except (EOFError, OSError):
            logger.debug("Parent connection closed")
            return

        if isinstance(incoming, Mapping) is False:
            logger.warning("Ignoring non-mapping message of type %s", type(incoming).__name__)
            continue

        request_id: object = incoming.get(request_id_field)
        if isinstance(request_id, str) is False:
            logger.warning("Ignoring message without a string %r field", request_id_field)
            continue

        payload: dict[str, object] = dict(incoming)
        payload.pop(request_id_field)

        response: dict[str, object]
        try:
            result: Mapping[str, object] = handler(payload)
            if isinstance(result, Mapping) is False:
                raise TypeError("handler must return a mapping")
            response = dict(result)
            response[request_id_field] = request_id
        except Exception as exc:
            logger.debug("Handler failed for request %s", request_id, exc_info=True)
            response = _error_response(request_id_field, request_id, exc)

        encoded: bytes | memoryview
        try:
            encoded = _encode_response(response)
        except (pickle.PicklingError, TypeError, AttributeError, ValueError) as exc:
            logger.warning("Response for request %s cannot be pickled: %s", request_id, exc)
            encoded = _encode_response(_error_response(request_id_field, request_id, exc))

        sent: bool = _send_response(connection, encoded)
        if sent is False:
            logger.debug("Parent connection closed while replying to %s", request_id)
            return
