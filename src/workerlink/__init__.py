"""Public package API for workerlink."""

from workerlink.api import create_worker
from workerlink.channel import Channel
from workerlink.channel import ConnectionChannel
from workerlink.errors import ChannelClosedError
from workerlink.errors import ChannelError
from workerlink.errors import ChannelProtocolError
from workerlink.errors import ChannelSendError
from workerlink.errors import WorkerKilledError
from workerlink.errors import WorkerLinkError
from workerlink.events import EventEmitter
from workerlink.events import Subscription
from workerlink.serve import serve
from workerlink.worker import Worker

__all__: list[str] = [
    "create_worker",
    "serve",
    "Channel",
    "ConnectionChannel",
    "EventEmitter",
    "Subscription",
    "Worker",
    "ChannelClosedError",
    "ChannelError",
    "ChannelProtocolError",
    "ChannelSendError",
    "WorkerKilledError",
    "WorkerLinkError",
]
