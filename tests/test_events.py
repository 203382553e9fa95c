"""Tests for listener registration primitives."""

from workerlink import EventEmitter
from workerlink import Subscription


def test_emit_calls_listeners_in_registration_order() -> None:
    """Listeners run in the order they were registered."""
    emitter = EventEmitter()
    seen: list[tuple[str, object]] = []
    emitter.on("message", lambda value: seen.append(("first", value)))
    emitter.on("message", lambda value: seen.append(("second", value)))

    called: bool = emitter.emit("message", 1)

    assert called is True
    assert seen == [("first", 1), ("second", 1)]


def test_emit_without_listeners_reports_false() -> None:
    """Emitting an event nobody listens to is a no-op."""
    emitter = EventEmitter()

    assert emitter.emit("error", RuntimeError()) is False


def test_subscription_release_removes_only_its_registration() -> None:
    """Releasing one handle leaves other registrations of the same callable."""
    emitter = EventEmitter()
    seen: list[object] = []
    first: Subscription = emitter.on("message", seen.append)
    emitter.on("message", seen.append)

    first.release()
    emitter.emit("message", "x")

    assert seen == ["x"]
    assert emitter.listener_count("message") == 1


def test_subscription_release_is_idempotent() -> None:
    """A second release neither raises nor removes another registration."""
    emitter = EventEmitter()
    subscription: Subscription = emitter.on("message", print)
    other: Subscription = emitter.on("message", print)

    subscription.release()
    subscription.release()

    assert subscription.released is True
    assert other.released is False
    assert emitter.listener_count("message") == 1


def test_subscription_context_manager_releases_on_exit() -> None:
    """Leaving the ``with`` block removes the listener."""
    emitter = EventEmitter()
    with emitter.on("error", print) as subscription:
        assert emitter.listener_count("error") == 1

    assert subscription.released is True
    assert emitter.listener_count("error") == 0


def test_remove_listener_for_unknown_pair_is_noop() -> None:
    """Removing something never registered does nothing."""
    emitter = EventEmitter()
    emitter.on("message", print)

    emitter.remove_listener("message", repr)
    emitter.remove_listener("error", print)

    assert emitter.listener_count("message") == 1


def test_listener_released_during_emit_still_receives_current_event() -> None:
    """Emission works on a snapshot taken before listeners run."""
    emitter = EventEmitter()
    seen: list[str] = []
    holder: dict[str, Subscription] = {}

    def first(value: str) -> None:
        seen.append(f"first:{value}")
        holder["second"].release()

    def second(value: str) -> None:
        seen.append(f"second:{value}")

    emitter.on("message", first)
    holder["second"] = emitter.on("message", second)

    emitter.emit("message", "a")
    emitter.emit("message", "b")

    assert seen == ["first:a", "second:a", "first:b"]


def test_raising_listener_does_not_stop_later_listeners() -> None:
    """Each listener runs even when one registered before it raises."""
    emitter = EventEmitter()
    seen: list[object] = []

    def broken(_value: object) -> None:
        raise ValueError("broken listener")

    emitter.on("message", broken)
    emitter.on("message", seen.append)

    called: bool = emitter.emit("message", "payload")

    assert called is True
    assert seen == ["payload"]
