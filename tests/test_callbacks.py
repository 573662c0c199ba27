"""Tests for the callback side table and disposal tokens."""

import threading

from mobiledevice import CallbackRegistry, Disposable


def test_register_invoke_release() -> None:
    """Released tokens no longer deliver."""
    print("Testing register/invoke/release...")

    table = CallbackRegistry()
    received = []
    token = table.register(received.append)

    assert table.is_registered(token)
    assert table.invoke(token, "first")
    assert table.release(token)
    assert not table.release(token)
    assert not table.invoke(token, "second")
    assert received == ["first"]
    assert len(table) == 0
    print("✓ Release stops delivery")


def test_cancelled_event() -> None:
    """The cancellation event is set on release."""
    print("Testing cancellation events...")

    table = CallbackRegistry()
    token = table.register(lambda: None)
    event = table.cancelled(token)
    assert not event.is_set()
    table.release(token)
    assert event.is_set()
    assert table.cancelled(token).is_set()
    print("✓ Cancellation signalled")


def test_disposable_runs_once() -> None:
    """dispose() runs its action exactly once, from any thread."""
    print("Testing exactly-once disposal...")

    calls = []
    lock = threading.Lock()

    def action() -> None:
        with lock:
            calls.append(1)

    token = Disposable(action)
    threads = [threading.Thread(target=token.dispose) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    token.dispose()

    assert token.disposed
    assert calls == [1]
    print("✓ Action ran once")


def test_registry_disposable() -> None:
    """A registry token releases the callback, then runs the hook."""
    print("Testing registry disposables...")

    table = CallbackRegistry()
    order = []
    token = table.register(lambda: None)

    with table.disposable(token, lambda: order.append(table.is_registered(token))) as disposable:
        assert not disposable.disposed
    assert disposable.disposed
    assert order == [False]
    print("✓ Hook ran after release")


if __name__ == "__main__":
    test_register_invoke_release()
    test_cancelled_event()
    test_disposable_runs_once()
    test_registry_disposable()
    print("All callback tests passed!")
