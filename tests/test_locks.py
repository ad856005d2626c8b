import threading
import time

from relay.services.locks import KeyedLocks


def test_lock_is_dropped_after_release():
    locks = KeyedLocks()
    with locks.hold("tenant:+336"):
        assert len(locks) == 1
    assert len(locks) == 0


def test_same_key_is_serialized():
    locks = KeyedLocks()
    active = []
    overlaps = []
    guard = threading.Lock()

    def worker():
        with locks.hold("tenant:+336"):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            time.sleep(0.01)
            with guard:
                active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert len(locks) == 0


def test_different_keys_do_not_block():
    locks = KeyedLocks()
    with locks.hold("a"):
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(timeout=1)
        thread.join()


def test_released_when_body_raises():
    locks = KeyedLocks()
    try:
        with locks.hold("k"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert len(locks) == 0
