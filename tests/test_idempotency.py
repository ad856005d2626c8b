import threading

from relay.services.idempotency import IdempotencyGuard


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestIdempotencyGuard:
    def test_first_sighting_is_not_processed(self):
        guard = IdempotencyGuard()
        assert guard.has_been_processed("SM123") is False

    def test_mark_then_check(self):
        guard = IdempotencyGuard()
        guard.mark_processed("SM123")
        assert guard.has_been_processed("SM123") is True
        assert guard.has_been_processed("SM124") is False

    def test_check_and_mark_only_first_caller_wins(self):
        guard = IdempotencyGuard()
        assert guard.check_and_mark("SM123") is True
        assert guard.check_and_mark("SM123") is False

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        guard = IdempotencyGuard(ttl_seconds=60, clock=clock)
        guard.mark_processed("SM123")

        clock.now += 59
        assert guard.has_been_processed("SM123") is True
        clock.now += 2
        assert guard.has_been_processed("SM123") is False
        assert len(guard) == 0

    def test_capacity_evicts_oldest(self):
        guard = IdempotencyGuard(max_entries=2)
        guard.check_and_mark("SM1")
        guard.check_and_mark("SM2")
        guard.check_and_mark("SM3")

        assert len(guard) == 2
        assert guard.has_been_processed("SM1") is False
        assert guard.has_been_processed("SM3") is True

    def test_concurrent_check_and_mark_admits_one(self):
        guard = IdempotencyGuard()
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            admitted = guard.check_and_mark("SM123")
            with lock:
                results.append(admitted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
