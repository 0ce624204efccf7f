"""Unit tests for the keyed work queue, rate limiter and dispatcher."""

from typing import List

from globaldns_controller.errors import AuthorizationDeniedError, StatusUpdateFailedError
from globaldns_controller.workqueue import Dispatcher, RateLimiter, WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# WorkQueue
# =============================================================================


class TestWorkQueue:
    def test_duplicate_adds_are_collapsed(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert queue.get(timeout=0) == "a"
        assert queue.get(timeout=0) == "b"
        assert queue.get(timeout=0) is None

    def test_key_in_progress_is_not_handed_out_twice(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        assert queue.get(timeout=0) == "a"

        queue.add("a")

        assert queue.get(timeout=0) is None
        queue.done("a")
        assert queue.get(timeout=0) == "a"

    def test_done_without_readd_does_not_requeue(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.get(timeout=0)
        queue.done("a")

        assert queue.get(timeout=0) is None

    def test_add_after_waits_for_delay(self) -> None:
        clock = FakeClock()
        queue = WorkQueue(clock=clock)
        queue.add_after("a", 5.0)

        assert queue.get(timeout=0) is None
        clock.now = 5.0
        assert queue.get(timeout=0) == "a"

    def test_add_after_zero_delay_adds_immediately(self) -> None:
        queue = WorkQueue()
        queue.add_after("a", 0)
        assert queue.get(timeout=0) == "a"

    def test_shutdown_stops_new_work(self) -> None:
        queue = WorkQueue()
        queue.shutdown()
        queue.add("a")

        assert queue.shutting_down is True
        assert queue.get() is None


class TestRateLimiter:
    def test_backoff_doubles_and_caps(self) -> None:
        limiter = RateLimiter(base_delay=1.0, max_delay=5.0)

        assert [limiter.when("a") for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert limiter.when("b") == 1.0

    def test_forget_resets_backoff(self) -> None:
        limiter = RateLimiter(base_delay=1.0)
        limiter.when("a")
        limiter.when("a")
        limiter.forget("a")

        assert limiter.failures("a") == 0
        assert limiter.when("a") == 1.0


# =============================================================================
# Dispatcher
# =============================================================================


def make_dispatcher(handler) -> tuple[Dispatcher, WorkQueue, FakeClock]:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    dispatcher = Dispatcher(queue, handler, workers=1, rate_limiter=RateLimiter(base_delay=2.0))
    return dispatcher, queue, clock


def test_dispatcher_success_forgets_failures() -> None:
    handled: List[str] = []
    dispatcher, queue, _ = make_dispatcher(handled.append)
    dispatcher.rate_limiter.when("a")
    queue.add("a")

    assert dispatcher.process_next(timeout=0) is True

    assert handled == ["a"]
    assert dispatcher.rate_limiter.failures("a") == 0
    assert dispatcher.process_next(timeout=0) is False


def test_dispatcher_requeues_retryable_errors_with_backoff() -> None:
    def handler(key: str) -> None:
        raise StatusUpdateFailedError("timeout", key=key)

    dispatcher, queue, clock = make_dispatcher(handler)
    queue.add("a")

    dispatcher.process_next(timeout=0)

    assert dispatcher.rate_limiter.failures("a") == 1
    assert queue.get(timeout=0) is None
    clock.now = 2.0
    assert queue.get(timeout=0) == "a"


def test_dispatcher_drops_non_retryable_errors() -> None:
    def handler(key: str) -> None:
        raise AuthorizationDeniedError("denied", key=key)

    dispatcher, queue, clock = make_dispatcher(handler)
    queue.add("a")

    dispatcher.process_next(timeout=0)

    clock.now = 1000.0
    assert queue.get(timeout=0) is None
    assert dispatcher.rate_limiter.failures("a") == 0


def test_dispatcher_requeues_unexpected_exceptions() -> None:
    def handler(key: str) -> None:
        raise RuntimeError("bug")

    dispatcher, queue, clock = make_dispatcher(handler)
    queue.add("a")

    dispatcher.process_next(timeout=0)

    clock.now = 2.0
    assert queue.get(timeout=0) == "a"


def test_dispatcher_threads_drain_queue_and_stop() -> None:
    handled: List[str] = []
    queue = WorkQueue()
    dispatcher = Dispatcher(queue, handled.append, workers=2)
    for key in ("a", "b", "c"):
        queue.add(key)

    dispatcher.start()
    dispatcher.stop(timeout=5.0)

    assert sorted(handled) == ["a", "b", "c"]
