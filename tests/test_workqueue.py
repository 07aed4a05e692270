"""Tests for workqueue.py module."""

import threading

import pytest

from secret_mounter.workqueue import (
    BucketRateLimiter,
    DelayingQueue,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
    WorkQueue,
    default_controller_rate_limiter,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestWorkQueueDeduplication:
    """Tests for at-most-one pending instance per key."""

    def test_duplicate_adds_are_coalesced(self):
        """Test adding a queued key again does not duplicate it."""
        queue = WorkQueue()
        queue.add("ns1/web")
        queue.add("ns1/web")
        queue.add("ns1/api")

        assert len(queue) == 2
        assert queue.get() == ("ns1/web", False)
        assert queue.get() == ("ns1/api", False)
        assert len(queue) == 0

    def test_add_during_processing_is_deferred(self):
        """Test a key re-added while processing is queued again after done."""
        queue = WorkQueue()
        queue.add("ns1/web")
        item, _ = queue.get()

        queue.add("ns1/web")
        assert len(queue) == 0

        queue.done(item)
        assert len(queue) == 1
        assert queue.get() == ("ns1/web", False)

    def test_done_without_readd_drops_key(self):
        """Test a processed key is gone once done."""
        queue = WorkQueue()
        queue.add("ns1/web")
        item, _ = queue.get()

        queue.done(item)

        assert len(queue) == 0

    def test_get_timeout(self):
        """Test get returns no key when nothing arrives."""
        assert WorkQueue().get(timeout=0.01) == (None, False)


class TestWorkQueueShutdown:
    """Tests for shutdown signalling."""

    def test_shutdown_releases_blocked_get(self):
        """Test a blocked get returns the shutdown flag."""
        queue = WorkQueue()
        results = []
        worker = threading.Thread(target=lambda: results.append(queue.get()))
        worker.start()

        queue.shut_down()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert results == [(None, True)]

    def test_add_after_shutdown_is_ignored(self):
        """Test no keys are accepted after shutdown."""
        queue = WorkQueue()
        queue.shut_down()
        queue.add("ns1/web")

        assert len(queue) == 0
        assert queue.shutting_down is True
        assert queue.get() == (None, True)

    def test_pending_keys_are_abandoned_on_shutdown(self):
        """Test get reports shutdown even if keys are pending."""
        queue = WorkQueue()
        queue.add("ns1/web")
        queue.shut_down()

        assert queue.get() == (None, True)


class TestRateLimiters:
    """Tests for retry delay computation."""

    def test_exponential_backoff(self):
        """Test the per-key delay doubles and is capped."""
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=0.02)

        delays = [limiter.when("ns1/web") for _ in range(5)]

        assert delays == [0.005, 0.01, 0.02, 0.02, 0.02]
        assert limiter.num_requeues("ns1/web") == 5
        assert limiter.when("ns1/api") == 0.005

    def test_forget_resets_backoff(self):
        """Test forget clears the failure count."""
        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=100)
        limiter.when("ns1/web")
        limiter.when("ns1/web")

        limiter.forget("ns1/web")

        assert limiter.num_requeues("ns1/web") == 0
        assert limiter.when("ns1/web") == 1

    def test_huge_failure_count_is_capped(self):
        """Test very many failures do not overflow."""
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)
        limiter._failures["ns1/web"] = 5000

        assert limiter.when("ns1/web") == 1000

    def test_bucket_allows_burst_then_waits(self):
        """Test the token bucket delays once the burst is spent."""
        clock = FakeClock()
        limiter = BucketRateLimiter(qps=10, burst=2, clock=clock)

        assert limiter.when("a") == 0
        assert limiter.when("b") == 0
        assert limiter.when("c") == pytest.approx(0.1)

        clock.now += 1
        assert limiter.when("d") == 0

    def test_max_of_takes_longest_delay(self):
        """Test combined limiters use the longest delay and forget everywhere."""
        exponential = ItemExponentialFailureRateLimiter(base_delay=2, max_delay=100)
        bucket = BucketRateLimiter(qps=10, burst=100)
        limiter = MaxOfRateLimiter(exponential, bucket)

        assert limiter.when("ns1/web") == 2
        assert limiter.num_requeues("ns1/web") == 1

        limiter.forget("ns1/web")
        assert limiter.num_requeues("ns1/web") == 0

    def test_default_controller_rate_limiter(self):
        """Test the default limiter starts at the base delay."""
        limiter = default_controller_rate_limiter()

        assert limiter.when("ns1/web") == 0.005


class TestDelayingQueue:
    """Tests for delayed adds."""

    def test_zero_delay_adds_immediately(self):
        """Test add_after with no delay behaves like add."""
        queue = DelayingQueue()
        queue.add_after("ns1/web", 0)

        assert len(queue) == 1

    def test_key_becomes_available_after_delay(self):
        """Test a delayed key is delivered once its delay passed."""
        queue = DelayingQueue()
        try:
            queue.add_after("ns1/web", 0.05)
            assert len(queue) == 0

            assert queue.get(timeout=5) == ("ns1/web", False)
        finally:
            queue.shut_down()

    def test_earlier_add_after_wins(self):
        """Test re-adding a waiting key only moves it earlier."""
        clock = FakeClock()
        queue = DelayingQueue(clock=clock)
        queue.add_after("ns1/web", 60)
        queue.add_after("ns1/web", 10)
        queue.add_after("ns1/web", 30)

        try:
            assert queue._ready_at["ns1/web"] == 110.0
            with queue._delay_cond:
                clock.now = 111.0
                ready, wait = queue._pop_ready()
            assert ready == ["ns1/web"]
            assert wait is None
        finally:
            queue.shut_down()


class TestRateLimitingQueue:
    """Tests for retry pacing."""

    def test_requeue_counts_and_forget(self):
        """Test add_rate_limited tracks requeues until forgotten."""
        limiter = ItemExponentialFailureRateLimiter(base_delay=0, max_delay=0)
        queue = RateLimitingQueue(rate_limiter=limiter)
        queue.add("ns1/web")
        item, _ = queue.get()

        queue.add_rate_limited(item)
        queue.done(item)

        assert queue.num_requeues(item) == 1
        assert queue.get(timeout=1) == ("ns1/web", False)

        queue.forget(item)
        assert queue.num_requeues(item) == 0
