"""Тести затримок reconnect і черги доставки подій."""

import asyncio
import random

from config import ReconnectPolicy
from connector import DeliveryQueue, ReconnectBackoff


class TestReconnectBackoff:
    def test_fast_first_then_exponential_without_jitter(self) -> None:
        backoff = ReconnectBackoff(ReconnectPolicy(fast_first_delay=0.25, base_delay=0.5, max_delay=30.0, jitter=False))
        assert backoff.next_delay(0) == 0.25
        assert backoff.next_delay(1) == 1.0
        assert backoff.next_delay(3) == 4.0
        assert backoff.next_delay(20) == 30.0

    def test_huge_attempt_is_capped(self) -> None:
        backoff = ReconnectBackoff(ReconnectPolicy(max_delay=12.0, jitter=False))
        assert backoff.next_delay(100_000) == 12.0

    def test_jitter_stays_within_bounds(self) -> None:
        policy = ReconnectPolicy(base_delay=0.5, max_delay=8.0, jitter=True)
        backoff = ReconnectBackoff(policy, rng=random.Random(7))
        for attempt in range(1, 30):
            bound = min(policy.max_delay, policy.base_delay * policy.multiplier ** attempt)
            delay = backoff.next_delay(attempt)
            assert 0.0 <= delay <= bound

    def test_fail_counts_and_success_resets(self) -> None:
        backoff = ReconnectBackoff(ReconnectPolicy(max_retries=2, jitter=False))
        assert backoff.fail("boom") == 0.25
        assert backoff.attempts == 1
        backoff.fail("boom")
        assert backoff.exhausted
        assert backoff.snapshot()["last_error"] == "boom"
        backoff.success()
        assert backoff.attempts == 0
        assert not backoff.exhausted


class TestDeliveryQueue:
    def _drain(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.run_until_complete(asyncio.sleep(0.01))

    def test_events_per_key_keep_order(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            queue = DeliveryQueue(loop, 10)
            seen = []
            for idx in range(5):
                queue.push("a", lambda idx=idx: seen.append(("a", idx)))
                queue.push("b", lambda idx=idx: seen.append(("b", idx)))
            self._drain(loop)
            assert [idx for key, idx in seen if key == "a"] == [0, 1, 2, 3, 4]
            assert [idx for key, idx in seen if key == "b"] == [0, 1, 2, 3, 4]
            assert queue.snapshot()["delivered"] == 10
        finally:
            loop.close()

    def test_overflow_drops_oldest_and_reports(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            drops = []
            queue = DeliveryQueue(loop, 2, on_drop=lambda key, count: drops.append((key, count)))
            seen = []
            for idx in range(3):
                queue.push("slow", lambda idx=idx: seen.append(idx))
            self._drain(loop)
            assert seen == [1, 2]
            assert drops == [("slow", 1)]
            assert queue.snapshot()["dropped_total"] == 1
        finally:
            loop.close()

    def test_failing_callback_does_not_stop_delivery(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            queue = DeliveryQueue(loop, 10)
            seen = []

            def broken() -> None:
                raise RuntimeError("boom")

            queue.push("a", broken)
            queue.push("a", lambda: seen.append("ok"))
            self._drain(loop)
            assert seen == ["ok"]
        finally:
            loop.close()
