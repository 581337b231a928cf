"""
In-process limiter tests
"""

from utils.rate_limit import Cooldown, SlidingWindowLimiter


class TestSlidingWindowLimiter:

    def test_blocks_inside_window(self, frozen_clock):
        limiter = SlidingWindowLimiter()
        assert limiter.hit('u1', 2, 60) == (True, 0)
        assert limiter.hit('u1', 2, 60) == (True, 0)
        allowed, retry_after = limiter.hit('u1', 2, 60)
        assert allowed is False
        assert retry_after == 60

        frozen_clock.advance(seconds=60)
        assert limiter.hit('u1', 2, 60) == (True, 0)

    def test_idle_keys_are_pruned(self, frozen_clock):
        limiter = SlidingWindowLimiter()
        for i in range(10001):
            limiter.hit(f'user-{i}', 5, 60)
        assert len(limiter) == 10001

        frozen_clock.advance(seconds=61)
        limiter.hit('fresh', 5, 60)
        assert len(limiter) == 1


class TestCooldown:

    def test_cooldown(self, frozen_clock):
        cooldown = Cooldown()
        assert cooldown.hit('s1', 10) == (True, 0)
        allowed, remaining = cooldown.hit('s1', 10)
        assert allowed is False
        assert remaining == 10
        frozen_clock.advance(seconds=10)
        assert cooldown.hit('s1', 10) == (True, 0)
