"""
Accrual and upgrade ladder tests
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from tests.conftest import START
from utils.errors import AccrualBoundExceeded, ValidationError
from utils.mining_service import (
    calculate_reward, next_mining_power, next_mining_duration
)


class TestCalculateReward:

    def test_four_hour_session_at_one_per_hour(self):
        end = START + timedelta(hours=4)
        assert calculate_reward(START, end, end, Decimal('1.0'), 1) == 4

    def test_late_completion_is_capped_at_scheduled_end(self):
        """Completing 6h into a 4h session still pays 4h."""
        end = START + timedelta(hours=4)
        assert calculate_reward(START, end, START + timedelta(hours=6), Decimal('1.0'), 1) == 4

    def test_partial_hours_are_floored(self):
        end = START + timedelta(hours=4)
        now = START + timedelta(hours=2, minutes=59)
        assert calculate_reward(START, end, now, Decimal('1.0'), 1) == 2

    def test_power_multiplies_rate(self):
        end = START + timedelta(hours=12)
        assert calculate_reward(START, end, end, Decimal('1.5'), 10) == 180

    def test_now_before_start_pays_nothing(self):
        end = START + timedelta(hours=4)
        assert calculate_reward(START, end, START - timedelta(minutes=5), Decimal('1.0'), 1) == 0

    def test_bound_violation_raises(self, monkeypatch):
        """A reward above the session maximum is never clamped silently."""
        import utils.mining_service as mining_service

        real_floor = mining_service._floor
        calls = []

        def inflated_floor(value):
            calls.append(value)
            result = real_floor(value)
            return result + 1 if len(calls) == 1 else result

        monkeypatch.setattr(mining_service, '_floor', inflated_floor)
        end = START + timedelta(hours=4)
        with pytest.raises(AccrualBoundExceeded):
            calculate_reward(START, end, end, Decimal('1.0'), 1)


class TestUpgradeLadders:

    @pytest.mark.parametrize('current,expected', [
        (1, 3), (9, 11), (10, 20), (49, 59), (50, 75), (99, 124), (100, 150), (180, 200),
    ])
    def test_mining_power_steps(self, current, expected):
        assert next_mining_power(current) == expected

    def test_mining_power_maxed(self):
        with pytest.raises(ValidationError):
            next_mining_power(200)

    def test_mining_duration_steps(self):
        assert next_mining_duration(4) == 12
        assert next_mining_duration(12) == 24

    def test_mining_duration_maxed(self):
        with pytest.raises(ValidationError):
            next_mining_duration(24)
