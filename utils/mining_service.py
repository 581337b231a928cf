from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from utils.errors import AccrualBoundExceeded, ValidationError

SECONDS_PER_HOUR = Decimal(3600)

MAX_MINING_POWER = 200
MAX_MINING_DURATION_HOURS = 24
MINING_DURATION_LADDER = (4, 12, 24)


def _hours_between(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(str((end - start).total_seconds()))
    return seconds / SECONDS_PER_HOUR


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def calculate_reward(start_time, scheduled_end, now, rate_per_hour, power):
    """
    计算挖矿收益（整数，向下取整）
    - 结束时间取 min(now, scheduled_end)，晚来的结算请求不会多算
    - 收益超过整段 session 的理论上限视为时钟/逻辑故障，直接抛错，不做截断
    :return: int
    """
    rate = Decimal(str(rate_per_hour))
    power = Decimal(str(power))

    effective_end = min(now, scheduled_end)
    elapsed_hours = max(Decimal(0), _hours_between(start_time, effective_end))
    tokens = _floor(elapsed_hours * rate * power)

    max_hours = max(Decimal(0), _hours_between(start_time, scheduled_end))
    max_possible = _floor(max_hours * rate * power)
    if tokens > max_possible:
        raise AccrualBoundExceeded(
            f"reward {tokens} exceeds bound {max_possible} "
            f"(start={start_time}, end={scheduled_end}, now={now})"
        )
    return tokens


def current_reward(session, now):
    """进行中 session 的实时收益预览（只读，不入账）"""
    return calculate_reward(
        session.start_time, session.end_time, now,
        session.tokens_per_hour, session.mining_power
    )


def next_mining_power(current: int) -> int:
    """
    挖矿倍率升级阶梯：
    <10 每级 +2，<50 每级 +10，<100 每级 +25，之后 +50，封顶 200
    """
    if current >= MAX_MINING_POWER:
        raise ValidationError('Maximum mining power reached')
    if current < 10:
        return current + 2
    elif current < 50:
        return current + 10
    elif current < 100:
        return current + 25
    return min(MAX_MINING_POWER, current + 50)


def next_mining_duration(current: int) -> int:
    """挖矿时长升级：4h -> 12h -> 24h"""
    if current >= MAX_MINING_DURATION_HOURS:
        raise ValidationError('Maximum mining duration reached')
    for hours in MINING_DURATION_LADDER:
        if hours > current:
            return hours
    return MAX_MINING_DURATION_HOURS
