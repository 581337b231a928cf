# utils/clock.py
"""
服务端可信时钟。所有挖矿收益计算、支付时间窗口、限流都从这里取时间，
绝不使用客户端上报的时间戳。

数据库里统一存 naive UTC 时间（与 MiningHistory 等旧表保持一致）。
"""
import time
from datetime import datetime, timedelta, timezone


class Clock:
    def __init__(self):
        self._frozen = None

    def now(self) -> datetime:
        if self._frozen is not None:
            return self._frozen
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def monotonic(self) -> float:
        # 冻结时用冻结时间的时间戳，保证测试里冷却/限流可控
        if self._frozen is not None:
            return self._frozen.replace(tzinfo=timezone.utc).timestamp()
        return time.monotonic()

    # ---- 测试辅助 ----
    def freeze(self, at: datetime):
        if at.tzinfo is not None:
            at = at.astimezone(timezone.utc).replace(tzinfo=None)
        self._frozen = at

    def advance(self, **kwargs):
        if self._frozen is None:
            raise RuntimeError("clock is not frozen")
        self._frozen = self._frozen + timedelta(**kwargs)

    def unfreeze(self):
        self._frozen = None


clock = Clock()


def to_unix(dt: datetime) -> float:
    """naive UTC datetime -> unix 秒"""
    return dt.replace(tzinfo=timezone.utc).timestamp()
