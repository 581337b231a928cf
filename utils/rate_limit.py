# utils/rate_limit.py
"""
进程内限流（尽力而为）。进程重启即丢失、多实例之间不共享，
只用来挡请求风暴；防重复入账靠数据库 CAS 和唯一约束。
"""
import threading
from collections import defaultdict
from utils.clock import clock


class Cooldown:
    """同一个 key 两次尝试之间的最小间隔"""

    def __init__(self):
        self._lock = threading.Lock()
        self._last = {}

    def hit(self, key, seconds):
        """允许则记录并返回 (True, 0)，否则返回 (False, 剩余秒数)"""
        now = clock.monotonic()
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < seconds:
                return False, seconds - (now - last)
            self._last[key] = now
            # 顺手清理过期 key，防止字典无限增长
            if len(self._last) > 10000:
                cutoff = now - seconds
                self._last = {k: t for k, t in self._last.items() if t >= cutoff}
            return True, 0

    def reset(self):
        with self._lock:
            self._last.clear()


class SlidingWindowLimiter:
    """窗口内最多 max_requests 次"""

    def __init__(self):
        self._lock = threading.Lock()
        self._hits = defaultdict(list)

    def hit(self, key, max_requests, window_seconds):
        now = clock.monotonic()
        with self._lock:
            self._hits[key] = [t for t in self._hits[key] if now - t < window_seconds]
            if len(self._hits[key]) >= max_requests:
                retry_after = window_seconds - (now - self._hits[key][0])
                return False, retry_after
            self._hits[key].append(now)
            # 清理窗口外已无记录的 key
            if len(self._hits) > 10000:
                for k in [k for k, hits in self._hits.items() if now - hits[-1] >= window_seconds]:
                    del self._hits[k]
            return True, 0

    def __len__(self):
        return len(self._hits)

    def reset(self):
        with self._lock:
            self._hits.clear()


completion_cooldown = Cooldown()
verify_limiter = SlidingWindowLimiter()
