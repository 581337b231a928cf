# utils/replay_guard.py
"""
交易哈希防重放，两层：
1. 进程内缓存（快速路径，重启丢失，不能单独依赖）
2. 数据库查询 payment_records.tx_hash（权威），唯一约束做最后兜底
"""
import threading
from extensions import db
from models import PaymentRecord


class SeenHashes:
    def __init__(self, max_size=50000):
        self._lock = threading.Lock()
        self._owners = {}
        self._max_size = max_size

    def owner(self, tx_hash):
        with self._lock:
            return self._owners.get(tx_hash)

    def remember(self, tx_hash, payment_id):
        with self._lock:
            if len(self._owners) >= self._max_size:
                # 丢掉最早的一半，缓存只是优化
                for key in list(self._owners)[: self._max_size // 2]:
                    del self._owners[key]
            self._owners[tx_hash] = payment_id

    def reset(self):
        with self._lock:
            self._owners.clear()


seen_hashes = SeenHashes()


def durable_owner(tx_hash):
    """数据库中已占用该哈希的 payment id，没有返回 None"""
    row = db.session.query(PaymentRecord.id).filter(PaymentRecord.tx_hash == tx_hash).first()
    return row[0] if row else None


def claimed_by_other(tx_hash, payment_id):
    """
    哈希是否已属于另一笔支付。先查进程缓存，再查数据库；
    缓存命中同一笔支付时仍以数据库为准。
    """
    if not tx_hash:
        return False
    cached = seen_hashes.owner(tx_hash)
    if cached is not None and cached != payment_id:
        return True
    owner = durable_owner(tx_hash)
    if owner is not None:
        seen_hashes.remember(tx_hash, owner)
        return owner != payment_id
    return False
