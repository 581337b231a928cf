import uuid
from datetime import datetime
from enum import Enum
from extensions import db


class PaymentStatusEnum(Enum):
    pending = "pending"      # 已创建，等待链上/Stars 确认
    confirmed = "confirmed"  # 已验证并入账（终态）
    failed = "failed"        # 取消或过期（终态）


class PaymentRailEnum(Enum):
    ton = "ton"
    stars = "stars"


class PaymentRecord(db.Model):
    __tablename__ = "payment_records"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.Integer, db.ForeignKey("bolt_users.id"), nullable=False, index=True)
    rail = db.Column(db.Enum(PaymentRailEnum), nullable=False, default=PaymentRailEnum.ton)
    product_type = db.Column(db.String(32), nullable=False)               # ton_deposit / token_pack / mining_power ...
    destination_address = db.Column(db.String(128), nullable=False, index=True)
    amount_expected = db.Column(db.Numeric(20, 9), nullable=False)        # TON 或 Stars 数量
    reward_amount = db.Column(db.BigInteger, nullable=True)               # token_pack 发放的代币数
    status = db.Column(db.Enum(PaymentStatusEnum), nullable=False, default=PaymentStatusEnum.pending, index=True)
    # 交易哈希全局唯一：同一笔链上交易不能给两笔订单入账
    tx_hash = db.Column(db.String(128), nullable=True, unique=True)
    verified_amount = db.Column(db.Numeric(20, 9), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("BoltUser", back_populates="payments")

    def __repr__(self):
        return f"<PaymentRecord {self.id} {self.rail.value if self.rail else None} {self.status}>"

    def to_dict(self):
        return {
            "id": self.id,
            "rail": self.rail.value if self.rail else None,
            "product_type": self.product_type,
            "destination_address": self.destination_address,
            "amount_expected": str(self.amount_expected) if self.amount_expected is not None else None,
            "reward_amount": self.reward_amount,
            "status": self.status.value if self.status else None,
            "tx_hash": self.tx_hash,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }
