from datetime import datetime
from sqlalchemy import Numeric
from sqlalchemy.orm import relationship
from extensions import db


class BoltUser(db.Model):
    # Telegram 用户（身份来自已验签的 initData）
    __tablename__ = 'bolt_users'

    id = db.Column(db.Integer, primary_key=True)
    telegram_id = db.Column(db.BigInteger, unique=True, nullable=False, index=True)
    username = db.Column(db.String(64), nullable=True)
    first_name = db.Column(db.String(128), nullable=True)
    last_name = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 余额字段只允许 utils/ledger.py 修改
    token_balance = db.Column(db.BigInteger, default=0, nullable=False)
    usdt_balance = db.Column(Numeric(36, 18), default=0, nullable=False)
    ton_balance = db.Column(Numeric(20, 9), default=0, nullable=False)

    # 挖矿默认参数，开始挖矿时快照到 session
    mining_power = db.Column(db.Integer, default=1, nullable=False)
    mining_duration_hours = db.Column(db.Integer, default=4, nullable=False)

    # 用户屏蔽了 bot，通知模块不再投递
    bot_blocked = db.Column(db.Boolean, default=False, nullable=False)

    mining_sessions = relationship("MiningSession", back_populates="user", lazy="dynamic")
    payments = relationship("PaymentRecord", back_populates="user", lazy="dynamic")

    def __repr__(self):
        return f"<BoltUser {self.id} tg={self.telegram_id}>"

    def to_dict(self):
        return {
            "id": self.id,
            "telegram_id": self.telegram_id,
            "username": self.username,
            "first_name": self.first_name,
            "token_balance": int(self.token_balance or 0),
            "usdt_balance": str(self.usdt_balance or 0),
            "ton_balance": str(self.ton_balance or 0),
            "mining_power": self.mining_power,
            "mining_duration_hours": self.mining_duration_hours,
        }
