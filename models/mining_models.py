import uuid
from datetime import datetime
from sqlalchemy import Numeric, Index
from extensions import db


class MiningSession(db.Model):
    __tablename__ = 'mining_sessions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.Integer, db.ForeignKey('bolt_users.id'), nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)  # 创建时固定
    tokens_per_hour = db.Column(Numeric(18, 6), nullable=False, default=1)
    mining_power = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    total_mined = db.Column(db.BigInteger, nullable=True)  # 只在 is_active true->false 时写一次
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('BoltUser', back_populates='mining_sessions')

    __table_args__ = (
        # 每个用户最多一个进行中的 session（数据库层兜底）
        Index(
            'uix_one_active_session_per_user', 'user_id',
            unique=True,
            postgresql_where=db.text('is_active'),
            sqlite_where=db.text('is_active = 1'),
        ),
    )

    def __repr__(self):
        return f"<MiningSession {self.id} user={self.user_id} active={self.is_active}>"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "tokens_per_hour": str(self.tokens_per_hour),
            "mining_power": self.mining_power,
            "is_active": self.is_active,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_mined": self.total_mined,
        }
