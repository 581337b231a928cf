from datetime import datetime
from sqlalchemy import Numeric, UniqueConstraint
from extensions import db


class BalanceHistory(db.Model):
    # 余额变动流水，只追加
    __tablename__ = 'balance_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('bolt_users.id'), nullable=False, index=True)
    change_type = db.Column(db.String(60), nullable=False)   # mining_reward / payment_credit / reconciliation_replay
    currency = db.Column(db.String(16), nullable=False)      # BOLT / USDT / TON / UPGRADE
    change_amount = db.Column(Numeric(36, 18), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('BoltUser', backref='balance_history')


class ReconciliationItem(db.Model):
    # 状态已提交但入账失败的记录，等待运营人工补账
    __tablename__ = 'reconciliation_items'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('bolt_users.id'), nullable=False, index=True)
    source_type = db.Column(db.String(32), nullable=False)   # mining_session / payment / payment_refund
    source_id = db.Column(db.String(64), nullable=False)
    token_amount = db.Column(db.BigInteger, nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending / resolved
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint('source_type', 'source_id', name='uix_reconciliation_source'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "token_amount": self.token_amount,
            "payload": self.payload,
            "error_message": self.error_message,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }
