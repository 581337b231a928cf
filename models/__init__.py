# 1. 显式导入所有模型类（供__all__和直接引用使用）
from extensions import db

from .user_models import BoltUser
from .mining_models import MiningSession
from .payment_models import PaymentRecord, PaymentStatusEnum, PaymentRailEnum
from .ledger_models import BalanceHistory, ReconciliationItem

# 2. 定义__all__（控制from models import *的行为）
__all__ = [
    'BoltUser',
    'MiningSession',
    'PaymentRecord',
    'PaymentStatusEnum',
    'PaymentRailEnum',
    'BalanceHistory',
    'ReconciliationItem',
]


# 3. 显式注册函数（确保Flask-Migrate能发现模型）
def register_models():
    """强制导入所有模型模块（触发SQLAlchemy注册）"""
    from . import user_models
    from . import mining_models
    from . import payment_models
    from . import ledger_models
