# utils/ledger.py
"""
余额入账。这里的函数只 flush 不 commit，由调用方把“状态 CAS + 入账”
放在同一个事务里提交。余额一律用 SQL 自增表达式更新，不做读-改-写。
"""
import logging
from decimal import Decimal
from flask import current_app
from sqlalchemy import update, select
from extensions import db
from models import BoltUser, BalanceHistory, ReconciliationItem, PaymentRecord
from utils.clock import clock
from utils.errors import LedgerError, NotFoundError, ValidationError
from utils.mining_service import next_mining_power, next_mining_duration

logger = logging.getLogger(__name__)

TOKEN_SYMBOL = 'BOLT'


def read_balances(user_id):
    row = db.session.execute(
        select(BoltUser.token_balance, BoltUser.usdt_balance, BoltUser.ton_balance)
        .where(BoltUser.id == user_id)
    ).first()
    if row is None:
        raise LedgerError(f"user {user_id} not found")
    return {
        'token_balance': int(row.token_balance or 0),
        'usdt_balance': Decimal(row.usdt_balance or 0),
        'ton_balance': Decimal(row.ton_balance or 0),
    }


def _increment(user_id, **deltas):
    values = {name: getattr(BoltUser, name) + delta for name, delta in deltas.items()}
    result = db.session.execute(
        update(BoltUser)
        .where(BoltUser.id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LedgerError(f"user {user_id} not found while crediting")


def _refresh_user(user_id):
    user = db.session.get(BoltUser, user_id)
    if user is not None:
        db.session.refresh(user)


def credit_session(user_id, token_amount, session_id, change_type='mining_reward'):
    """
    挖矿收益入账：BOLT 与按固定汇率折算的 USDT 在同一条 UPDATE 里写入
    :return: 最新余额 dict
    """
    token_amount = int(token_amount)
    usdt_delta = Decimal(token_amount) * Decimal(str(current_app.config['USDT_PER_TOKEN']))

    _increment(user_id, token_balance=token_amount, usdt_balance=usdt_delta)

    db.session.add(BalanceHistory(
        user_id=user_id,
        change_type=change_type,
        currency=TOKEN_SYMBOL,
        change_amount=Decimal(token_amount),
        reference_id=session_id,
        description=f'Mining session reward +{token_amount} {TOKEN_SYMBOL}',
    ))
    if usdt_delta:
        db.session.add(BalanceHistory(
            user_id=user_id,
            change_type=change_type,
            currency='USDT',
            change_amount=usdt_delta,
            reference_id=session_id,
            description='Mining reward USDT conversion',
        ))
    db.session.flush()
    _refresh_user(user_id)
    return read_balances(user_id)


def credit_payment(payment, change_type='payment_credit'):
    """
    已验证支付入账，按商品类型发放：
    - ton_deposit: 充值 TON 余额
    - token_pack: 发放 BOLT
    - mining_power / mining_duration: 升级挖矿参数（只影响之后新开的 session）
    :return: (最新余额 dict, 发放明细 dict)
    """
    user_id = payment.user_id
    product_type = payment.product_type
    reward = {'product_type': product_type}

    if product_type == 'ton_deposit':
        amount = Decimal(payment.amount_expected)
        _increment(user_id, ton_balance=amount)
        reward['ton_credited'] = str(amount)
        history = ('TON', amount, f'TON deposit +{amount}')

    elif product_type == 'token_pack':
        tokens = int(payment.reward_amount or 0)
        if tokens <= 0:
            raise LedgerError(f"payment {payment.id} has no token reward")
        _increment(user_id, token_balance=tokens)
        reward['tokens_credited'] = tokens
        history = (TOKEN_SYMBOL, Decimal(tokens), f'Token pack +{tokens} {TOKEN_SYMBOL}')

    elif product_type in ('mining_power', 'mining_duration'):
        user = BoltUser.query.filter_by(id=user_id).with_for_update().first()
        if not user:
            raise LedgerError(f"user {user_id} not found while upgrading")
        try:
            if product_type == 'mining_power':
                previous = user.mining_power
                user.mining_power = next_mining_power(previous)
                current = user.mining_power
            else:
                previous = user.mining_duration_hours
                user.mining_duration_hours = next_mining_duration(previous)
                current = user.mining_duration_hours
        except ValidationError as e:
            # 已付款但已满级（并发购买），交给人工处理退款
            raise LedgerError(f"upgrade {product_type} not applicable: {e.message}")
        reward.update({'previous': previous, 'current': current})
        history = ('UPGRADE', Decimal(current), f'{product_type} {previous} -> {current}')

    else:
        raise LedgerError(f"unknown product type {product_type}")

    currency, amount, description = history
    db.session.add(BalanceHistory(
        user_id=user_id,
        change_type=change_type,
        currency=currency,
        change_amount=amount,
        reference_id=payment.id,
        description=description,
    ))
    db.session.flush()
    _refresh_user(user_id)
    return read_balances(user_id), reward


def record_reconciliation(user_id, source_type, source_id, error, token_amount=None, payload=None):
    """状态已经提交但入账失败：写一条待人工处理记录（与状态变更同一事务）"""
    item = ReconciliationItem(
        user_id=user_id,
        source_type=source_type,
        source_id=source_id,
        token_amount=token_amount,
        payload=payload,
        error_message=str(error)[:2000],
        status='pending',
    )
    db.session.add(item)
    db.session.flush()
    logger.error(
        f"[reconciliation] credit failed after state commit: {source_type}={source_id} "
        f"user={user_id} amount={token_amount} error={error}"
    )
    return item


def list_reconciliation(status='pending', page=1, limit=20):
    query = ReconciliationItem.query
    if status:
        query = query.filter_by(status=status)
    total = query.count()
    items = query.order_by(ReconciliationItem.created_at.asc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return total, items


def replay_reconciliation(item_id, operator):
    """
    运营人工补账：先 CAS pending->resolved，再入账，同一事务提交；
    入账失败则整体回滚，记录保持 pending
    :return: (item, balances)；已被处理过返回 (item, None)
    """
    item = db.session.get(ReconciliationItem, item_id)
    if not item:
        raise NotFoundError(f"reconciliation item {item_id} not found")

    try:
        result = db.session.execute(
            update(ReconciliationItem)
            .where(ReconciliationItem.id == item_id, ReconciliationItem.status == 'pending')
            .values(status='resolved', resolved_at=clock.now(), resolved_by=str(operator))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            return db.session.get(ReconciliationItem, item_id), None

        if item.source_type == 'mining_session':
            balances = credit_session(item.user_id, item.token_amount, item.source_id,
                                      change_type='reconciliation_replay')
        elif item.source_type == 'payment_refund':
            # 金额不符的付款不入账，运营线下退款后只做结案
            balances = read_balances(item.user_id)
        else:
            payment = db.session.get(PaymentRecord, item.source_id)
            if not payment:
                raise LedgerError(f"payment {item.source_id} not found")
            balances, _ = credit_payment(payment, change_type='reconciliation_replay')

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(item)
    logger.info(f"[reconciliation] item {item_id} replayed by {operator}")
    return item, balances
