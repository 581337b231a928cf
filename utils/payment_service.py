# utils/payment_service.py
"""
支付验证与入账（TON 链上转账 / Telegram Stars）。

状态机：pending -> confirmed | failed，终态不可再变。
确认流程：独立查链（不信任客户端）-> 防重放 -> CAS(status=pending) -> 入账。
查不到交易或索引服务不可用都返回 pending，客户端稍后再轮询。
"""
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db
from models import PaymentRecord, PaymentStatusEnum, PaymentRailEnum, BoltUser, ReconciliationItem
from utils.clock import clock
from utils.errors import (
    NotFoundError, AuthorizationError, ValidationError, RateLimitedError,
    DuplicateTransactionError, IntegrityViolation, LedgerError, IndexerUnavailable,
    ExternalServiceError,
)
from utils.ledger import credit_payment, record_reconciliation
from utils.mining_service import next_mining_power, next_mining_duration
from utils.notifier import notify_payment_confirmed
from utils.products import get_product, ledger_product_type
from utils.rate_limit import verify_limiter
from utils.replay_guard import claimed_by_other, seen_hashes
from utils import ton_client
from utils import telegram_api

logger = logging.getLogger(__name__)

STARS_DESTINATION = 'telegram:stars'


def _result(payment, status=None, **extra):
    data = {
        'status': status or payment.status.value,
        'payment': payment,
        'already_confirmed': False,
        'reward': None,
        'balances': None,
        'reconciliation_pending': False,
    }
    data.update(extra)
    return data


def get_user_payment(payment_id, user):
    payment = db.session.get(PaymentRecord, payment_id)
    if not payment:
        raise NotFoundError(f"payment {payment_id} not found")
    if payment.user_id != user.id:
        logger.warning(f"[payment] user {user.id} tried to access payment {payment_id} "
                       f"owned by {payment.user_id}")
        raise AuthorizationError(f"payment {payment_id} not owned by user {user.id}")
    return payment


def _check_upgrade_available(user, ledger_type):
    # 满级时直接拒绝下单（会抛 ValidationError）
    if ledger_type == 'mining_power':
        next_mining_power(user.mining_power)
    elif ledger_type == 'mining_duration':
        next_mining_duration(user.mining_duration_hours)


def receiver_addresses():
    return [a for a in (ton_client.normalize_ton_address(x)
                        for x in current_app.config.get('TON_RECEIVER_ADDRESSES') or []) if a]


# ----------------- 创建订单 -----------------
def create_payment_intent(user, product_type, amount=None, destination=None):
    product = get_product(product_type)
    if not product:
        raise ValidationError('Unknown product type')
    ledger_type = ledger_product_type(product_type)

    if product_type == 'ton_deposit':
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError('Invalid amount')
        if not amount.is_finite() or amount < Decimal(str(current_app.config['MIN_DEPOSIT_TON'])):
            raise ValidationError(f"Minimum deposit is {current_app.config['MIN_DEPOSIT_TON']} TON")
        if amount > Decimal(str(current_app.config['MAX_DEPOSIT_TON'])):
            raise ValidationError(f"Maximum deposit is {current_app.config['MAX_DEPOSIT_TON']} TON")
    else:
        # 商品价格以服务端价格表为准
        amount = product['ton']

    _check_upgrade_available(user, ledger_type)

    receivers = receiver_addresses()
    if not receivers:
        raise ExternalServiceError('TON_RECEIVER_ADDRESSES not configured')
    if destination:
        destination = ton_client.normalize_ton_address(destination)
        if destination not in receivers:
            raise ValidationError('Unknown destination address')
    else:
        destination = receivers[0]

    payment = PaymentRecord(
        user_id=user.id,
        rail=PaymentRailEnum.ton,
        product_type=ledger_type,
        destination_address=destination,
        amount_expected=amount,
        reward_amount=product.get('tokens'),
        status=PaymentStatusEnum.pending,
        created_at=clock.now(),
    )
    db.session.add(payment)
    db.session.commit()
    logger.info(f"[create_payment_intent] payment {payment.id} user {user.id} "
                f"{ledger_type} {amount} TON -> {destination}")
    return payment


def create_stars_invoice(user, product_type):
    product = get_product(product_type)
    if not product or product['stars'] is None:
        raise ValidationError('Product is not available for Stars')
    ledger_type = ledger_product_type(product_type)
    _check_upgrade_available(user, ledger_type)

    payment = PaymentRecord(
        user_id=user.id,
        rail=PaymentRailEnum.stars,
        product_type=ledger_type,
        destination_address=STARS_DESTINATION,
        amount_expected=Decimal(product['stars']),
        reward_amount=product.get('tokens'),
        status=PaymentStatusEnum.pending,
        created_at=clock.now(),
    )
    db.session.add(payment)
    db.session.commit()

    try:
        link = telegram_api.create_invoice_link(
            product['title'], product['title'], payment.id, product['stars'])
    except Exception as e:
        logger.error(f"[create_stars_invoice] payment {payment.id} 创建发票失败: {e}")
        _fail_payment(payment.id, 'invoice_failed')
        raise ExternalServiceError(str(e))

    return payment, link


# ----------------- 确认（CAS + 入账） -----------------
def _confirm_payment(payment_id, user, tx_hash, verified_amount):
    now = clock.now()
    try:
        result = db.session.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == payment_id,
                   PaymentRecord.status == PaymentStatusEnum.pending)
            .values(status=PaymentStatusEnum.confirmed, tx_hash=tx_hash,
                    verified_amount=verified_amount, confirmed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        # 唯一约束兜底：该哈希已被另一笔订单占用
        db.session.rollback()
        logger.error(f"[confirm_payment] duplicate tx_hash {tx_hash} for payment {payment_id}")
        raise DuplicateTransactionError(f"tx {tx_hash} already used")

    if result.rowcount == 0:
        # 并发请求已确认（或订单已失败），不重复入账
        db.session.rollback()
        payment = db.session.get(PaymentRecord, payment_id)
        logger.info(f"[confirm_payment] payment {payment_id} not pending any more: {payment.status.value}")
        return _result(payment, already_confirmed=payment.status == PaymentStatusEnum.confirmed)

    payment = db.session.get(PaymentRecord, payment_id)
    db.session.refresh(payment)

    balances, reward = None, None
    reconciliation_pending = False
    try:
        with db.session.begin_nested():
            balances, reward = credit_payment(payment)
    except (LedgerError, SQLAlchemyError) as e:
        record_reconciliation(user.id, 'payment', payment_id, e,
                              token_amount=payment.reward_amount,
                              payload={'tx_hash': tx_hash, 'product_type': payment.product_type,
                                       'amount': str(payment.amount_expected)})
        reconciliation_pending = True

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"[confirm_payment] commit failed for payment {payment_id}")
        raise

    seen_hashes.remember(tx_hash, payment_id)
    logger.info(f"[confirm_payment] payment {payment_id} confirmed tx={tx_hash} "
                f"amount={verified_amount} product={payment.product_type}")

    if reward is not None:
        notify_payment_confirmed(user, payment, reward)

    return _result(payment, reward=reward, balances=balances,
                   reconciliation_pending=reconciliation_pending)


def _fail_payment(payment_id, reason):
    now = clock.now()
    result = db.session.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == payment_id,
               PaymentRecord.status == PaymentStatusEnum.pending)
        .values(status=PaymentStatusEnum.failed, failure_reason=reason, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


# ----------------- TON 验证 -----------------
def _find_onchain_match(payment, claimed_hash=None, transactions=None):
    """
    :return: (match|None, reachable)；reachable=False 表示索引服务不可用
    """
    if transactions is None:
        try:
            transactions = ton_client.get_incoming_transactions(payment.destination_address)
        except IndexerUnavailable as e:
            logger.warning(f"[verify] indexer unavailable for payment {payment.id}: {e}")
            return None, False

    config = current_app.config
    match = ton_client.find_matching_transaction(
        transactions,
        expected_amount=payment.amount_expected,
        created_at=payment.created_at,
        tolerance=config['TON_AMOUNT_TOLERANCE'],
        window_seconds=config['TX_MATCH_WINDOW_SECONDS'],
        skew_seconds=config['TX_CLOCK_SKEW_SECONDS'],
        claimed_hash=claimed_hash,
        is_taken=lambda tx_hash: claimed_by_other(tx_hash, payment.id),
    )
    return match, True


def verify_and_confirm(payment_id, user, claimed_tx_hash=None, claimed_wallet=None):
    """
    客户端上报后验证 TON 支付
    :return: dict(status=pending|confirmed|failed, reward, ...)
    """
    allowed, retry_after = verify_limiter.hit(
        f"verify:{user.id}",
        current_app.config['VERIFY_MAX_ATTEMPTS'],
        current_app.config['VERIFY_WINDOW_SECONDS'],
    )
    if not allowed:
        raise RateLimitedError('Too many verification attempts', retry_after=retry_after)

    payment = get_user_payment(payment_id, user)

    if payment.status == PaymentStatusEnum.confirmed:
        return _result(payment, already_confirmed=True)
    if payment.status == PaymentStatusEnum.failed:
        return _result(payment)
    if payment.rail != PaymentRailEnum.ton:
        # Stars 订单由 Telegram 回调确认
        return _result(payment)

    claimed_tx_hash = (claimed_tx_hash or '').strip() or None
    if claimed_tx_hash and claimed_by_other(claimed_tx_hash, payment.id):
        logger.error(f"[verify] replayed tx_hash {claimed_tx_hash} for payment {payment.id} "
                     f"by user {user.id}")
        raise DuplicateTransactionError(f"tx {claimed_tx_hash} already used")

    match, _ = _find_onchain_match(payment, claimed_hash=claimed_tx_hash)
    if match is None:
        return _result(payment, status='pending')

    # 客户端上报的钱包地址只做参考
    if claimed_wallet and ton_client.normalize_ton_address(claimed_wallet) != \
            ton_client.normalize_ton_address(match['source']):
        logger.warning(f"[verify] payment {payment.id}: claimed wallet {claimed_wallet} "
                       f"differs from on-chain source {match['source']}")

    return _confirm_payment(payment.id, user, match['hash'], match['value'])


def cancel_payment(payment_id, user):
    """用户主动取消：pending -> failed"""
    payment = get_user_payment(payment_id, user)
    if payment.status != PaymentStatusEnum.pending:
        return _result(payment)
    _fail_payment(payment_id, 'cancelled')
    payment = db.session.get(PaymentRecord, payment_id)
    logger.info(f"[cancel_payment] payment {payment_id} -> {payment.status.value}")
    return _result(payment)


# ----------------- Telegram Stars -----------------
def check_pre_checkout(query):
    """
    pre_checkout_query 校验
    :return: (ok, error_message)
    """
    payment = db.session.get(PaymentRecord, str(query.get('invoice_payload') or ''))
    if not payment or payment.rail != PaymentRailEnum.stars:
        return False, 'Unknown order'
    payer = (query.get('from') or {}).get('id')
    user = BoltUser.query.filter_by(telegram_id=payer).first() if payer else None
    if not user or user.id != payment.user_id:
        logger.warning(f"[pre_checkout] payer {payer} does not own payment {payment.id}")
        return False, 'Unknown order'
    if payment.status != PaymentStatusEnum.pending:
        return False, 'Order is no longer payable'
    if query.get('currency') != 'XTR' or int(query.get('total_amount') or 0) != int(payment.amount_expected):
        return False, 'Amount mismatch'
    return True, None


def confirm_stars_payment(successful_payment, payer):
    payment_id = str(successful_payment.get('invoice_payload') or '')
    charge_id = successful_payment.get('telegram_payment_charge_id')
    if not charge_id:
        raise ValidationError('Missing telegram_payment_charge_id')

    payment = db.session.get(PaymentRecord, payment_id)
    if not payment or payment.rail != PaymentRailEnum.stars:
        logger.error(f"[stars] successful_payment for unknown order {payment_id}, charge {charge_id}")
        raise NotFoundError(f"payment {payment_id} not found")

    user = BoltUser.query.filter_by(telegram_id=(payer or {}).get('id')).first()
    if not user or user.id != payment.user_id:
        logger.error(f"[stars] payer {payer} does not own payment {payment_id}")
        raise AuthorizationError(f"payment {payment_id} not owned by payer")

    total_amount = int(successful_payment.get('total_amount') or 0)
    if successful_payment.get('currency') != 'XTR' or total_amount != int(payment.amount_expected):
        logger.error(f"[stars] amount mismatch for payment {payment_id}: "
                     f"{total_amount} {successful_payment.get('currency')}")
        # 用户已被扣款，记一条待退款记录
        if not ReconciliationItem.query.filter_by(source_type='payment_refund', source_id=payment_id).first():
            record_reconciliation(user.id, 'payment_refund', payment_id, 'Stars amount mismatch',
                                  payload={'tx_hash': charge_id, 'product_type': payment.product_type,
                                           'currency': successful_payment.get('currency'),
                                           'total_amount': total_amount})
            db.session.commit()
        raise IntegrityViolation('Stars amount mismatch')

    if payment.status == PaymentStatusEnum.confirmed:
        return _result(payment, already_confirmed=True)

    if claimed_by_other(charge_id, payment.id):
        logger.error(f"[stars] replayed charge {charge_id} for payment {payment_id}")
        raise DuplicateTransactionError(f"charge {charge_id} already used")

    if payment.status == PaymentStatusEnum.failed:
        # 订单已过期/取消但用户实际付了款，转人工处理
        if ReconciliationItem.query.filter_by(source_type='payment', source_id=payment_id).first():
            return _result(payment, reconciliation_pending=True)
        record_reconciliation(user.id, 'payment', payment_id, 'paid after payment failed',
                              token_amount=payment.reward_amount,
                              payload={'tx_hash': charge_id, 'product_type': payment.product_type})
        db.session.commit()
        return _result(payment, reconciliation_pending=True)

    return _confirm_payment(payment_id, user, charge_id, Decimal(total_amount))


# ----------------- 定时任务 -----------------
def recheck_pending_payments(limit=200):
    """重新验证未过期的 pending TON 订单（用户关掉了 app 也能到账）"""
    cutoff = clock.now() - timedelta(minutes=current_app.config['PAYMENT_EXPIRY_MINUTES'])
    pending = PaymentRecord.query.filter(
        PaymentRecord.status == PaymentStatusEnum.pending,
        PaymentRecord.rail == PaymentRailEnum.ton,
        PaymentRecord.created_at >= cutoff,
    ).order_by(PaymentRecord.created_at.asc()).limit(limit).all()
    targets = [(p.id, p.user_id, p.destination_address) for p in pending]

    confirmed = 0
    cache = {}
    for payment_id, user_id, destination in targets:
        if destination not in cache:
            try:
                cache[destination] = ton_client.get_incoming_transactions(destination)
            except IndexerUnavailable as e:
                logger.warning(f"[recheck_pending_payments] indexer unavailable: {e}")
                cache[destination] = None
        transactions = cache[destination]
        if transactions is None:
            continue

        payment = db.session.get(PaymentRecord, payment_id)
        match, _ = _find_onchain_match(payment, transactions=transactions)
        if match is None:
            continue
        user = db.session.get(BoltUser, user_id)
        try:
            result = _confirm_payment(payment_id, user, match['hash'], match['value'])
        except IntegrityViolation:
            continue
        if result['status'] == 'confirmed' and not result['already_confirmed']:
            confirmed += 1
    return confirmed


def expire_stale_payments(limit=200):
    """
    超时未确认的订单置为 failed。TON 订单先做最后一次链上检查，
    索引服务不可用时本轮跳过，不误判。
    """
    cutoff = clock.now() - timedelta(minutes=current_app.config['PAYMENT_EXPIRY_MINUTES'])
    stale = PaymentRecord.query.filter(
        PaymentRecord.status == PaymentStatusEnum.pending,
        PaymentRecord.created_at < cutoff,
    ).order_by(PaymentRecord.created_at.asc()).limit(limit).all()
    targets = [(p.id, p.user_id, p.rail) for p in stale]

    expired = 0
    for payment_id, user_id, rail in targets:
        if rail == PaymentRailEnum.ton:
            payment = db.session.get(PaymentRecord, payment_id)
            match, reachable = _find_onchain_match(payment)
            if not reachable:
                continue
            if match is not None:
                user = db.session.get(BoltUser, user_id)
                try:
                    _confirm_payment(payment_id, user, match['hash'], match['value'])
                except IntegrityViolation:
                    pass
                continue
        if _fail_payment(payment_id, 'expired'):
            expired += 1
            logger.info(f"[expire_stale_payments] payment {payment_id} expired")
    return expired
