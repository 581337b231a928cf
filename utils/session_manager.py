# utils/session_manager.py
"""
挖矿 session 生命周期：开始 / 查询 / 结算。

结算只有一条路径 complete_session：主动结算、查询时发现过期的自愈结算、
定时任务结算都走这里。先用条件更新（CAS）把 is_active 从 true 改成 false，
成功的那一次才入账；入账失败不回滚 session，转人工对账（宁可漏发，不可重复发）。
"""
import logging
from datetime import timedelta
from decimal import Decimal
from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db
from models import MiningSession, BoltUser
from utils.clock import clock
from utils.errors import (
    NotFoundError, AuthorizationError, RateLimitedError, IntegrityViolation, LedgerError
)
from utils.ledger import credit_session, record_reconciliation
from utils.mining_service import calculate_reward, current_reward
from utils.notifier import notify_mining_complete
from utils.rate_limit import completion_cooldown

logger = logging.getLogger(__name__)


def _active_session(user_id):
    return MiningSession.query.filter(
        MiningSession.user_id == user_id,
        MiningSession.is_active.is_(True)
    ).order_by(MiningSession.start_time.desc()).first()


def _last_completed_session(user_id):
    return MiningSession.query.filter(
        MiningSession.user_id == user_id,
        MiningSession.is_active.is_(False)
    ).order_by(MiningSession.completed_at.desc()).first()


def _transition_to_completed(session_id, now, reward):
    """CAS：只有 is_active 仍为 true 时才更新，返回是否抢到"""
    result = db.session.execute(
        update(MiningSession)
        .where(MiningSession.id == session_id, MiningSession.is_active.is_(True))
        .values(is_active=False, completed_at=now, total_mined=reward)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _already_completed(session):
    return {
        'status': 'already_completed',
        'session_id': session.id,
        'reward': session.total_mined,
        'new_balance': None,
        'reconciliation_pending': False,
    }


def start_session(user):
    """
    开始挖矿。已有未过期 session 原样返回（幂等）；
    已过期的先走正常结算再开新的。
    :return: (session, created)
    """
    now = clock.now()
    active = _active_session(user.id)
    if active:
        if active.end_time > now:
            return active, False
        complete_session(active.id, user, enforce_cooldown=False)
        now = clock.now()

    duration_hours = user.mining_duration_hours or 4
    # 速率和倍率在创建时快照，之后升级不影响进行中的 session
    session = MiningSession(
        user_id=user.id,
        start_time=now,
        end_time=now + timedelta(hours=duration_hours),
        tokens_per_hour=Decimal(str(current_app.config['DEFAULT_TOKENS_PER_HOUR'])),
        mining_power=user.mining_power or 1,
        is_active=True,
    )
    db.session.add(session)
    try:
        db.session.commit()
    except IntegrityError:
        # 并发 start 撞上唯一索引，返回先创建的那个
        db.session.rollback()
        existing = _active_session(user.id)
        if existing:
            return existing, False
        raise

    logger.info(f"[start_session] user {user.id} session {session.id} "
                f"{duration_hours}h power={session.mining_power}")
    return session, True


def complete_session(session_id, user, enforce_cooldown=True):
    """
    结算 session
    :return: dict(status=completed|already_completed, reward, new_balance, ...)
    """
    session = db.session.get(MiningSession, session_id)
    if not session:
        raise NotFoundError(f"session {session_id} not found")
    if session.user_id != user.id:
        logger.warning(f"[complete_session] user {user.id} tried to complete session {session_id} "
                       f"owned by {session.user_id}")
        raise AuthorizationError(f"session {session_id} not owned by user {user.id}")

    if not session.is_active:
        return _already_completed(session)

    if enforce_cooldown:
        allowed, retry_after = completion_cooldown.hit(
            session_id, current_app.config['COMPLETE_COOLDOWN_SECONDS'])
        if not allowed:
            db.session.refresh(session)
            if not session.is_active:
                return _already_completed(session)
            raise RateLimitedError('Please wait before retrying', retry_after=retry_after)

    now = clock.now()
    try:
        reward = calculate_reward(session.start_time, session.end_time, now,
                                  session.tokens_per_hour, session.mining_power)
    except IntegrityViolation as e:
        logger.error(f"[complete_session] accrual bound violated for session {session_id}: {e}")
        raise

    if not _transition_to_completed(session_id, now, reward):
        # 并发请求已经结算过
        db.session.rollback()
        session = db.session.get(MiningSession, session_id)
        logger.info(f"[complete_session] session {session_id} already completed by a concurrent call")
        return _already_completed(session)

    balances = None
    reconciliation_pending = False
    try:
        with db.session.begin_nested():
            balances = credit_session(user.id, reward, session_id)
    except (LedgerError, SQLAlchemyError) as e:
        record_reconciliation(user.id, 'mining_session', session_id, e, token_amount=reward,
                              payload={'completed_at': now.isoformat()})
        reconciliation_pending = True

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error(f"[complete_session] commit failed for session {session_id}")
        raise

    logger.info(f"[complete_session] session {session_id} completed, reward {reward} BOLT")

    if balances is not None:
        notify_mining_complete(user, reward, balances['token_balance'])

    return {
        'status': 'completed',
        'session_id': session_id,
        'reward': reward,
        'new_balance': balances['token_balance'] if balances else None,
        'usdt_balance': str(balances['usdt_balance']) if balances else None,
        'reconciliation_pending': reconciliation_pending,
    }


def poll_status(user):
    """
    查询当前 session。过期但仍 active 的 session 在这里顺带结算（自愈），
    与主动结算走同一条路径。
    """
    if user is None:
        return {'session': None, 'current_reward': None, 'completed_session': None,
                'last_completed': None}

    session = _active_session(user.id)
    now = clock.now()
    completed = None

    if session and session.end_time <= now:
        completed = complete_session(session.id, user, enforce_cooldown=False)
        session = None

    last = _last_completed_session(user.id)
    return {
        'session': session,
        'current_reward': current_reward(session, now) if session else None,
        'completed_session': completed,
        'last_completed': last,
    }


def settle_expired_sessions(limit=500):
    """定时任务：结算所有已到期的 session"""
    now = clock.now()
    expired = MiningSession.query.filter(
        MiningSession.is_active.is_(True),
        MiningSession.end_time <= now
    ).order_by(MiningSession.end_time.asc()).limit(limit).all()
    targets = [(s.id, s.user_id) for s in expired]

    settled = 0
    for session_id, user_id in targets:
        user = db.session.get(BoltUser, user_id)
        try:
            result = complete_session(session_id, user, enforce_cooldown=False)
        except IntegrityViolation:
            db.session.rollback()
            continue
        if result['status'] == 'completed':
            settled += 1
    return settled


def session_history(user, page=1, limit=10):
    query = MiningSession.query.filter(
        MiningSession.user_id == user.id,
        MiningSession.is_active.is_(False)
    )
    total = query.count()
    items = query.order_by(MiningSession.completed_at.desc()) \
        .offset((page - 1) * limit).limit(limit).all()
    return total, items
