"""
Mining session lifecycle tests
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import MiningSession, BalanceHistory, ReconciliationItem
from utils import session_manager
from utils.errors import AuthorizationError, NotFoundError, RateLimitedError, LedgerError
from utils.ledger import read_balances
from utils.session_manager import (
    start_session, complete_session, poll_status, settle_expired_sessions, session_history
)


class TestStartSession:

    def test_start_snapshots_rate_and_power(self, user, frozen_clock):
        session, created = start_session(user)
        assert created is True
        assert session.is_active is True
        assert session.start_time == frozen_clock.now()
        assert session.end_time == frozen_clock.now() + timedelta(hours=4)
        assert Decimal(session.tokens_per_hour) == Decimal('1.0')
        assert session.mining_power == 1

    def test_start_is_idempotent_while_active(self, user, frozen_clock):
        first, _ = start_session(user)
        frozen_clock.advance(hours=1)
        second, created = start_session(user)
        assert created is False
        assert second.id == first.id
        assert MiningSession.query.filter_by(user_id=user.id).count() == 1

    def test_start_after_expiry_settles_previous(self, user, fake_queue, frozen_clock):
        first, _ = start_session(user)
        frozen_clock.advance(hours=5)
        second, created = start_session(user)

        assert created is True
        assert second.id != first.id
        db.session.refresh(first)
        assert first.is_active is False
        assert first.total_mined == 4
        assert read_balances(user.id)['token_balance'] == 4

    def test_upgrade_does_not_change_running_session(self, user, frozen_clock):
        session, _ = start_session(user)
        user.mining_power = 10
        db.session.commit()
        db.session.refresh(session)
        assert session.mining_power == 1

    def test_one_active_session_enforced_by_database(self, user, frozen_clock):
        start_session(user)
        db.session.add(MiningSession(
            user_id=user.id,
            start_time=frozen_clock.now(),
            end_time=frozen_clock.now() + timedelta(hours=4),
            tokens_per_hour=Decimal('1.0'),
            mining_power=1,
            is_active=True,
        ))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_concurrent_start_returns_existing(self, user, frozen_clock, monkeypatch):
        """The loser of a start race gets the winner's session back."""
        existing, _ = start_session(user)
        real_active = session_manager._active_session
        calls = []

        def miss_once(user_id):
            calls.append(user_id)
            return None if len(calls) == 1 else real_active(user_id)

        monkeypatch.setattr(session_manager, '_active_session', miss_once)
        session, created = start_session(user)
        assert created is False
        assert session.id == existing.id


class TestCompleteSession:

    def test_scenario_a_full_session(self, make_user, fake_queue, frozen_clock):
        """4h session at 1 token/hour, power 2, completed at 4h01m: reward 8."""
        user = make_user(mining_power=2)
        session, _ = start_session(user)
        frozen_clock.advance(hours=4, minutes=1)

        result = complete_session(session.id, user)

        assert result['status'] == 'completed'
        assert result['reward'] == 8
        assert result['new_balance'] == 8
        assert result['reconciliation_pending'] is False
        balances = read_balances(user.id)
        assert balances['token_balance'] == 8
        assert balances['usdt_balance'] == Decimal('0.008')
        assert BalanceHistory.query.filter_by(user_id=user.id, currency='BOLT').count() == 1
        assert len(fake_queue.jobs) == 1
        func, args, _ = fake_queue.jobs[0]
        assert func == 'utils.notify_jobs.send_telegram_message'
        assert args[1] == user.telegram_id

    def test_scenario_b_second_completion_is_noop(self, make_user, fake_queue, frozen_clock):
        user = make_user(mining_power=2)
        session, _ = start_session(user)
        frozen_clock.advance(hours=4, minutes=1)

        first = complete_session(session.id, user)
        frozen_clock.advance(seconds=1)
        second = complete_session(session.id, user)

        assert first['status'] == 'completed'
        assert second['status'] == 'already_completed'
        assert second['reward'] == 8
        assert read_balances(user.id)['token_balance'] == 8
        assert len(fake_queue.jobs) == 1

    def test_early_completion_pays_elapsed_time(self, user, fake_queue, frozen_clock):
        session, _ = start_session(user)
        frozen_clock.advance(hours=2, minutes=30)
        result = complete_session(session.id, user)
        assert result['reward'] == 2

    def test_lost_cas_returns_already_completed(self, user, fake_queue, frozen_clock):
        """A concurrent completion that commits first wins; this one credits nothing."""
        session, _ = start_session(user)
        frozen_clock.advance(hours=4)
        # 另一个请求先完成了状态切换（内存中的对象仍是旧状态）
        db.session.execute(
            update(MiningSession)
            .where(MiningSession.id == session.id)
            .values(is_active=False, completed_at=frozen_clock.now(), total_mined=4)
            .execution_options(synchronize_session=False)
        )

        result = complete_session(session.id, user, enforce_cooldown=False)

        assert result['status'] == 'already_completed'
        assert read_balances(user.id)['token_balance'] == 0
        assert fake_queue.jobs == []

    def test_transition_only_succeeds_once(self, user, frozen_clock):
        session, _ = start_session(user)
        now = frozen_clock.now()
        assert session_manager._transition_to_completed(session.id, now, 1) is True
        assert session_manager._transition_to_completed(session.id, now, 1) is False
        db.session.rollback()

    def test_other_users_session_is_not_found(self, make_user, frozen_clock):
        owner = make_user(telegram_id=1)
        intruder = make_user(telegram_id=2)
        session, _ = start_session(owner)
        with pytest.raises(AuthorizationError):
            complete_session(session.id, intruder)
        db.session.refresh(session)
        assert session.is_active is True

    def test_unknown_session(self, user):
        with pytest.raises(NotFoundError):
            complete_session('missing', user)

    def test_cooldown_rejects_rapid_retry(self, user, fake_queue, frozen_clock, monkeypatch):
        session, _ = start_session(user)
        frozen_clock.advance(hours=1)
        real_transition = session_manager._transition_to_completed

        def failing_transition(*args, **kwargs):
            raise RuntimeError('db hiccup')

        monkeypatch.setattr(session_manager, '_transition_to_completed', failing_transition)
        with pytest.raises(RuntimeError):
            complete_session(session.id, user)
        db.session.rollback()

        with pytest.raises(RateLimitedError):
            complete_session(session.id, user)

        frozen_clock.advance(seconds=6)
        monkeypatch.setattr(session_manager, '_transition_to_completed', real_transition)
        result = complete_session(session.id, user)
        assert result['status'] == 'completed'

    def test_credit_failure_goes_to_reconciliation(self, user, fake_queue, frozen_clock, monkeypatch):
        session, _ = start_session(user)
        frozen_clock.advance(hours=4)

        def broken_credit(*args, **kwargs):
            raise LedgerError('balance row locked')

        monkeypatch.setattr(session_manager, 'credit_session', broken_credit)
        result = complete_session(session.id, user)

        assert result['status'] == 'completed'
        assert result['reconciliation_pending'] is True
        assert result['new_balance'] is None
        db.session.refresh(session)
        assert session.is_active is False
        item = ReconciliationItem.query.filter_by(source_type='mining_session', source_id=session.id).one()
        assert item.status == 'pending'
        assert item.token_amount == 4
        assert read_balances(user.id)['token_balance'] == 0
        assert fake_queue.jobs == []

    def test_blocked_user_is_not_notified(self, make_user, fake_queue, frozen_clock):
        user = make_user(bot_blocked=True)
        session, _ = start_session(user)
        frozen_clock.advance(hours=4)
        complete_session(session.id, user)
        assert fake_queue.jobs == []

    def test_enqueue_failure_does_not_break_completion(self, user, fake_queue, frozen_clock):
        fake_queue.fail = True
        session, _ = start_session(user)
        frozen_clock.advance(hours=4)
        result = complete_session(session.id, user)
        assert result['status'] == 'completed'
        assert read_balances(user.id)['token_balance'] == 4


class TestPollStatus:

    def test_running_session_shows_live_reward(self, user, frozen_clock):
        session, _ = start_session(user)
        frozen_clock.advance(hours=3)
        status = poll_status(user)
        assert status['session'].id == session.id
        assert status['current_reward'] == 3
        assert status['completed_session'] is None

    def test_expired_session_self_heals(self, user, fake_queue, frozen_clock):
        session, _ = start_session(user)
        frozen_clock.advance(hours=9)

        status = poll_status(user)

        assert status['session'] is None
        assert status['completed_session']['status'] == 'completed'
        assert status['completed_session']['reward'] == 4
        assert status['last_completed'].id == session.id
        assert read_balances(user.id)['token_balance'] == 4

        # 再查一次不会重复结算
        again = poll_status(user)
        assert again['completed_session'] is None
        assert read_balances(user.id)['token_balance'] == 4

    def test_unknown_user(self, app):
        status = poll_status(None)
        assert status['session'] is None


class TestSweepsAndHistory:

    def test_settle_expired_sessions(self, make_user, fake_queue, frozen_clock):
        alice = make_user(telegram_id=1)
        bob = make_user(telegram_id=2, mining_power=3)
        start_session(alice)
        frozen_clock.advance(hours=2)
        start_session(bob)
        frozen_clock.advance(hours=3)

        assert settle_expired_sessions() == 1
        assert read_balances(alice.id)['token_balance'] == 4
        assert read_balances(bob.id)['token_balance'] == 0

        frozen_clock.advance(hours=1)
        assert settle_expired_sessions() == 1
        assert read_balances(bob.id)['token_balance'] == 12

    def test_history_lists_completed_sessions(self, user, fake_queue, frozen_clock):
        for _ in range(3):
            session, _ = start_session(user)
            frozen_clock.advance(hours=4)
            complete_session(session.id, user)
            frozen_clock.advance(seconds=10)
        start_session(user)

        total, items = session_history(user, page=1, limit=2)
        assert total == 3
        assert len(items) == 2
        assert all(not s.is_active for s in items)
