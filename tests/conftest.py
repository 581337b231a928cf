"""
BOLT backend test fixtures
"""

import hashlib
import hmac
import json
from datetime import datetime
from urllib.parse import urlencode

import pytest
from sqlalchemy import event

from app import create_app
from extensions import db
from models import BoltUser
from utils.clock import clock, to_unix
from utils.rate_limit import completion_cooldown, verify_limiter
from utils.replay_guard import seen_hashes

BOT_TOKEN = '123456:TEST-TOKEN'
WEBHOOK_SECRET = 'hook-secret'
RECEIVER = 'EQ_RECEIVER_ADDRESS'
START = datetime(2026, 1, 1, 12, 0, 0)

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret',
    'JWT_SECRET': 'test-jwt-secret',
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'TELEGRAM_BOT_TOKEN': BOT_TOKEN,
    'TELEGRAM_WEBHOOK_SECRET': WEBHOOK_SECRET,
    'TON_RECEIVER_ADDRESSES': [RECEIVER],
    'SCHEDULER_ENABLED': False,
}


def _enable_sqlite_savepoints(engine):
    # pysqlite 默认的事务处理不支持 SAVEPOINT，改成显式 BEGIN
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class FakeQueue:
    """Records enqueued notification jobs instead of talking to Redis."""

    def __init__(self):
        self.jobs = []
        self.fail = False

    def enqueue(self, func, *args, **kwargs):
        if self.fail:
            raise ConnectionError('redis down')
        self.jobs.append((func, args, kwargs))


class FakeIndexer:
    """Stands in for toncenter; returns the transactions added by a test."""

    def __init__(self):
        self.transactions = []
        self.unavailable = False
        self.calls = 0

    def add(self, tx_hash, value, utime, source='EQ_SENDER'):
        from decimal import Decimal
        self.transactions.append({
            'hash': tx_hash,
            'lt': str(len(self.transactions) + 1),
            'source': source,
            'value': Decimal(str(value)),
            'utime': int(utime),
        })

    def __call__(self, address, limit=50):
        from utils.errors import IndexerUnavailable
        self.calls += 1
        if self.unavailable:
            raise IndexerUnavailable('timeout')
        return list(self.transactions)


@pytest.fixture
def frozen_clock():
    clock.freeze(START)
    yield clock
    clock.unfreeze()


@pytest.fixture
def app(frozen_clock):
    app = create_app(TEST_CONFIG)
    with app.app_context():
        _enable_sqlite_savepoints(db.engine)
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def reset_limits():
    completion_cooldown.reset()
    verify_limiter.reset()
    seen_hashes.reset()
    yield


@pytest.fixture
def fake_queue(monkeypatch):
    queue = FakeQueue()
    monkeypatch.setattr('utils.notifier.notify_queue', queue)
    return queue


@pytest.fixture
def fake_indexer(monkeypatch):
    indexer = FakeIndexer()
    monkeypatch.setattr('utils.ton_client.get_incoming_transactions', indexer)
    return indexer


@pytest.fixture
def make_user(app):
    def _make(telegram_id=1001, **kwargs):
        user = BoltUser(telegram_id=telegram_id, username=f'user{telegram_id}', **kwargs)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


def make_init_data(tg_user, auth_date, bot_token=BOT_TOKEN):
    params = {
        'auth_date': str(int(auth_date)),
        'query_id': 'AAHdF6IQAAAAAN0XohDhrOrc',
        'user': json.dumps(tg_user, separators=(',', ':')),
    }
    data_check_string = '\n'.join(f"{k}={v}" for k, v in sorted(params.items()))
    secret_key = hmac.new(b'WebAppData', bot_token.encode(), hashlib.sha256).digest()
    params['hash'] = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode(params)


@pytest.fixture
def auth_headers(frozen_clock):
    def _headers(telegram_id=1001, username='alice'):
        tg_user = {'id': telegram_id, 'first_name': 'Test', 'username': username}
        return {'X-Telegram-Init-Data': make_init_data(tg_user, to_unix(clock.now()))}
    return _headers
