"""
Notification delivery tests
"""

import pytest

from extensions import db
from utils import notify_jobs
from utils.notifier import mining_complete_text, notify_user


class FakeResponse:

    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def telegram_reply(monkeypatch):
    sent = []
    reply = {'payload': {'ok': True, 'result': {}}}

    def fake_post(url, json=None, timeout=None):
        sent.append({'url': url, 'json': json, 'timeout': timeout})
        return FakeResponse(reply['payload'])

    monkeypatch.setattr('utils.telegram_api.requests.post', fake_post)
    reply['sent'] = sent
    return reply


class TestDeliver:

    def test_successful_delivery(self, user, telegram_reply):
        result = notify_jobs.deliver(user.id, user.telegram_id, 'hello')
        assert result['ok'] is True
        sent = telegram_reply['sent'][0]
        assert sent['json']['chat_id'] == user.telegram_id
        assert sent['json']['parse_mode'] == 'HTML'
        assert sent['timeout'] == 10

    def test_blocked_user_is_flagged(self, user, telegram_reply):
        telegram_reply['payload'] = {
            'ok': False, 'error_code': 403,
            'description': 'Forbidden: bot was blocked by the user',
        }
        result = notify_jobs.deliver(user.id, user.telegram_id, 'hello')
        assert result['blocked'] is True
        db.session.refresh(user)
        assert user.bot_blocked is True

    def test_transient_failure_keeps_user(self, user, telegram_reply):
        telegram_reply['payload'] = {'ok': False, 'error_code': 429, 'description': 'Too Many Requests'}
        result = notify_jobs.deliver(user.id, user.telegram_id, 'hello')
        assert result['ok'] is False
        db.session.refresh(user)
        assert user.bot_blocked is False


class TestNotifier:

    def test_flagged_user_is_skipped(self, make_user, fake_queue):
        user = make_user(bot_blocked=True)
        assert notify_user(user, 'hi') is False
        assert fake_queue.jobs == []

    def test_enqueue_uses_worker_job(self, user, fake_queue):
        assert notify_user(user, 'hi') is True
        func, args, kwargs = fake_queue.jobs[0]
        assert func == 'utils.notify_jobs.send_telegram_message'
        assert args == (user.id, user.telegram_id, 'hi')
        assert kwargs == {'job_timeout': 60}

    def test_mining_text(self):
        text = mining_complete_text(1200, 5000)
        assert '+1,200 BOLT' in text
        assert '5,000 BOLT' in text
