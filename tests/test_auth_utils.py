"""
Telegram initData validation tests
"""

import pytest

from tests.conftest import BOT_TOKEN, make_init_data
from utils.auth_utils import validate_init_data, get_or_create_user
from utils.errors import AuthenticationError

TG_USER = {'id': 424242, 'first_name': 'Ann', 'username': 'ann'}
NOW = 1767268800


class TestValidateInitData:

    def test_valid_signature(self):
        user = validate_init_data(make_init_data(TG_USER, NOW), BOT_TOKEN, max_age=3600, now=NOW + 10)
        assert user['id'] == 424242
        assert user['username'] == 'ann'

    def test_wrong_bot_token(self):
        with pytest.raises(AuthenticationError):
            validate_init_data(make_init_data(TG_USER, NOW, bot_token='999:OTHER'), BOT_TOKEN, now=NOW)

    def test_expired(self):
        with pytest.raises(AuthenticationError):
            validate_init_data(make_init_data(TG_USER, NOW), BOT_TOKEN, max_age=3600, now=NOW + 3601)

    def test_missing_hash(self):
        with pytest.raises(AuthenticationError):
            validate_init_data('auth_date=1&user=%7B%22id%22%3A1%7D', BOT_TOKEN, now=NOW)

    def test_empty(self):
        with pytest.raises(AuthenticationError):
            validate_init_data('', BOT_TOKEN)

    def test_user_without_id(self):
        init_data = make_init_data({'first_name': 'NoId'}, NOW)
        with pytest.raises(AuthenticationError):
            validate_init_data(init_data, BOT_TOKEN, now=NOW)


class TestGetOrCreateUser:

    def test_creates_once(self, app):
        first = get_or_create_user(TG_USER)
        second = get_or_create_user(TG_USER)
        assert first.id == second.id
        assert first.telegram_id == 424242
        assert first.mining_power == 1
        assert first.mining_duration_hours == 4
