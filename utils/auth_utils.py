# auth_utils.py
import hashlib
import hmac
import json
import logging
import time
import jwt
from urllib.parse import parse_qsl
from flask import request, jsonify, current_app, g
from functools import wraps
from sqlalchemy.exc import IntegrityError
from extensions import db
from models import BoltUser
from utils.clock import clock, to_unix
from utils.errors import AuthenticationError

logger = logging.getLogger(__name__)

INIT_DATA_HEADER = 'X-Telegram-Init-Data'
WEBHOOK_SECRET_HEADER = 'X-Telegram-Bot-Api-Secret-Token'


def validate_init_data(init_data, bot_token, max_age=3600, now=None):
    """
    校验 Telegram WebApp initData
    :return: Telegram user dict
    :raises AuthenticationError
    """
    if not init_data or not bot_token:
        raise AuthenticationError('Missing init data')

    params = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = params.pop('hash', None)
    if not received_hash:
        raise AuthenticationError('Missing init data hash')

    data_check_string = '\n'.join(f"{k}={v}" for k, v in sorted(params.items()))
    secret_key = hmac.new(b'WebAppData', bot_token.encode(), hashlib.sha256).digest()
    expected_hash = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected_hash, received_hash):
        raise AuthenticationError('Invalid init data signature')

    try:
        auth_date = int(params.get('auth_date', 0))
    except ValueError:
        raise AuthenticationError('Invalid auth_date')
    now = int(now if now is not None else time.time())
    if max_age and now - auth_date > max_age:
        raise AuthenticationError('Init data expired')

    try:
        user = json.loads(params.get('user') or '')
    except ValueError:
        raise AuthenticationError('Invalid user payload')
    if not isinstance(user, dict) or not user.get('id'):
        raise AuthenticationError('Invalid user payload')
    return user


def _request_init_data():
    init_data = request.headers.get(INIT_DATA_HEADER)
    if init_data:
        return init_data
    body = request.get_json(silent=True) or {}
    return body.get('init_data') or request.args.get('init_data')


def telegram_auth_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.telegram_user = validate_init_data(
            _request_init_data(),
            current_app.config.get('TELEGRAM_BOT_TOKEN'),
            max_age=current_app.config['INIT_DATA_MAX_AGE'],
            now=to_unix(clock.now()),
        )
        return f(*args, **kwargs)
    return decorated_function


def find_user(tg_user):
    return BoltUser.query.filter_by(telegram_id=int(tg_user['id'])).first()


def get_or_create_user(tg_user):
    """首次访问自动注册；并发注册撞唯一约束时取已存在的那条"""
    user = find_user(tg_user)
    if user:
        return user

    user = BoltUser(
        telegram_id=int(tg_user['id']),
        username=tg_user.get('username'),
        first_name=tg_user.get('first_name'),
        last_name=tg_user.get('last_name'),
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        user = find_user(tg_user)
        if user is None:
            raise
        return user

    logger.info(f"[get_or_create_user] new user {user.id} telegram_id={user.telegram_id}")
    return user


def verify_webhook_secret():
    expected = current_app.config.get('TELEGRAM_WEBHOOK_SECRET')
    received = request.headers.get(WEBHOOK_SECRET_HEADER) or ''
    return bool(expected) and hmac.compare_digest(expected, received)


def jwt_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = None

        # 从请求头获取 Authorization: Bearer <token>
        auth_header = request.headers.get('Authorization', None)
        if auth_header and auth_header.startswith('Bearer '):
            token = auth_header.split(' ')[1]
        else:
            return jsonify({'success': False, 'message': '缺少授权令牌'}), 401

        try:
            payload = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
            g.admin_operator = payload.get('sub') or payload.get('admin') or 'admin'
        except jwt.ExpiredSignatureError:
            return jsonify({'success': False, 'message': '授权令牌已过期'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'success': False, 'message': '无效的授权令牌'}), 401

        return f(*args, **kwargs)
    return decorated_function
