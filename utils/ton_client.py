# utils/ton_client.py
"""
TON 链上索引（toncenter v2）。只读：查询某地址最近的入账交易。
索引服务是最终一致的，偶尔不可用；超时/异常统一抛 IndexerUnavailable，
由上层降级为 pending。
"""
import logging
from decimal import Decimal
import requests
from flask import current_app
from utils.clock import to_unix
from utils.errors import IndexerUnavailable

logger = logging.getLogger(__name__)

NANO = Decimal('1000000000')


def nano_to_ton(nano_amount):
    return Decimal(str(nano_amount)) / NANO


def normalize_ton_address(address):
    if not address:
        return None
    return address.strip()


def _headers():
    headers = {'Content-Type': 'application/json'}
    api_key = current_app.config.get('TON_API_KEY')
    if api_key:
        headers['X-API-Key'] = api_key
    return headers


def get_incoming_transactions(address, limit=50):
    """
    :return: [{hash, lt, source, value(TON, Decimal), utime}]
    :raises IndexerUnavailable
    """
    url = f"{current_app.config['TON_API_URL']}/getTransactions"
    params = {'address': address, 'limit': limit, 'archival': 'true'}
    try:
        response = requests.get(url, params=params, headers=_headers(),
                                timeout=current_app.config['TON_API_TIMEOUT'])
    except requests.exceptions.Timeout:
        raise IndexerUnavailable('Timeout connecting to TON API')
    except requests.exceptions.RequestException as e:
        raise IndexerUnavailable(f'TON API connection error: {e}')

    if response.status_code != 200:
        logger.error(f"TON API error: {response.status_code} - {response.text[:200]}")
        raise IndexerUnavailable(f'TON API status {response.status_code}')

    try:
        data = response.json()
    except ValueError:
        raise IndexerUnavailable('TON API returned invalid JSON')
    if not data.get('ok'):
        raise IndexerUnavailable(data.get('error', 'Unknown TON API error'))

    incoming = []
    for tx in data.get('result', []):
        in_msg = tx.get('in_msg') or {}
        try:
            value = int(in_msg.get('value') or 0)
        except (TypeError, ValueError):
            continue
        # 外部消息没有 source 且 value 为 0，不是转账
        if value <= 0 or not in_msg.get('source'):
            continue
        tx_id = tx.get('transaction_id') or {}
        if not tx_id.get('hash'):
            continue
        incoming.append({
            'hash': tx_id.get('hash'),
            'lt': tx_id.get('lt'),
            'source': in_msg.get('source'),
            'value': nano_to_ton(value),
            'utime': int(tx.get('utime') or 0),
        })
    return incoming


def find_matching_transaction(transactions, expected_amount, created_at,
                              tolerance, window_seconds, skew_seconds=0,
                              claimed_hash=None, is_taken=None):
    """
    在候选交易里找匹配的一笔：
    - 金额与预期差值不超过 tolerance
    - 时间在 [created_at - skew, created_at + window] 内
    - 指定了 claimed_hash 时只认这一笔
    - is_taken(hash) 为真的交易（已属于别的订单）跳过
    """
    expected = Decimal(str(expected_amount))
    tolerance = Decimal(str(tolerance))
    created_ts = to_unix(created_at)

    for tx in transactions:
        if claimed_hash and tx['hash'] != claimed_hash:
            continue
        delta = tx['utime'] - created_ts
        if delta < -skew_seconds or delta > window_seconds:
            continue
        if abs(tx['value'] - expected) > tolerance:
            continue
        if is_taken is not None and is_taken(tx['hash']):
            logger.warning(f"[find_matching_transaction] tx {tx['hash']} already used by another payment")
            continue
        return tx
    return None
