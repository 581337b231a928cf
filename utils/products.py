# utils/products.py
from decimal import Decimal

# 商品价格表：TON 价格 / Stars 价格
PRODUCTS = {
    'mining_power': {
        'title': 'Mining Power Upgrade',
        'ton': Decimal('0.5'),
        'stars': 50,
    },
    'mining_duration': {
        'title': 'Mining Duration Upgrade',
        'ton': Decimal('0.5'),
        'stars': 50,
    },
    'token_pack_small': {
        'title': '1,000 BOLT',
        'ton': Decimal('1'),
        'stars': 100,
        'tokens': 1000,
    },
    'token_pack_large': {
        'title': '12,000 BOLT',
        'ton': Decimal('10'),
        'stars': 1000,
        'tokens': 12000,
    },
    # 充值金额由用户填写，只支持 TON
    'ton_deposit': {
        'title': 'TON Deposit',
        'ton': None,
        'stars': None,
    },
}


def ledger_product_type(product_key):
    """商品 key -> 入账类型"""
    if product_key.startswith('token_pack'):
        return 'token_pack'
    return product_key


def get_product(product_key):
    if not isinstance(product_key, str):
        return None
    return PRODUCTS.get(product_key)


def catalogue():
    items = []
    for key, product in PRODUCTS.items():
        items.append({
            'product_type': key,
            'title': product['title'],
            'price_ton': str(product['ton']) if product['ton'] is not None else None,
            'price_stars': product['stars'],
            'tokens': product.get('tokens'),
        })
    return items
