from flask import Blueprint, request, jsonify, g, current_app
from extensions import db
from utils.auth_utils import telegram_auth_required, get_or_create_user
from utils.errors import ValidationError
from utils.payment_service import (
    create_payment_intent, verify_and_confirm, cancel_payment, get_user_payment
)
from utils.products import catalogue
from sqlalchemy.exc import SQLAlchemyError

payments_bp = Blueprint('payments', __name__, url_prefix='/api/payments')


def payment_result_json(result):
    balances = result.get('balances')
    return {
        'success': True,
        'status': result['status'],
        'already_confirmed': result['already_confirmed'],
        'reward': result['reward'],
        'reconciliation_pending': result['reconciliation_pending'],
        'payment': result['payment'].to_dict(),
        'balances': {
            'token_balance': balances['token_balance'],
            'usdt_balance': str(balances['usdt_balance']),
            'ton_balance': str(balances['ton_balance']),
        } if balances else None,
    }


@payments_bp.route('/products', methods=['GET'])
def list_products():
    return jsonify({
        'success': True,
        'receiver_addresses': current_app.config.get('TON_RECEIVER_ADDRESSES') or [],
        'data': catalogue(),
    })


@payments_bp.route('/intent', methods=['POST'])
@telegram_auth_required
def payment_intent():
    data = request.get_json(silent=True) or {}
    product_type = data.get('product_type')
    if not product_type:
        raise ValidationError('product_type is required')

    try:
        user = get_or_create_user(g.telegram_user)
        payment = create_payment_intent(user, product_type,
                                        amount=data.get('amount'),
                                        destination=data.get('destination'))
        return jsonify({'success': True, 'payment': payment.to_dict()})
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[payment_intent] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@payments_bp.route('/verify', methods=['POST'])
@telegram_auth_required
def payment_verify():
    data = request.get_json(silent=True) or {}
    payment_id = data.get('payment_id')
    if not payment_id:
        raise ValidationError('payment_id is required')

    try:
        user = get_or_create_user(g.telegram_user)
        # tx_hash / wallet_address 只是提示，服务端独立查链
        result = verify_and_confirm(str(payment_id), user,
                                    claimed_tx_hash=data.get('tx_hash'),
                                    claimed_wallet=data.get('wallet_address'))
        return jsonify(payment_result_json(result))
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[payment_verify] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@payments_bp.route('/<payment_id>/cancel', methods=['POST'])
@telegram_auth_required
def payment_cancel(payment_id):
    try:
        user = get_or_create_user(g.telegram_user)
        result = cancel_payment(payment_id, user)
        return jsonify(payment_result_json(result))
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[payment_cancel] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@payments_bp.route('/<payment_id>', methods=['GET'])
@telegram_auth_required
def payment_detail(payment_id):
    user = get_or_create_user(g.telegram_user)
    payment = get_user_payment(payment_id, user)
    return jsonify({'success': True, 'payment': payment.to_dict()})
