from flask import Blueprint, request, jsonify, g, current_app
from extensions import db
from utils.auth_utils import telegram_auth_required, get_or_create_user, verify_webhook_secret
from utils.errors import BoltError, ValidationError
from utils.payment_service import create_stars_invoice, check_pre_checkout, confirm_stars_payment
from utils.telegram_api import answer_pre_checkout_query
from sqlalchemy.exc import SQLAlchemyError

stars_bp = Blueprint('stars', __name__, url_prefix='/api')


@stars_bp.route('/stars/invoice', methods=['POST'])
@telegram_auth_required
def stars_invoice():
    data = request.get_json(silent=True) or {}
    product_type = data.get('product_type')
    if not product_type:
        raise ValidationError('product_type is required')

    try:
        user = get_or_create_user(g.telegram_user)
        payment, invoice_link = create_stars_invoice(user, product_type)
        return jsonify({'success': True, 'payment': payment.to_dict(), 'invoice_link': invoice_link})
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[stars_invoice] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@stars_bp.route('/telegram/webhook', methods=['POST'])
def telegram_webhook():
    if not verify_webhook_secret():
        current_app.logger.warning("[telegram_webhook] invalid secret token")
        return jsonify({'success': False, 'message': 'Unauthorized'}), 401

    update = request.get_json(silent=True) or {}

    query = update.get('pre_checkout_query')
    if query:
        ok, error_message = check_pre_checkout(query)
        answer_pre_checkout_query(query.get('id'), ok, error_message)
        return jsonify({'success': True})

    message = update.get('message') or {}
    successful_payment = message.get('successful_payment')
    if successful_payment:
        # 返回非 2xx 会让 Telegram 重试，业务失败只记录日志
        try:
            result = confirm_stars_payment(successful_payment, message.get('from'))
            current_app.logger.info(
                f"[telegram_webhook] payment {result['payment'].id} -> {result['status']}")
        except BoltError as e:
            current_app.logger.error(f"[telegram_webhook] successful_payment rejected: {e}")
            return jsonify({'success': False, 'message': e.public_message_for_client()})
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"[telegram_webhook] 数据库错误: {e}")
            return jsonify({'success': False, 'message': 'Database error'}), 500

    return jsonify({'success': True})
