from flask import Blueprint, request, jsonify, g, current_app
from extensions import db
from utils.auth_utils import telegram_auth_required, get_or_create_user, find_user
from utils.errors import ValidationError
from utils.ledger import read_balances
from utils.session_manager import start_session, complete_session, poll_status, session_history
from sqlalchemy.exc import SQLAlchemyError

mining_bp = Blueprint('mining', __name__, url_prefix='/api/mining')


@mining_bp.route('/start', methods=['POST'])
@telegram_auth_required
def mining_start():
    try:
        user = get_or_create_user(g.telegram_user)
        session, created = start_session(user)
        return jsonify({
            'success': True,
            'message': 'Mining started' if created else 'Mining already in progress',
            'created': created,
            'session': session.to_dict(),
        })
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[mining_start] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@mining_bp.route('/status', methods=['GET'])
@telegram_auth_required
def mining_status():
    try:
        user = find_user(g.telegram_user)
        status = poll_status(user)

        session = status['session']
        completed = status['completed_session']
        last = status['last_completed']
        data = {
            'success': True,
            'is_mining': session is not None,
            'session': session.to_dict() if session else None,
            'current_reward': status['current_reward'],
            # 查询时顺带结算的 session
            'completed_session': _completion_json(completed) if completed else None,
            'last_completed': last.to_dict() if last else None,
        }
        if user:
            data['balances'] = _balances_json(read_balances(user.id))
        return jsonify(data)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[mining_status] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@mining_bp.route('/complete', methods=['POST'])
@telegram_auth_required
def mining_complete():
    data = request.get_json(silent=True) or {}
    session_id = data.get('session_id')
    if not session_id:
        raise ValidationError('session_id is required')

    try:
        user = get_or_create_user(g.telegram_user)
        result = complete_session(str(session_id), user)
        return jsonify({'success': True, **_completion_json(result)})
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[mining_complete] 数据库错误: {e}")
        return jsonify({'success': False, 'message': 'Database error'}), 500


@mining_bp.route('/history', methods=['GET'])
@telegram_auth_required
def mining_history():
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 10, type=int)
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    user = find_user(g.telegram_user)
    if not user:
        return jsonify({'success': True, 'total': 0, 'page': page, 'limit': limit, 'data': []})

    total, items = session_history(user, page, limit)
    return jsonify({
        'success': True,
        'total': total,
        'page': page,
        'limit': limit,
        'data': [s.to_dict() for s in items],
    })


def _completion_json(result):
    return {
        'status': result['status'],
        'session_id': result['session_id'],
        'reward': result['reward'],
        'new_balance': result['new_balance'],
        'usdt_balance': result.get('usdt_balance'),
        'reconciliation_pending': result['reconciliation_pending'],
    }


def _balances_json(balances):
    return {
        'token_balance': balances['token_balance'],
        'usdt_balance': str(balances['usdt_balance']),
        'ton_balance': str(balances['ton_balance']),
    }
