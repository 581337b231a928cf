from flask import Blueprint, request, jsonify, g, current_app
from utils.auth_utils import jwt_required
from utils.errors import LedgerError
from utils.ledger import list_reconciliation, replay_reconciliation

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@admin_bp.route('/reconciliation', methods=['GET'])
@jwt_required
def reconciliation_list():
    status = request.args.get('status', 'pending')
    page = max(request.args.get('page', 1, type=int), 1)
    limit = min(max(request.args.get('limit', 20, type=int), 1), 100)

    total, items = list_reconciliation(status, page, limit)
    return jsonify({
        'success': True,
        'total': total,
        'page': page,
        'limit': limit,
        'data': [item.to_dict() for item in items],
    })


@admin_bp.route('/reconciliation/<int:item_id>/replay', methods=['POST'])
@jwt_required
def reconciliation_replay(item_id):
    try:
        item, balances = replay_reconciliation(item_id, g.admin_operator)
    except LedgerError as e:
        current_app.logger.error(f"[reconciliation_replay] item {item_id} 补账失败: {e}")
        return jsonify({'success': False, 'message': str(e)}), 409

    if balances is None:
        return jsonify({'success': True, 'message': 'Already resolved', 'item': item.to_dict()})

    return jsonify({
        'success': True,
        'message': 'Replayed',
        'item': item.to_dict(),
        'balances': {
            'token_balance': balances['token_balance'],
            'usdt_balance': str(balances['usdt_balance']),
            'ton_balance': str(balances['ton_balance']),
        },
    })
