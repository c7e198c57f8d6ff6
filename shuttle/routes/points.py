"""Points and feathers balances and ledger history."""
from flask import Blueprint, request, jsonify

from shuttle.auth_utils import login_required
from shuttle.models import CURRENCY_POINTS, CURRENCY_FEATHERS
from shuttle.routes.helpers import _pagination_args
from shuttle.services import points_ledger

points_bp = Blueprint('points', __name__)

_TRANSACTION_TYPES = {'earn', 'spend', 'refund'}


@points_bp.route('/balance', methods=['GET'])
@login_required
def get_balance():
    return jsonify(points_ledger.balance(request.current_user))


@points_bp.route('/transactions', methods=['GET'])
@login_required
def list_transactions():
    currency = str(request.args.get('currency') or '').strip().upper() or None
    if currency and currency not in (CURRENCY_POINTS, CURRENCY_FEATHERS):
        return jsonify({'error': 'Currency must be POINTS or FEATHERS'}), 400
    transaction_type = str(request.args.get('type') or '').strip().lower() or None
    if transaction_type and transaction_type not in _TRANSACTION_TYPES:
        return jsonify({'error': 'Invalid transaction type'}), 400
    limit, offset = _pagination_args()
    transactions = points_ledger.list_transactions(
        request.current_user,
        points_ledger.TransactionQuery(
            currency=currency,
            transaction_type=transaction_type,
            limit=limit,
            offset=offset,
        ),
    )
    return jsonify({'transactions': [t.to_dict() for t in transactions]})
