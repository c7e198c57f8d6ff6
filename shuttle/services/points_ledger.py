"""
Points / feathers ledger.

Every balance change is an append-only ``PointsTransaction`` row keyed by
(user, action_type, source_id). Writing an existing key is a no-op that
returns 0, which makes awards, debits and refunds safe to retry: a settlement
that is re-run after a transient failure can never credit a winner twice.
The balance update and the ledger insert share one savepoint.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from shuttle.app import db
from shuttle.errors import LedgerError, ValidationError
from shuttle.models import User, PointsTransaction, CURRENCY_POINTS, CURRENCY_FEATHERS

logger = logging.getLogger(__name__)

ACTION_WIN_MATCH = 'win_match'
ACTION_SESSION_WIN = 'session_win'
ACTION_ENTRY_FEE = 'match_entry_fee'
ACTION_ENTRY_REFUND = 'match_entry_refund'
ACTION_CREATION_COST = 'match_creation_cost'
ACTION_CREATION_REFUND = 'match_creation_refund'

POINTS_CONFIG = {
    'meeting_join': 50,
    'meeting_complete': 100,
    'meeting_host': 200,
    'post_create': 10,
    'comment_create': 5,
    'review_write': 30,
    'profile_complete': 50,
    'daily_checkin': 5,
    'referral_signup': 100,
    'referral_first_meeting': 200,
    'first_meeting': 100,
    'social_share': 10,
    'gym_review': 30,
    ACTION_WIN_MATCH: 150,
    'achievement_unlock': 50,
    'streak_7_days': 100,
    'streak_30_days': 500,
    'level_up': 200,
}

_CURRENCIES = (CURRENCY_POINTS, CURRENCY_FEATHERS)
_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class TransactionQuery:
    currency: Optional[str] = None
    transaction_type: Optional[str] = None
    limit: int = 20
    offset: int = 0


def _balance_column(currency):
    if currency == CURRENCY_POINTS:
        return User.points
    if currency == CURRENCY_FEATHERS:
        return User.feathers
    raise LedgerError(f'Unknown currency: {currency}')


def _key_exists(user_id, action_type, source_id):
    return db.session.query(PointsTransaction.id).filter_by(
        user_id=user_id, action_type=action_type, source_id=source_id,
    ).first() is not None


def _record(user_id, currency, amount, transaction_type, action_type, source_id,
            description=''):
    """Apply ``amount`` (signed) to the user's balance and append the ledger row.

    Returns the absolute amount moved, or 0 when the key was already recorded.
    """
    source_id = str(source_id)
    balance_column = _balance_column(currency)
    user = db.session.get(User, user_id)
    if user is None:
        raise LedgerError(f'Ledger user {user_id} does not exist')
    if _key_exists(user_id, action_type, source_id):
        logger.info(
            'Ledger key already recorded: user=%s action=%s source=%s',
            user_id, action_type, source_id,
        )
        return 0

    values = {balance_column: balance_column + amount}
    if currency == CURRENCY_POINTS and transaction_type == 'earn':
        values[User.lifetime_points] = User.lifetime_points + amount

    try:
        with db.session.begin_nested():
            query = User.query.filter(User.id == user_id)
            if amount < 0:
                query = query.filter(balance_column >= -amount)
            if not query.update(values, synchronize_session=False):
                label = 'points' if currency == CURRENCY_POINTS else 'feathers'
                raise ValidationError(f'Insufficient {label}')
            balance_after = db.session.query(balance_column).filter(User.id == user_id).scalar()
            db.session.add(PointsTransaction(
                user_id=user_id,
                currency=currency,
                amount=amount,
                balance_after=balance_after,
                transaction_type=transaction_type,
                action_type=action_type,
                source_id=source_id,
                description=description[:255],
            ))
    except IntegrityError:
        logger.info(
            'Concurrent ledger write for user=%s action=%s source=%s ignored',
            user_id, action_type, source_id,
        )
        return 0
    finally:
        db.session.expire(user, ['points', 'feathers', 'lifetime_points'])

    logger.info(
        'Ledger %s: user=%s %+d %s (action=%s source=%s)',
        transaction_type, user_id, amount, currency, action_type, source_id,
    )
    return abs(amount)


def award_points(user_id, action_type, source_id, amount=None, description=''):
    """Credit points for an action; idempotent per (user, action, source).

    Returns the number of points awarded (0 if this key was already paid).
    """
    if amount is None:
        if action_type not in POINTS_CONFIG:
            raise LedgerError(f'Unknown action type: {action_type}')
        amount = POINTS_CONFIG[action_type]
    amount = int(amount)
    if amount <= 0:
        return 0
    return _record(
        user_id, CURRENCY_POINTS, amount, 'earn', action_type, source_id,
        description or action_type.replace('_', ' '),
    )


def debit(user_id, currency, amount, action_type, source_id, description=''):
    """Spend ``amount`` of ``currency``; raises ValidationError when short."""
    amount = int(amount)
    if amount <= 0:
        return 0
    return _record(user_id, currency, -amount, 'spend', action_type, source_id, description)


def refund(user_id, currency, amount, action_type, source_id, description=''):
    amount = int(amount)
    if amount <= 0:
        return 0
    return _record(user_id, currency, amount, 'refund', action_type, source_id, description)


def balance(user):
    return {
        'points': user.points,
        'feathers': user.feathers,
        'lifetime_points': user.lifetime_points,
    }


def list_transactions(user, options=None):
    options = options or TransactionQuery()
    query = PointsTransaction.query.filter_by(user_id=user.id)
    if options.currency:
        if options.currency not in _CURRENCIES:
            raise ValidationError('Invalid currency filter')
        query = query.filter_by(currency=options.currency)
    if options.transaction_type:
        query = query.filter_by(transaction_type=options.transaction_type)
    limit = max(1, min(options.limit, _MAX_PAGE_SIZE))
    offset = max(0, options.offset)
    return query.order_by(
        PointsTransaction.created_at.desc(), PointsTransaction.id.desc(),
    ).offset(offset).limit(limit).all()
