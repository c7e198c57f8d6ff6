"""
Two-party match result confirmation and settlement.

A submitted result starts with both confirmation flags false. Each player
sets their own flag; the confirmation that makes both flags true triggers
settlement, which moves ratings and credits the winner. Settlement claims the
row with ``UPDATE ... SET settled_at WHERE settled_at IS NULL`` so it runs once
even when both players confirm at the same moment.

The confirmation is committed before settlement starts. If settlement fails
the confirmation stays recorded, the caller gets a 500, and confirming again
re-runs settlement; the ledger key ``match_result:<id>`` keeps the winner from
being credited twice.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import or_

from shuttle.app import db
from shuttle.errors import Forbidden, NotFound, SettlementError, ValidationError
from shuttle.models import MatchResult, MatchSession, PlayerRating, User, MATCH_TYPES, OUTCOMES
from shuttle.services import points_ledger
from shuttle.services.elo import (
    DEFAULT_ELO, calculate_new_ratings, outcome_from_scores, singles_k_factor,
)
from shuttle.services.notifications import notify
from shuttle.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

RESULT_MATCH_TYPES = ('casual', 'ranked', 'tournament')
_MIN_SCORE = 0
_MAX_SCORE = 99


@dataclass(frozen=True)
class ConfirmationOutcome:
    confirmed: bool
    already_confirmed: bool = False
    points_awarded: int = 0
    message: str = ''


def _ledger_source_id(result_id):
    return f'match_result:{result_id}'


def _parse_score(raw_value, label):
    if isinstance(raw_value, bool):
        raise ValidationError(f'{label} must be an integer')
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be an integer')
    if value < _MIN_SCORE or value > _MAX_SCORE:
        raise ValidationError(f'{label} must be between {_MIN_SCORE} and {_MAX_SCORE}')
    return value


def _load_player(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('Player not found')
    return user


def get_result(result_id):
    result = db.session.get(MatchResult, result_id)
    if not result:
        raise NotFound('Match result not found')
    return result


def submit_result(submitter, player1_id, player2_id, player1_score, player2_score,
                  outcome=None, match_type='casual', session_id=None):
    """Record a finished two-player match; both players still have to confirm it."""
    if player1_id == player2_id:
        raise ValidationError('A match needs two different players')
    if submitter.id not in (player1_id, player2_id):
        raise Forbidden('You can only submit results for your own matches')
    player1_score = _parse_score(player1_score, 'Player 1 score')
    player2_score = _parse_score(player2_score, 'Player 2 score')

    derived = outcome_from_scores(player1_score, player2_score)
    if outcome is None:
        outcome = derived
    elif outcome not in OUTCOMES:
        raise ValidationError('Outcome must be player1_win, player2_win or draw')
    elif outcome != derived:
        raise ValidationError('Outcome does not match the scores')

    match_type = str(match_type or 'casual').strip().lower()
    if match_type not in RESULT_MATCH_TYPES:
        raise ValidationError('Invalid match type')
    if session_id is not None and db.session.get(MatchSession, session_id) is None:
        raise NotFound('Match session not found')

    player1 = _load_player(player1_id)
    player2 = _load_player(player2_id)
    player1_elo = player1.elo_rating or DEFAULT_ELO
    player2_elo = player2.elo_rating or DEFAULT_ELO
    ratings = calculate_new_ratings(
        player1_elo, player2_elo, outcome, k_factor=singles_k_factor(player1, player2),
    )

    result = MatchResult(
        session_id=session_id,
        player1_id=player1.id,
        player2_id=player2.id,
        player1_score=player1_score,
        player2_score=player2_score,
        outcome=outcome,
        match_type=match_type,
        player1_confirmed=False,
        player2_confirmed=False,
        player1_elo_before=player1_elo,
        player1_elo_after=ratings['player1_elo_after'],
        player1_elo_change=ratings['player1_elo_change'],
        player2_elo_before=player2_elo,
        player2_elo_after=ratings['player2_elo_after'],
        player2_elo_change=ratings['player2_elo_change'],
        submitted_by=submitter.id,
    )
    db.session.add(result)
    db.session.flush()

    opponent_id = player2.id if submitter.id == player1.id else player1.id
    notify(
        opponent_id, 'match_result_submitted', 'Confirm match result',
        f'{submitter.username} submitted a result: {player1_score}-{player2_score}. '
        'Please confirm it.',
        link=f'/matches/results/{result.id}', reference_id=result.id,
    )
    db.session.commit()
    logger.info(
        'Result %s submitted by %s: %s vs %s %s-%s (%s)',
        result.id, submitter.id, player1.id, player2.id,
        player1_score, player2_score, outcome,
    )
    return result


def _apply_rating(user, change, won, drew):
    before = user.elo_rating or DEFAULT_ELO
    user.elo_rating = before + (change or 0)
    user.games_played = (user.games_played or 0) + 1
    if drew:
        user.draws = (user.draws or 0) + 1
    elif won:
        user.wins = (user.wins or 0) + 1
    else:
        user.losses = (user.losses or 0) + 1
    return before, user.elo_rating


def settle_result(result_id):
    """Apply ratings and credit the winner once. Returns the points credited."""
    try:
        claimed = MatchResult.query.filter(
            MatchResult.id == result_id,
            MatchResult.settled_at.is_(None),
            MatchResult.player1_confirmed.is_(True),
            MatchResult.player2_confirmed.is_(True),
        ).update({'settled_at': utcnow_naive()}, synchronize_session=False)
        if not claimed:
            db.session.rollback()
            return 0

        result = db.session.get(MatchResult, result_id)
        db.session.refresh(result)
        drew = result.outcome == 'draw'
        player1 = _load_player(result.player1_id)
        player2 = _load_player(result.player2_id)
        # stored changes are applied to the ratings as they are now
        result.player1_elo_before, result.player1_elo_after = _apply_rating(
            player1, result.player1_elo_change, result.outcome == 'player1_win', drew,
        )
        result.player2_elo_before, result.player2_elo_after = _apply_rating(
            player2, result.player2_elo_change, result.outcome == 'player2_win', drew,
        )

        points_awarded = 0
        winner_id = result.winner_id
        if winner_id is not None:
            points_awarded = points_ledger.award_points(
                winner_id, points_ledger.ACTION_WIN_MATCH, _ledger_source_id(result.id),
                description=f'Won confirmed match {result.id}',
            )
            notify(
                winner_id, 'match_result_settled', 'Match win confirmed',
                f'You earned {points_awarded} points for your win',
                link=f'/matches/results/{result.id}', reference_id=result.id,
            )
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception('Settlement failed for match result %s', result_id)
        raise SettlementError('Match result confirmed but settlement failed, please retry') from exc

    logger.info('Result %s settled, %s point(s) credited', result_id, points_awarded)
    return points_awarded


def confirm_result(result_id, requester):
    """Set the requester's confirmation flag; settle on the second confirmation."""
    result = get_result(result_id)
    if requester.id == result.player1_id:
        flag = MatchResult.player1_confirmed
        other_id = result.player2_id
    elif requester.id == result.player2_id:
        flag = MatchResult.player2_confirmed
        other_id = result.player1_id
    else:
        raise Forbidden('Only the two players can confirm this result')

    if result.both_confirmed:
        points_awarded = 0
        if result.settled_at is None:
            points_awarded = settle_result(result.id)
        return ConfirmationOutcome(
            confirmed=True, already_confirmed=True, points_awarded=points_awarded,
            message='Match result already confirmed',
        )

    changed = MatchResult.query.filter(
        MatchResult.id == result.id, flag.is_(False),
    ).update({flag: True}, synchronize_session=False)
    db.session.refresh(result)
    both_confirmed = result.both_confirmed
    if changed and not both_confirmed:
        notify(
            other_id, 'match_result_confirm_request', 'Confirm match result',
            f'{requester.username} confirmed the match result. Your confirmation is needed.',
            link=f'/matches/results/{result.id}', reference_id=result.id,
        )
    db.session.commit()

    if not both_confirmed:
        return ConfirmationOutcome(
            confirmed=False, message='Confirmation recorded, waiting for your opponent',
        )
    points_awarded = settle_result(result.id)
    return ConfirmationOutcome(
        confirmed=True, points_awarded=points_awarded,
        message='Match result confirmed by both players',
    )


def list_results(user, pending_only=False, limit=50):
    query = MatchResult.query.filter(or_(
        MatchResult.player1_id == user.id, MatchResult.player2_id == user.id,
    ))
    if pending_only:
        query = query.filter(or_(
            MatchResult.player1_confirmed.is_(False),
            MatchResult.player2_confirmed.is_(False),
        ))
    limit = max(1, min(int(limit or 50), 100))
    return query.order_by(MatchResult.created_at.desc(), MatchResult.id.desc()).limit(limit).all()


def leaderboard(limit=50):
    limit = max(1, min(int(limit or 50), 200))
    return User.query.filter(User.games_played > 0).order_by(
        User.elo_rating.desc(), User.wins.desc(), User.id.asc(),
    ).limit(limit).all()


def match_type_leaderboard(match_type, limit=50):
    """Rating rows for one session match type, best first."""
    match_type = str(match_type or '').strip().upper()
    if match_type not in MATCH_TYPES:
        raise ValidationError('Invalid match type')
    limit = max(1, min(int(limit or 50), 200))
    return PlayerRating.query.filter(
        PlayerRating.match_type == match_type,
        PlayerRating.games_played > 0,
    ).order_by(
        PlayerRating.rating.desc(), PlayerRating.wins.desc(), PlayerRating.user_id.asc(),
    ).limit(limit).all()
