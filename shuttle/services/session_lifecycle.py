"""
Match session lifecycle: create, join, start, leave, kick, cancel, complete, delete.

State machine::

    PENDING -> IN_PROGRESS -> COMPLETED
    PENDING -> CANCELLED
    IN_PROGRESS -> CANCELLED

A PENDING session may also be deleted outright by its creator.

Every transition is written as a conditional UPDATE on the expected current
status and the affected row count decides whether it happened, so two
requests racing on the same session cannot both win. The cached
``participant_count`` is bumped the same way and doubles as the capacity
guard for joins.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from shuttle.app import db
from shuttle.errors import (
    Conflict, Forbidden, InvalidState, InvalidTarget, NotFound, QuorumNotMet,
    ValidationError,
)
from shuttle.models import (
    MatchSession, MatchParticipant, MatchInvitation, PlayerRating, User,
    MATCH_TYPES, MATCH_TYPE_GENDER,
    SESSION_PENDING, SESSION_IN_PROGRESS, SESSION_COMPLETED, SESSION_CANCELLED,
    INVITE_PENDING, INVITE_CANCELLED,
    CURRENCY_POINTS, CURRENCY_FEATHERS, quorum_for,
)
from shuttle.services import points_ledger
from shuttle.services.elo import calculate_team_changes, DEFAULT_ELO
from shuttle.services.notifications import notify, notify_many
from shuttle.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

SESSION_RESULTS = ('TEAM1_WIN', 'TEAM2_WIN')
PAYMENT_METHODS = {'points': CURRENCY_POINTS, 'feathers': CURRENCY_FEATHERS}
_MAX_SCORE = 99
_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class FeeConfig:
    entry_fee_points: int = 0
    entry_fee_feathers: int = 0
    winner_points: int = 0
    creation_cost_points: int = 0
    creation_cost_feathers: int = 0

    def validate(self):
        for label, value in (
            ('Entry fee (points)', self.entry_fee_points),
            ('Entry fee (feathers)', self.entry_fee_feathers),
            ('Winner points', self.winner_points),
            ('Creation cost (points)', self.creation_cost_points),
            ('Creation cost (feathers)', self.creation_cost_feathers),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f'{label} must be a non-negative integer')


@dataclass(frozen=True)
class SessionQuery:
    match_type: Optional[str] = None
    status: Optional[str] = None
    user_id: Optional[int] = None
    limit: int = 20
    offset: int = 0


def get_session(session_id):
    session = db.session.get(MatchSession, session_id)
    if not session:
        raise NotFound('Match session not found')
    return session


def team_capacity(match_type):
    return quorum_for(match_type) // 2


def ensure_eligible(user, match_type):
    """Gendered match types only seat players of that gender; XD seats anyone."""
    required = MATCH_TYPE_GENDER.get(match_type)
    if required and user.gender != required:
        label = 'male' if required == 'MALE' else 'female'
        raise ValidationError(f'{match_type} matches require {label} participants')


def open_team(session, preferred=None):
    """Team (1 or 2) with a free seat, trying ``preferred`` first; None when full."""
    capacity = team_capacity(session.match_type)
    sizes = {1: 0, 2: 0}
    for participant in session.participants:
        sizes[participant.team] = sizes.get(participant.team, 0) + 1
    if preferred in sizes and sizes[preferred] < capacity:
        return preferred
    candidates = [team for team in (1, 2) if sizes[team] < capacity]
    if not candidates:
        return None
    return min(candidates, key=lambda team: (sizes[team], team))


def claim_seat(session_id, match_type):
    """Atomically reserve one seat; False when the session is already full."""
    updated = MatchSession.query.filter(
        MatchSession.id == session_id,
        MatchSession.status == SESSION_PENDING,
        MatchSession.participant_count < quorum_for(match_type),
    ).update(
        {MatchSession.participant_count: MatchSession.participant_count + 1},
        synchronize_session=False,
    )
    return bool(updated)


def _release_seat(session_id):
    MatchSession.query.filter(
        MatchSession.id == session_id,
        MatchSession.participant_count > 0,
    ).update(
        {MatchSession.participant_count: MatchSession.participant_count - 1},
        synchronize_session=False,
    )


def _transition(session, from_statuses, values):
    updated = MatchSession.query.filter(
        MatchSession.id == session.id,
        MatchSession.status.in_(list(from_statuses)),
    ).update(values, synchronize_session=False)
    if not updated:
        db.session.rollback()
        raise InvalidState('Match session changed state, please reload')


def _fee_source_id(participant):
    return f'session:{participant.session_id}:participant:{participant.id}'


def _refund_entry_fee(participant):
    if not participant.fee_paid_at or not participant.fee_amount:
        return 0
    return points_ledger.refund(
        participant.user_id,
        participant.fee_currency,
        participant.fee_amount,
        points_ledger.ACTION_ENTRY_REFUND,
        _fee_source_id(participant),
        description=f'Entry fee refund for match session {participant.session_id}',
    )


def _creation_costs(session):
    return (
        (CURRENCY_POINTS, session.creation_cost_points or 0),
        (CURRENCY_FEATHERS, session.creation_cost_feathers or 0),
    )


def _creation_source_id(session, currency):
    return f'session:{session.id}:creation:{currency.lower()}'


def _charge_creation_cost(session):
    for currency, amount in _creation_costs(session):
        points_ledger.debit(
            session.creator_id, currency, amount,
            points_ledger.ACTION_CREATION_COST, _creation_source_id(session, currency),
            description=f'Creation cost for match session {session.id}',
        )


def _refund_creation_cost(session):
    refunds = []
    for currency, amount in _creation_costs(session):
        refunded = points_ledger.refund(
            session.creator_id, currency, amount,
            points_ledger.ACTION_CREATION_REFUND, _creation_source_id(session, currency),
            description=f'Creation cost refund for match session {session.id}',
        )
        if refunded:
            refunds.append({
                'user_id': session.creator_id, 'currency': currency,
                'amount': refunded, 'reason': 'creation_cost',
            })
    return refunds


def _refund_entry_fees(session):
    refunds = []
    for participant in session.participants:
        amount = _refund_entry_fee(participant)
        if amount:
            refunds.append({
                'user_id': participant.user_id, 'currency': participant.fee_currency,
                'amount': amount, 'reason': 'entry_fee',
            })
    return refunds


def _cancel_pending_invitations(session_id, inviter_id=None, invitee_id=None):
    query = MatchInvitation.query.filter(
        MatchInvitation.session_id == session_id,
        MatchInvitation.status == INVITE_PENDING,
    )
    if inviter_id is not None:
        query = query.filter(MatchInvitation.inviter_id == inviter_id)
    if invitee_id is not None:
        query = query.filter(MatchInvitation.invitee_id == invitee_id)
    return query.update(
        {'status': INVITE_CANCELLED, 'responded_at': utcnow_naive()},
        synchronize_session=False,
    )


def _remove_participant(session, participant):
    """Drop a seat together with the rows that hang off it."""
    refunded = _refund_entry_fee(participant)
    cancelled = _cancel_pending_invitations(session.id, inviter_id=participant.user_id)
    db.session.delete(participant)
    _release_seat(session.id)
    logger.info(
        'Removed user %s from session %s (refunded=%s, invitations_cancelled=%s)',
        participant.user_id, session.id, refunded, cancelled,
    )
    return refunded


def create_session(creator, match_type, fee_config=None, scheduled_at=None,
                   location='', court_number=''):
    """Create a PENDING session with the creator seated on team 1.

    The creation cost, if any, is debited from the creator up front and
    handed back when the session completes, is cancelled or is deleted.
    """
    match_type = str(match_type or '').strip().upper()
    if match_type not in MATCH_TYPES:
        raise ValidationError('Invalid match type')
    fee_config = fee_config or FeeConfig()
    fee_config.validate()
    ensure_eligible(creator, match_type)

    session = MatchSession(
        creator_id=creator.id,
        match_type=match_type,
        status=SESSION_PENDING,
        scheduled_at=scheduled_at,
        location=(location or '')[:200],
        court_number=(court_number or '')[:20],
        entry_fee_points=fee_config.entry_fee_points,
        entry_fee_feathers=fee_config.entry_fee_feathers,
        winner_points=fee_config.winner_points,
        creation_cost_points=fee_config.creation_cost_points,
        creation_cost_feathers=fee_config.creation_cost_feathers,
        participant_count=1,
    )
    db.session.add(session)
    db.session.flush()
    try:
        _charge_creation_cost(session)
    except ValidationError as exc:
        db.session.rollback()
        raise ValidationError(f'{exc.message} for creation cost')
    db.session.add(MatchParticipant(session_id=session.id, user_id=creator.id, team=1))
    db.session.commit()
    logger.info('User %s created %s session %s', creator.id, match_type, session.id)
    return session


def join_session(session_id, user, payment_method='points'):
    """Take a seat (if not already seated) and pay the entry fee."""
    session = get_session(session_id)
    if session.status != SESSION_PENDING:
        raise InvalidState('Cannot join a match that has already started or finished')
    currency = PAYMENT_METHODS.get(str(payment_method or '').strip().lower())
    if not currency:
        raise ValidationError('Invalid payment method')

    participant = session.participant_for(user.id)
    newly_joined = participant is None
    if participant is not None and participant.fee_paid_at:
        raise Conflict('Entry fee already paid')

    if newly_joined:
        ensure_eligible(user, session.match_type)
        team = open_team(session)
        if team is None or not claim_seat(session.id, session.match_type):
            db.session.rollback()
            raise Conflict('Match session is full')
        participant = MatchParticipant(session_id=session.id, user_id=user.id, team=team)
        db.session.add(participant)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise Conflict('You are already in this match session')
        # pending invitations to this session lapse once the invitee is seated
        _cancel_pending_invitations(session.id, invitee_id=user.id)

    amount = (
        session.entry_fee_points if currency == CURRENCY_POINTS else session.entry_fee_feathers
    )
    paid = points_ledger.debit(
        user.id, currency, amount,
        points_ledger.ACTION_ENTRY_FEE, _fee_source_id(participant),
        description=f'Entry fee for match session {session.id}',
    )
    participant.fee_currency = currency
    participant.fee_amount = paid
    participant.fee_paid_at = utcnow_naive()

    if newly_joined and session.creator_id != user.id:
        notify(
            session.creator_id, 'match_join', 'New participant',
            f'{user.username} joined your {session.match_type} match session',
            link=f'/matches/{session.id}', reference_id=session.id,
        )
    db.session.commit()
    return participant


def start_session(session_id, requester):
    """Creator-only PENDING -> IN_PROGRESS once the quorum is seated."""
    session = get_session(session_id)
    if session.creator_id != requester.id:
        raise Forbidden('Only the session creator can start the match')
    if session.status != SESSION_PENDING:
        raise InvalidState('Only pending sessions can be started')

    seated = MatchParticipant.query.filter_by(session_id=session.id).count()
    quorum = session.quorum
    if seated < quorum:
        raise QuorumNotMet(
            f'{quorum} participants are required to start', required=quorum, current=seated,
        )

    _transition(session, [SESSION_PENDING], {
        'status': SESSION_IN_PROGRESS,
        'started_at': utcnow_naive(),
    })
    notify_many(
        [p.user_id for p in session.participants], 'match_started', 'Match started',
        f'Your {session.match_type} match has started',
        link=f'/matches/{session.id}', reference_id=session.id,
        exclude_user_ids={requester.id},
    )
    db.session.commit()
    logger.info('Session %s started by %s with %s players', session.id, requester.id, seated)
    return session


def leave_session(session_id, user):
    session = get_session(session_id)
    if session.creator_id == user.id:
        raise Forbidden('The session creator cannot leave; cancel the session instead')
    participant = session.participant_for(user.id)
    if participant is None:
        raise NotFound('You are not a participant in this match session')
    if session.status != SESSION_PENDING:
        raise InvalidState('You can only leave a session before it starts')

    refunded = _remove_participant(session, participant)
    notify(
        session.creator_id, 'match_leave', 'Participant left',
        f'{user.username} left your {session.match_type} match session',
        link=f'/matches/{session.id}', reference_id=session.id,
    )
    db.session.commit()
    return refunded


def kick_participant(session_id, requester, target_user_id):
    session = get_session(session_id)
    if session.creator_id != requester.id and not requester.is_admin:
        raise Forbidden('Only the session creator can remove participants')
    if target_user_id == session.creator_id:
        raise InvalidTarget('The session creator cannot be removed')
    participant = session.participant_for(target_user_id)
    if participant is None:
        raise NotFound('That user is not a participant in this match session')
    if session.status != SESSION_PENDING:
        raise InvalidState('Participants can only be removed before the match starts')

    refunded = _remove_participant(session, participant)
    notify(
        target_user_id, 'match_kicked', 'Removed from match',
        f'You were removed from a {session.match_type} match session',
        link=f'/matches/{session.id}', reference_id=session.id,
    )
    db.session.commit()
    return refunded


def cancel_session(session_id, requester):
    """Cancel a pending or running session; refund entry fees and creation cost."""
    session = get_session(session_id)
    if session.creator_id != requester.id and not requester.is_admin:
        raise Forbidden('You do not have permission to cancel this match')
    if session.status not in (SESSION_PENDING, SESSION_IN_PROGRESS):
        raise InvalidState(f'Match is already {session.status.lower()}')

    _transition(session, [SESSION_PENDING, SESSION_IN_PROGRESS], {
        'status': SESSION_CANCELLED,
        'cancelled_at': utcnow_naive(),
    })
    refunds = _refund_entry_fees(session) + _refund_creation_cost(session)
    _cancel_pending_invitations(session.id)
    notify_many(
        [p.user_id for p in session.participants], 'match_cancelled', 'Match cancelled',
        f'A {session.match_type} match session was cancelled',
        link=f'/matches/{session.id}', reference_id=session.id,
        exclude_user_ids={requester.id},
    )
    db.session.commit()
    logger.info('Session %s cancelled by %s, %s refund(s)', session.id, requester.id, len(refunds))
    return session, refunds


def delete_session(session_id, requester):
    """Creator-only removal of a PENDING session, refunding everything paid into it.

    Participants go with the session. Invitations are kept with their
    ``session_id`` cleared; pending ones are cancelled first.
    """
    session = get_session(session_id)
    if session.creator_id != requester.id:
        raise Forbidden('Only the session creator can delete this match')
    if session.status != SESSION_PENDING:
        raise InvalidState('Only pending sessions can be deleted')

    # locks out concurrent joins before anything is refunded
    _transition(session, [SESSION_PENDING], {
        'status': SESSION_CANCELLED,
        'cancelled_at': utcnow_naive(),
    })
    refunds = _refund_entry_fees(session) + _refund_creation_cost(session)
    _cancel_pending_invitations(session.id)
    participant_ids = [p.user_id for p in session.participants]
    notify_many(
        participant_ids, 'match_deleted', 'Match deleted',
        f'A {session.match_type} match session was deleted',
        exclude_user_ids={requester.id},
    )
    deleted_id = session.id
    db.session.delete(session)
    db.session.commit()
    logger.info('Session %s deleted by %s, %s refund(s)', deleted_id, requester.id, len(refunds))
    return refunds


def _parse_score(raw_value, label):
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be an integer')
    if value < 0 or value > _MAX_SCORE:
        raise ValidationError(f'{label} must be between 0 and {_MAX_SCORE}')
    return value


def player_rating(user_id, match_type):
    """The user's rating row for ``match_type``, created at the default on first use."""
    rating = PlayerRating.query.filter_by(user_id=user_id, match_type=match_type).first()
    if rating is None:
        rating = PlayerRating(
            user_id=user_id, match_type=match_type,
            rating=DEFAULT_ELO, peak_rating=DEFAULT_ELO,
            games_played=0, wins=0, losses=0,
        )
        db.session.add(rating)
    return rating


def _apply_session_ratings(session, team1_score, team2_score):
    """Move both the per-match-type rating and the overall user rating.

    Participant ``elo_*`` fields record the per-match-type movement.
    """
    teams = {1: [], 2: []}
    for participant in session.participants:
        teams.setdefault(participant.team, []).append(participant)
    if not teams[1] or not teams[2]:
        raise InvalidState('Both teams need players before the match can be completed')

    type_ratings = {
        p.user_id: player_rating(p.user_id, session.match_type) for p in session.participants
    }

    def _type_inputs(participants):
        return [{
            'elo_rating': type_ratings[p.user_id].rating,
            'games_played': type_ratings[p.user_id].games_played,
        } for p in participants]

    def _overall_inputs(participants):
        return [{
            'elo_rating': p.user.elo_rating or DEFAULT_ELO,
            'games_played': p.user.games_played or 0,
        } for p in participants]

    type_changes = calculate_team_changes(
        _type_inputs(teams[1]), _type_inputs(teams[2]), team1_score, team2_score,
    )
    overall_changes = calculate_team_changes(
        _overall_inputs(teams[1]), _overall_inputs(teams[2]), team1_score, team2_score,
    )
    winning_team = 1 if team1_score > team2_score else 2
    for index, team_num in enumerate((1, 2)):
        won = team_num == winning_team
        for participant, type_change, overall_change in zip(
            teams[team_num], type_changes[index], overall_changes[index],
        ):
            rating = type_ratings[participant.user_id]
            participant.elo_before = rating.rating
            participant.elo_change = type_change
            participant.elo_after = rating.rating + type_change
            rating.record(type_change, won)

            user = participant.user
            user.elo_rating = (user.elo_rating or DEFAULT_ELO) + overall_change
            user.games_played = (user.games_played or 0) + 1
            if won:
                user.wins = (user.wins or 0) + 1
            else:
                user.losses = (user.losses or 0) + 1
    return [p.user_id for p in teams[winning_team]]


def complete_session(session_id, requester, result, team1_score, team2_score):
    """Record the final result, move ratings, pay the winners and return the creation cost."""
    session = get_session(session_id)
    if session.participant_for(requester.id) is None:
        raise Forbidden('You are not a participant in this match')
    if session.status != SESSION_IN_PROGRESS:
        raise InvalidState('Only matches in progress can be completed')
    result = str(result or '').strip().upper()
    if result not in SESSION_RESULTS:
        raise ValidationError('Result must be TEAM1_WIN or TEAM2_WIN')
    team1_score = _parse_score(team1_score, 'Team 1 score')
    team2_score = _parse_score(team2_score, 'Team 2 score')
    if team1_score == team2_score:
        raise ValidationError('Scores cannot be tied')
    if (team1_score > team2_score) != (result == 'TEAM1_WIN'):
        raise ValidationError('Result does not match the scores')

    _transition(session, [SESSION_IN_PROGRESS], {
        'status': SESSION_COMPLETED,
        'result': result,
        'team1_score': team1_score,
        'team2_score': team2_score,
        'completed_at': utcnow_naive(),
    })
    winner_ids = _apply_session_ratings(session, team1_score, team2_score)
    for winner_id in winner_ids:
        points_ledger.award_points(
            winner_id, points_ledger.ACTION_SESSION_WIN, f'session:{session.id}',
            amount=session.winner_points,
            description=f'Won match session {session.id}',
        )
    _refund_creation_cost(session)
    notify_many(
        [p.user_id for p in session.participants], 'match_completed', 'Match completed',
        f'Final score {team1_score}-{team2_score}',
        link=f'/matches/history/{session.id}', reference_id=session.id,
    )
    db.session.commit()
    logger.info('Session %s completed: %s %s-%s', session.id, result, team1_score, team2_score)
    return session


def list_sessions(options=None):
    options = options or SessionQuery()
    query = MatchSession.query
    if options.match_type:
        query = query.filter(MatchSession.match_type == options.match_type.upper())
    if options.status:
        query = query.filter(MatchSession.status == options.status.upper())
    if options.user_id:
        query = query.filter(MatchSession.participants.any(
            MatchParticipant.user_id == options.user_id
        ))
    limit = max(1, min(options.limit, _MAX_PAGE_SIZE))
    return query.order_by(
        MatchSession.created_at.desc(), MatchSession.id.desc(),
    ).offset(max(0, options.offset)).limit(limit).all()


def my_sessions(user, include_finished=False):
    query = MatchSession.query.filter(
        MatchSession.participants.any(MatchParticipant.user_id == user.id)
    )
    if not include_finished:
        query = query.filter(MatchSession.status.in_([SESSION_PENDING, SESSION_IN_PROGRESS]))
    return query.order_by(MatchSession.created_at.desc(), MatchSession.id.desc()).all()


def resolve_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    return user
