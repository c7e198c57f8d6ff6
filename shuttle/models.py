from datetime import timedelta

from sqlalchemy import text

from shuttle.app import db
from shuttle.time_utils import utcnow_naive, isoformat_or_none

MATCH_TYPES = ('MS', 'WS', 'MD', 'WD', 'XD')
SINGLES_TYPES = frozenset({'MS', 'WS'})
MATCH_TYPE_GENDER = {'MS': 'MALE', 'WS': 'FEMALE', 'MD': 'MALE', 'WD': 'FEMALE'}

SESSION_PENDING = 'PENDING'
SESSION_IN_PROGRESS = 'IN_PROGRESS'
SESSION_COMPLETED = 'COMPLETED'
SESSION_CANCELLED = 'CANCELLED'

INVITE_PENDING = 'PENDING'
INVITE_ACCEPTED = 'ACCEPTED'
INVITE_DECLINED = 'DECLINED'
INVITE_CANCELLED = 'CANCELLED'

OUTCOMES = ('player1_win', 'player2_win', 'draw')

CURRENCY_POINTS = 'POINTS'
CURRENCY_FEATHERS = 'FEATHERS'


def quorum_for(match_type):
    """Minimum participant count needed to start a session of this type."""
    return 2 if match_type in SINGLES_TYPES else 4


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), default='')
    photo_url = db.Column(db.String(500), default='')
    gender = db.Column(db.String(10), nullable=True)  # MALE, FEMALE
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    points = db.Column(db.Integer, default=0, nullable=False)
    lifetime_points = db.Column(db.Integer, default=0, nullable=False)
    feathers = db.Column(db.Integer, default=0, nullable=False)
    elo_rating = db.Column(db.Float, default=1200.0)
    games_played = db.Column(db.Integer, default=0)
    wins = db.Column(db.Integer, default=0)
    losses = db.Column(db.Integer, default=0)
    draws = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    def to_summary(self):
        return {
            'id': self.id, 'username': self.username, 'name': self.name,
            'photo_url': self.photo_url, 'gender': self.gender,
            'elo_rating': self.elo_rating,
        }


class MatchSession(db.Model):
    """A badminton match session organised by its creator."""
    id = db.Column(db.Integer, primary_key=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    match_type = db.Column(db.String(2), nullable=False)  # MS, WS, MD, WD, XD
    status = db.Column(db.String(20), default=SESSION_PENDING, nullable=False)
    # PENDING -> IN_PROGRESS -> COMPLETED, or -> CANCELLED
    scheduled_at = db.Column(db.DateTime, nullable=True)
    location = db.Column(db.String(200), default='')
    court_number = db.Column(db.String(20), default='')
    entry_fee_points = db.Column(db.Integer, default=0, nullable=False)
    entry_fee_feathers = db.Column(db.Integer, default=0, nullable=False)
    winner_points = db.Column(db.Integer, default=0, nullable=False)
    creation_cost_points = db.Column(db.Integer, default=0, nullable=False)
    creation_cost_feathers = db.Column(db.Integer, default=0, nullable=False)
    participant_count = db.Column(db.Integer, default=0, nullable=False)
    result = db.Column(db.String(20), nullable=True)  # TEAM1_WIN, TEAM2_WIN
    team1_score = db.Column(db.Integer, nullable=True)
    team2_score = db.Column(db.Integer, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_match_session_status_created', 'status', 'created_at'),
    )

    creator = db.relationship('User', backref='created_match_sessions')
    participants = db.relationship(
        'MatchParticipant', backref='session', lazy='selectin',
        cascade='all, delete-orphan', order_by='MatchParticipant.joined_at',
    )

    @property
    def quorum(self):
        return quorum_for(self.match_type)

    def participant_for(self, user_id):
        return next((p for p in self.participants if p.user_id == user_id), None)

    def to_summary(self):
        return {
            'id': self.id, 'creator_id': self.creator_id,
            'match_type': self.match_type, 'status': self.status,
            'scheduled_at': isoformat_or_none(self.scheduled_at),
            'location': self.location, 'court_number': self.court_number,
            'participant_count': self.participant_count,
            'quorum': self.quorum,
        }

    def to_dict(self):
        data = self.to_summary()
        data.update({
            'entry_fee_points': self.entry_fee_points,
            'entry_fee_feathers': self.entry_fee_feathers,
            'winner_points': self.winner_points,
            'creation_cost_points': self.creation_cost_points,
            'creation_cost_feathers': self.creation_cost_feathers,
            'result': self.result,
            'team1_score': self.team1_score, 'team2_score': self.team2_score,
            'started_at': isoformat_or_none(self.started_at),
            'completed_at': isoformat_or_none(self.completed_at),
            'cancelled_at': isoformat_or_none(self.cancelled_at),
            'created_at': isoformat_or_none(self.created_at),
            'creator': self.creator.to_summary() if self.creator else None,
            'participants': [p.to_dict() for p in self.participants],
        })
        return data


class MatchParticipant(db.Model):
    """A player seated in a match session, with entry-fee and rating tracking."""
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey('match_session.id', ondelete='CASCADE'), nullable=False,
    )
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    team = db.Column(db.Integer, default=1, nullable=False)
    joined_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    fee_currency = db.Column(db.String(10), nullable=True)
    fee_amount = db.Column(db.Integer, default=0, nullable=False)
    fee_paid_at = db.Column(db.DateTime, nullable=True)
    elo_before = db.Column(db.Float, nullable=True)
    elo_after = db.Column(db.Float, nullable=True)
    elo_change = db.Column(db.Float, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('session_id', 'user_id', name='uq_match_participant_session_user'),
        # ids feed entry-fee ledger keys and must never be reused
        {'sqlite_autoincrement': True},
    )

    user = db.relationship('User', backref='match_participations')

    def to_dict(self):
        return {
            'id': self.id, 'session_id': self.session_id,
            'user_id': self.user_id, 'team': self.team,
            'joined_at': isoformat_or_none(self.joined_at),
            'fee_currency': self.fee_currency, 'fee_amount': self.fee_amount,
            'fee_paid': self.fee_paid_at is not None,
            'elo_before': self.elo_before, 'elo_after': self.elo_after,
            'elo_change': self.elo_change,
            'user': self.user.to_summary() if self.user else None,
        }


class PlayerRating(db.Model):
    """Rating and record of one user in one match type."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    match_type = db.Column(db.String(2), nullable=False)
    rating = db.Column(db.Float, default=1200.0, nullable=False)
    peak_rating = db.Column(db.Float, default=1200.0, nullable=False)
    games_played = db.Column(db.Integer, default=0, nullable=False)
    wins = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('user_id', 'match_type', name='uq_player_rating_user_type'),
        db.Index('ix_player_rating_type_rating', 'match_type', 'rating'),
    )

    user = db.relationship('User', backref='ratings')

    def record(self, change, won):
        self.rating = (self.rating or 0.0) + change
        self.peak_rating = max(self.peak_rating or 0.0, self.rating)
        self.games_played = (self.games_played or 0) + 1
        if won:
            self.wins = (self.wins or 0) + 1
        else:
            self.losses = (self.losses or 0) + 1
        self.updated_at = utcnow_naive()

    def to_dict(self):
        return {
            'user_id': self.user_id, 'match_type': self.match_type,
            'rating': self.rating, 'peak_rating': self.peak_rating,
            'games_played': self.games_played,
            'wins': self.wins, 'losses': self.losses,
        }


class MatchInvitation(db.Model):
    """Invitation to a match session; terminal once it leaves PENDING."""
    id = db.Column(db.Integer, primary_key=True)
    # kept after the session is deleted
    session_id = db.Column(
        db.Integer, db.ForeignKey('match_session.id', ondelete='SET NULL'), nullable=True,
    )
    inviter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    invitee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    team = db.Column(db.Integer, default=1, nullable=False)
    message = db.Column(db.String(500), nullable=True)
    status = db.Column(db.String(20), default=INVITE_PENDING, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    responded_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index(
            'uq_match_invitation_pending', 'session_id', 'invitee_id', unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        db.Index('ix_match_invitation_invitee_created', 'invitee_id', 'created_at'),
        db.Index('ix_match_invitation_inviter_created', 'inviter_id', 'created_at'),
    )

    session = db.relationship('MatchSession', backref='invitations')
    inviter = db.relationship('User', foreign_keys=[inviter_id], backref='sent_match_invitations')
    invitee = db.relationship('User', foreign_keys=[invitee_id], backref='received_match_invitations')

    @staticmethod
    def default_expiry(created_at, days):
        return created_at + timedelta(days=days)

    def is_expired(self, now=None):
        if not self.expires_at:
            return False
        return self.expires_at < (now or utcnow_naive())

    def to_dict(self):
        return {
            'id': self.id, 'session_id': self.session_id,
            'inviter_id': self.inviter_id, 'invitee_id': self.invitee_id,
            'team': self.team, 'message': self.message, 'status': self.status,
            'created_at': isoformat_or_none(self.created_at),
            'responded_at': isoformat_or_none(self.responded_at),
            'expires_at': isoformat_or_none(self.expires_at),
            'inviter': self.inviter.to_summary() if self.inviter else None,
            'invitee': self.invitee.to_summary() if self.invitee else None,
            'session': self.session.to_summary() if self.session else None,
        }


class MatchResult(db.Model):
    """Two-player match result awaiting confirmation by both players."""
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey('match_session.id', ondelete='SET NULL'), nullable=True,
    )
    player1_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player2_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player1_score = db.Column(db.Integer, nullable=False)
    player2_score = db.Column(db.Integer, nullable=False)
    outcome = db.Column(db.String(20), nullable=False)  # player1_win, player2_win, draw
    match_type = db.Column(db.String(20), default='casual')
    player1_confirmed = db.Column(db.Boolean, default=False, nullable=False)
    player2_confirmed = db.Column(db.Boolean, default=False, nullable=False)
    player1_elo_before = db.Column(db.Float, nullable=True)
    player1_elo_after = db.Column(db.Float, nullable=True)
    player1_elo_change = db.Column(db.Float, nullable=True)
    player2_elo_before = db.Column(db.Float, nullable=True)
    player2_elo_after = db.Column(db.Float, nullable=True)
    player2_elo_change = db.Column(db.Float, nullable=True)
    submitted_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    settled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_match_result_player1_created', 'player1_id', 'created_at'),
        db.Index('ix_match_result_player2_created', 'player2_id', 'created_at'),
    )

    player1 = db.relationship('User', foreign_keys=[player1_id])
    player2 = db.relationship('User', foreign_keys=[player2_id])

    @property
    def both_confirmed(self):
        return bool(self.player1_confirmed and self.player2_confirmed)

    @property
    def winner_id(self):
        if self.outcome == 'player1_win':
            return self.player1_id
        if self.outcome == 'player2_win':
            return self.player2_id
        return None

    def to_dict(self):
        return {
            'id': self.id, 'session_id': self.session_id,
            'player1_id': self.player1_id, 'player2_id': self.player2_id,
            'player1_score': self.player1_score, 'player2_score': self.player2_score,
            'outcome': self.outcome, 'match_type': self.match_type,
            'player1_confirmed': self.player1_confirmed,
            'player2_confirmed': self.player2_confirmed,
            'player1_elo_before': self.player1_elo_before,
            'player1_elo_after': self.player1_elo_after,
            'player1_elo_change': self.player1_elo_change,
            'player2_elo_before': self.player2_elo_before,
            'player2_elo_after': self.player2_elo_after,
            'player2_elo_change': self.player2_elo_change,
            'submitted_by': self.submitted_by,
            'settled': self.settled_at is not None,
            'settled_at': isoformat_or_none(self.settled_at),
            'created_at': isoformat_or_none(self.created_at),
            'player1': self.player1.to_summary() if self.player1 else None,
            'player2': self.player2.to_summary() if self.player2 else None,
        }


class PointsTransaction(db.Model):
    """Append-only balance ledger; (user, action, source) is the idempotency key."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    currency = db.Column(db.String(10), default=CURRENCY_POINTS, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(20), nullable=False)  # earn, spend, refund
    action_type = db.Column(db.String(50), nullable=False)
    source_id = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255), default='')
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint(
            'user_id', 'action_type', 'source_id', name='uq_points_transaction_key',
        ),
        db.Index('ix_points_transaction_user_created', 'user_id', 'created_at'),
    )

    user = db.relationship('User', backref='points_transactions')

    def to_dict(self):
        return {
            'id': self.id, 'user_id': self.user_id,
            'currency': self.currency, 'amount': self.amount,
            'balance_after': self.balance_after,
            'transaction_type': self.transaction_type,
            'action_type': self.action_type, 'source_id': self.source_id,
            'description': self.description,
            'created_at': isoformat_or_none(self.created_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    notif_type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    link = db.Column(db.String(500), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.Index('ix_notification_user_read', 'user_id', 'read'),
    )

    user = db.relationship('User', backref='notifications')

    def to_dict(self):
        return {
            'id': self.id, 'notif_type': self.notif_type,
            'title': self.title, 'content': self.content,
            'link': self.link, 'reference_id': self.reference_id,
            'read': self.read,
            'created_at': isoformat_or_none(self.created_at),
        }
