"""
Invitation ledger for match sessions.

An invitation is created PENDING and moves exactly once to ACCEPTED,
DECLINED or CANCELLED. Rows are never deleted. At most one PENDING row may
exist per (session, invitee); the partial unique index backs the service
check so two racing invites cannot both land.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from shuttle.app import db
from shuttle.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from shuttle.models import (
    MatchInvitation, MatchParticipant, MatchSession,
    SESSION_PENDING,
    INVITE_PENDING, INVITE_ACCEPTED, INVITE_DECLINED, INVITE_CANCELLED,
)
from shuttle.services.notifications import notify
from shuttle.services.session_lifecycle import (
    claim_seat, ensure_eligible, get_session, open_team, resolve_user,
)
from shuttle.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

DECISIONS = (INVITE_ACCEPTED, INVITE_DECLINED)
INVITE_STATUSES = (INVITE_PENDING, INVITE_ACCEPTED, INVITE_DECLINED, INVITE_CANCELLED)
DIRECTIONS = ('sent', 'received')
_MAX_MESSAGE_LENGTH = 500
_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class InvitationQuery:
    direction: str = 'received'
    status: Optional[str] = None
    session_id: Optional[int] = None
    limit: int = 50
    offset: int = 0


def _get_invitation(invitation_id):
    invitation = db.session.get(MatchInvitation, invitation_id)
    if not invitation:
        raise NotFound('Invitation not found')
    return invitation


def _close(invitation, status, from_status=INVITE_PENDING):
    """PENDING -> ``status`` as a conditional update; False if someone got there first."""
    updated = MatchInvitation.query.filter(
        MatchInvitation.id == invitation.id,
        MatchInvitation.status == from_status,
    ).update(
        {'status': status, 'responded_at': utcnow_naive()},
        synchronize_session=False,
    )
    return bool(updated)


def _expire_stale(session_id, invitee_id, now):
    return MatchInvitation.query.filter(
        MatchInvitation.session_id == session_id,
        MatchInvitation.invitee_id == invitee_id,
        MatchInvitation.status == INVITE_PENDING,
        MatchInvitation.expires_at.isnot(None),
        MatchInvitation.expires_at < now,
    ).update(
        {'status': INVITE_CANCELLED, 'responded_at': now},
        synchronize_session=False,
    )


def invite(inviter, invitee_id, session_id, team=None, message=None):
    """Invite ``invitee_id`` into a pending session the inviter is seated in."""
    session = get_session(session_id)
    if session.status != SESSION_PENDING:
        raise InvalidState('Invitations can only be sent for pending sessions')
    if session.participant_for(inviter.id) is None:
        raise Forbidden('Only participants can invite players to this session')
    if invitee_id == inviter.id:
        raise ValidationError('You cannot invite yourself')
    invitee = resolve_user(invitee_id)
    if team is not None and team not in (1, 2):
        raise ValidationError('Team must be 1 or 2')
    ensure_eligible(invitee, session.match_type)
    if message is not None and not isinstance(message, str):
        raise ValidationError('Message must be a string')

    if session.participant_for(invitee.id) is not None:
        raise Conflict('That player is already in this session')
    seat = open_team(session, preferred=team)
    if seat is None:
        raise Conflict('Match session is full')

    now = utcnow_naive()
    _expire_stale(session.id, invitee.id, now)
    if MatchInvitation.query.filter_by(
        session_id=session.id, invitee_id=invitee.id, status=INVITE_PENDING,
    ).first():
        raise Conflict('That player already has a pending invitation for this session')

    invitation = MatchInvitation(
        session_id=session.id,
        inviter_id=inviter.id,
        invitee_id=invitee.id,
        team=seat,
        message=(message or '').strip()[:_MAX_MESSAGE_LENGTH] or None,
        status=INVITE_PENDING,
        created_at=now,
        expires_at=MatchInvitation.default_expiry(
            now, current_app.config.get('INVITATION_EXPIRY_DAYS', 7),
        ),
    )
    db.session.add(invitation)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('That player already has a pending invitation for this session')

    notify(
        invitee.id, 'match_invitation', 'Match invitation',
        f'{inviter.username} invited you to a {session.match_type} match',
        link='/matches/invitations', reference_id=invitation.id,
    )
    db.session.commit()
    logger.info(
        'User %s invited %s to session %s (invitation %s)',
        inviter.id, invitee.id, session.id, invitation.id,
    )
    return invitation


def _accept(invitation, invitee):
    session = db.session.get(MatchSession, invitation.session_id)
    if session is None or session.status != SESSION_PENDING:
        raise InvalidState('This match session is no longer accepting players')
    if session.participant_for(invitee.id) is not None:
        raise Conflict('You are already in this session')
    ensure_eligible(invitee, session.match_type)

    team = open_team(session, preferred=invitation.team)
    if team is None or not claim_seat(session.id, session.match_type):
        db.session.rollback()
        raise Conflict('Match session is full')
    if not _close(invitation, INVITE_ACCEPTED):
        db.session.rollback()
        raise InvalidState('Invitation has already been answered')

    db.session.add(MatchParticipant(session_id=session.id, user_id=invitee.id, team=team))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('You are already in this session')
    return session


def respond(invitation_id, invitee, decision):
    """Accept or decline. Acceptance seats the invitee in the same transaction."""
    decision = str(decision or '').strip().upper()
    if decision not in DECISIONS:
        raise ValidationError('Decision must be ACCEPTED or DECLINED')
    invitation = _get_invitation(invitation_id)
    if invitation.invitee_id != invitee.id:
        raise Forbidden('Only the invitee can respond to this invitation')
    if invitation.status != INVITE_PENDING:
        raise InvalidState(f'Invitation is already {invitation.status.lower()}')
    if invitation.is_expired():
        raise InvalidState('Invitation has expired')

    if decision == INVITE_ACCEPTED:
        _accept(invitation, invitee)
        title, verb = 'Invitation accepted', 'accepted'
    else:
        if not _close(invitation, INVITE_DECLINED):
            db.session.rollback()
            raise InvalidState('Invitation has already been answered')
        title, verb = 'Invitation declined', 'declined'

    notify(
        invitation.inviter_id, 'match_invitation_response', title,
        f'{invitee.username} {verb} your match invitation',
        link=f'/matches/{invitation.session_id}', reference_id=invitation.session_id,
    )
    db.session.commit()
    logger.info('Invitation %s %s by user %s', invitation.id, verb, invitee.id)
    return invitation


def cancel_invitation(invitation_id, inviter):
    invitation = _get_invitation(invitation_id)
    if invitation.inviter_id != inviter.id:
        raise Forbidden('Only the inviter can cancel this invitation')
    if invitation.status != INVITE_PENDING:
        raise InvalidState(f'Invitation is already {invitation.status.lower()}')
    if not _close(invitation, INVITE_CANCELLED):
        db.session.rollback()
        raise InvalidState('Invitation has already been answered')
    db.session.commit()
    return invitation


def list_invitations(user, options=None):
    options = options or InvitationQuery()
    if options.direction not in DIRECTIONS:
        raise ValidationError('Invitation type must be sent or received')
    if options.direction == 'sent':
        query = MatchInvitation.query.filter(MatchInvitation.inviter_id == user.id)
    else:
        query = MatchInvitation.query.filter(MatchInvitation.invitee_id == user.id)
    if options.status:
        status = options.status.upper()
        if status not in INVITE_STATUSES:
            raise ValidationError('Invalid invitation status')
        query = query.filter(MatchInvitation.status == status)
    if options.session_id:
        query = query.filter(MatchInvitation.session_id == options.session_id)
    limit = max(1, min(options.limit, _MAX_PAGE_SIZE))
    return query.order_by(
        MatchInvitation.created_at.desc(), MatchInvitation.id.desc(),
    ).offset(max(0, options.offset)).limit(limit).all()


def list_session_invitations(session_id, user):
    """All invitations for a session; visible to its participants, creator and admins."""
    session = get_session(session_id)
    if (session.participant_for(user.id) is None and session.creator_id != user.id
            and not user.is_admin):
        raise Forbidden('Only participants can view invitations for this session')
    return MatchInvitation.query.filter_by(session_id=session.id).order_by(
        MatchInvitation.created_at.desc(), MatchInvitation.id.desc(),
    ).all()
